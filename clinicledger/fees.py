"""Platform fees charged to clinics and the rules that waive them.

Every prescription order produces one fee event: ``PRESCRIPTION`` when a
platform provider wrote it, ``TRANSMISSION`` otherwise.  A fee is waived by a
matching :class:`~clinicledger.db.models.FeeWaiverRule` or while the patient
is still inside the prescription cycle for the same medication; waived fees
are still ledgered with their reason.  Weekly admin fees are recorded once
per period.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicledger.db import dialect_insert
from clinicledger.db.models import (
    AdminFeeType,
    ClinicPlatformFeeConfig,
    FeeCalculation,
    FeeStatus,
    FeeWaiverRule,
    PatientPrescriptionCycle,
    PlatformFeeEvent,
    PlatformFeeType,
    Provider,
)
from clinicledger.errors import NotFoundError, StateTransitionError, ValidationError
from clinicledger.money import BPS_DENOMINATOR, percent_of
from clinicledger.observability import PLATFORM_FEES_TOTAL
from clinicledger.time_utils import ensure_utc, optional_utc, start_of_week, utc_now


logger = structlog.get_logger(__name__)

PRESCRIPTION_FEE_TYPES = (PlatformFeeType.PRESCRIPTION.value, PlatformFeeType.TRANSMISSION.value)
CYCLE_WAIVER_REASON = "prescription_cycle"
WAIVER_RULE_PREFIX = "waiver_rule:"
DEFAULT_CYCLE_DAYS = 90

_CONFIG_FIELDS = (
    "prescription_fee_type",
    "prescription_fee_amount",
    "transmission_fee_type",
    "transmission_fee_amount",
    "admin_fee_type",
    "admin_fee_amount",
    "prescription_cycle_days",
    "is_active",
)


class FeeConfigError(ValidationError):
    """Raised for an invalid clinic fee configuration."""


class FeeStateError(StateTransitionError):
    """Raised when a fee event cannot move to the requested status."""


class FeeEventNotFoundError(NotFoundError):
    pass


@dataclass(frozen=True)
class WaiverDecision:
    waived: bool
    reason: Optional[str] = None
    rule_id: Optional[int] = None
    next_eligible_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def get_fee_config(session: Session, clinic_id: int) -> Optional[ClinicPlatformFeeConfig]:
    stmt = select(ClinicPlatformFeeConfig).where(ClinicPlatformFeeConfig.clinic_id == clinic_id)
    return session.execute(stmt).scalar_one_or_none()


def _validate_config(config: ClinicPlatformFeeConfig) -> None:
    for prefix in ("prescription", "transmission"):
        calc = getattr(config, f"{prefix}_fee_type")
        amount = getattr(config, f"{prefix}_fee_amount")
        if calc not in (FeeCalculation.FLAT.value, FeeCalculation.PERCENTAGE.value):
            raise FeeConfigError(f"Unknown {prefix} fee type {calc!r}")
        if amount is None or amount < 0:
            raise FeeConfigError(f"{prefix.capitalize()} fee amount cannot be negative")
        if calc == FeeCalculation.PERCENTAGE.value and amount > BPS_DENOMINATOR:
            raise FeeConfigError(
                f"{prefix.capitalize()} fee percentage must be between 0 and 100% (0-10000 basis points)"
            )
    if config.admin_fee_type not in {item.value for item in AdminFeeType}:
        raise FeeConfigError(f"Unknown admin fee type {config.admin_fee_type!r}")
    if config.admin_fee_amount is None or config.admin_fee_amount < 0:
        raise FeeConfigError("Admin fee amount cannot be negative")
    if config.admin_fee_type == AdminFeeType.PERCENTAGE_WEEKLY.value and config.admin_fee_amount > BPS_DENOMINATOR:
        raise FeeConfigError("Admin fee percentage must be between 0 and 100% (0-10000 basis points)")
    if config.prescription_cycle_days is None or config.prescription_cycle_days < 0:
        raise FeeConfigError("prescription_cycle_days cannot be negative")


def upsert_fee_config(session: Session, clinic_id: int, **values: Any) -> ClinicPlatformFeeConfig:
    """Create or update the clinic's fee configuration."""

    unknown = set(values) - set(_CONFIG_FIELDS)
    if unknown:
        raise FeeConfigError(f"Unknown fee config fields: {', '.join(sorted(unknown))}")
    config = get_fee_config(session, clinic_id)
    if config is None:
        config = ClinicPlatformFeeConfig(
            clinic_id=clinic_id,
            prescription_fee_type=FeeCalculation.FLAT.value,
            prescription_fee_amount=0,
            transmission_fee_type=FeeCalculation.FLAT.value,
            transmission_fee_amount=0,
            admin_fee_type=AdminFeeType.NONE.value,
            admin_fee_amount=0,
            prescription_cycle_days=DEFAULT_CYCLE_DAYS,
            is_active=True,
        )
    for key, value in values.items():
        setattr(config, key, value.value if hasattr(value, "value") else value)
    _validate_config(config)
    if config.id is None:
        session.add(config)
    session.flush()
    logger.info("fee_config_updated", clinic_id=clinic_id, fields=sorted(values))
    return config


# ---------------------------------------------------------------------------
# Calculation helpers
# ---------------------------------------------------------------------------


def fee_type_for_provider(provider: Provider) -> PlatformFeeType:
    if provider.is_platform_provider:
        return PlatformFeeType.PRESCRIPTION
    return PlatformFeeType.TRANSMISSION


def normalize_medication_key(name: str, strength: Optional[str] = None, form: Optional[str] = None) -> str:
    """Return a lowercase hyphenated key such as ``semaglutide-25mg-vial``."""

    parts = [name]
    if strength:
        parts.append(strength)
    if form:
        parts.append(form)
    key = "-".join(parts).lower()
    key = re.sub(r"\s+", "-", key)
    key = re.sub(r"[^a-z0-9-]", "", key)
    return re.sub(r"-+", "-", key)


def calculate_fee_amount(calculation_type: str, rate: int, order_total_cents: Optional[int]) -> int:
    if calculation_type == FeeCalculation.PERCENTAGE.value:
        if order_total_cents:
            return percent_of(order_total_cents, rate)
        logger.warning("fee_percentage_without_order_total", rate=rate)
        return rate
    return rate


def _rates_for(config: ClinicPlatformFeeConfig, fee_type: PlatformFeeType) -> Tuple[str, int]:
    if fee_type == PlatformFeeType.PRESCRIPTION:
        return config.prescription_fee_type, config.prescription_fee_amount
    return config.transmission_fee_type, config.transmission_fee_amount


# ---------------------------------------------------------------------------
# Waivers and prescription cycles
# ---------------------------------------------------------------------------


def _active_waiver_rules(session: Session, clinic_id: int, at: datetime) -> List[FeeWaiverRule]:
    stmt = (
        select(FeeWaiverRule)
        .where(
            FeeWaiverRule.clinic_id == clinic_id,
            FeeWaiverRule.is_active.is_(True),
            FeeWaiverRule.effective_from <= at,
            sa.or_(FeeWaiverRule.effective_to.is_(None), FeeWaiverRule.effective_to >= at),
        )
        .order_by(FeeWaiverRule.effective_from.desc(), FeeWaiverRule.id)
    )
    return list(session.execute(stmt).scalars())


def _rule_waivers_used(session: Session, rule: FeeWaiverRule, patient_id: int) -> int:
    stmt = select(func.count(PlatformFeeEvent.id)).where(
        PlatformFeeEvent.clinic_id == rule.clinic_id,
        PlatformFeeEvent.patient_id == patient_id,
        PlatformFeeEvent.status == FeeStatus.WAIVED.value,
        PlatformFeeEvent.waived_reason == f"{WAIVER_RULE_PREFIX}{rule.id}",
    )
    return int(session.execute(stmt).scalar_one())


def get_prescription_cycle(
    session: Session, clinic_id: int, patient_id: int, medication_key: str
) -> Optional[PatientPrescriptionCycle]:
    # The cycle row is written with a Core upsert, so reload any cached instance.
    stmt = (
        select(PatientPrescriptionCycle)
        .where(
            PatientPrescriptionCycle.clinic_id == clinic_id,
            PatientPrescriptionCycle.patient_id == patient_id,
            PatientPrescriptionCycle.medication_key == medication_key,
        )
        .execution_options(populate_existing=True)
    )
    return session.execute(stmt).scalar_one_or_none()


def evaluate_waivers(
    session: Session,
    clinic_id: int,
    patient_id: Optional[int],
    fee_type: PlatformFeeType,
    medication_key: Optional[str],
    at: datetime,
) -> WaiverDecision:
    """Decide whether the fee for an order at ``at`` is waived.

    Configured waiver rules are consulted first, then the patient's
    prescription cycle for the medication.
    """

    at = ensure_utc(at)
    for rule in _active_waiver_rules(session, clinic_id, at):
        if rule.fee_type and rule.fee_type != fee_type.value:
            continue
        if rule.medication_key_prefix and not (medication_key or "").startswith(rule.medication_key_prefix):
            continue
        if rule.max_waivers_per_patient is not None:
            if patient_id is None or _rule_waivers_used(session, rule, patient_id) >= rule.max_waivers_per_patient:
                continue
        return WaiverDecision(waived=True, reason=f"{WAIVER_RULE_PREFIX}{rule.id}", rule_id=rule.id)

    if patient_id is not None and medication_key:
        cycle = get_prescription_cycle(session, clinic_id, patient_id, medication_key)
        if cycle is not None and ensure_utc(cycle.next_eligible_at) > at:
            return WaiverDecision(
                waived=True, reason=CYCLE_WAIVER_REASON, next_eligible_at=ensure_utc(cycle.next_eligible_at)
            )
    return WaiverDecision(waived=False)


def upsert_prescription_cycle(
    session: Session,
    clinic_id: int,
    patient_id: int,
    medication_key: str,
    order_id: str,
    charged_at: datetime,
    cycle_days: int,
) -> None:
    table = PatientPrescriptionCycle.__table__
    charged_at = ensure_utc(charged_at)
    next_eligible_at = charged_at + timedelta(days=cycle_days)
    stmt = dialect_insert(session, table).values(
        clinic_id=clinic_id,
        patient_id=patient_id,
        medication_key=medication_key,
        last_charged_at=charged_at,
        next_eligible_at=next_eligible_at,
        last_order_id=order_id,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.clinic_id, table.c.patient_id, table.c.medication_key],
        set_={"last_charged_at": charged_at, "next_eligible_at": next_eligible_at, "last_order_id": order_id},
    )
    session.execute(stmt)


# ---------------------------------------------------------------------------
# Recording fees
# ---------------------------------------------------------------------------


def _order_fee(session: Session, clinic_id: int, order_id: str) -> Optional[PlatformFeeEvent]:
    stmt = select(PlatformFeeEvent).where(
        PlatformFeeEvent.clinic_id == clinic_id,
        PlatformFeeEvent.order_id == order_id,
        PlatformFeeEvent.fee_type.in_(PRESCRIPTION_FEE_TYPES),
    )
    return session.execute(stmt.order_by(PlatformFeeEvent.id)).scalars().first()


def record_prescription_fee(
    session: Session,
    clinic_id: int,
    order_id: str,
    provider_id: int,
    *,
    medication_key: str,
    patient_id: Optional[int] = None,
    order_total_cents: Optional[int] = None,
    occurred_at: Optional[datetime] = None,
) -> Optional[PlatformFeeEvent]:
    """Ledger the platform fee for a prescription order.

    Returns ``None`` when the clinic has no active fee configuration or the
    provider is unknown; returns the existing event for a repeated order.
    """

    log = logger.bind(clinic_id=clinic_id, order_id=order_id)
    config = get_fee_config(session, clinic_id)
    if config is None or not config.is_active:
        log.debug("fee_config_inactive")
        return None
    existing = _order_fee(session, clinic_id, order_id)
    if existing is not None:
        log.warning("fee_event_exists", event_id=existing.id)
        return existing
    provider = session.get(Provider, provider_id)
    if provider is None:
        log.error("fee_provider_missing", provider_id=provider_id)
        return None

    at = ensure_utc(occurred_at) if occurred_at else utc_now()
    fee_type = fee_type_for_provider(provider)
    calc_type, rate = _rates_for(config, fee_type)
    decision = evaluate_waivers(session, clinic_id, patient_id, fee_type, medication_key, at)
    amount = calculate_fee_amount(calc_type, rate, order_total_cents)
    details: Dict[str, Any] = {
        "fee_type": fee_type.value,
        "calculation_type": calc_type,
        "rate": rate,
        "order_total_cents": order_total_cents,
        "medication_key": medication_key,
        "waived": decision.waived,
    }
    if decision.next_eligible_at is not None:
        details["next_eligible_at"] = decision.next_eligible_at.isoformat()

    try:
        with session.begin_nested():
            event = PlatformFeeEvent(
                clinic_id=clinic_id,
                fee_type=fee_type.value,
                order_id=order_id,
                patient_id=patient_id,
                provider_id=provider_id,
                medication_key=medication_key,
                amount_cents=amount,
                calculation_details=details,
                status=FeeStatus.WAIVED.value if decision.waived else FeeStatus.PENDING.value,
                waived_reason=decision.reason,
                waived_at=at if decision.waived else None,
                occurred_at=at,
            )
            session.add(event)
            session.flush()
            if not decision.waived and patient_id is not None:
                upsert_prescription_cycle(
                    session, clinic_id, patient_id, medication_key, order_id, at, config.prescription_cycle_days
                )
    except IntegrityError:
        existing = _order_fee(session, clinic_id, order_id)
        log.warning("fee_event_exists", event_id=existing.id if existing else None)
        return existing

    PLATFORM_FEES_TOTAL.labels(event.fee_type, event.status).inc()
    log.info(
        "prescription_fee_recorded",
        event_id=event.id,
        fee_type=event.fee_type,
        status=event.status,
        amount_cents=amount,
        waived_reason=decision.reason,
    )
    return event


def period_sales(session: Session, clinic_id: int, period_start: datetime, period_end: datetime) -> int:
    """Sum the order totals of prescription fees ledgered in the period."""

    stmt = select(PlatformFeeEvent.calculation_details).where(
        PlatformFeeEvent.clinic_id == clinic_id,
        PlatformFeeEvent.fee_type.in_(PRESCRIPTION_FEE_TYPES),
        PlatformFeeEvent.status != FeeStatus.VOIDED.value,
        PlatformFeeEvent.occurred_at >= ensure_utc(period_start),
        PlatformFeeEvent.occurred_at < ensure_utc(period_end),
    )
    total = 0
    for details in session.execute(stmt).scalars():
        total += int((details or {}).get("order_total_cents") or 0)
    return total


def week_bounds(at: datetime) -> Tuple[datetime, datetime]:
    """Return the Sunday-start week containing ``at`` as ``[start, end)``."""

    start = start_of_week(at)
    return start, start + timedelta(days=7)


def _period_fee(
    session: Session, clinic_id: int, period_start: datetime, period_end: datetime
) -> Optional[PlatformFeeEvent]:
    stmt = select(PlatformFeeEvent).where(
        PlatformFeeEvent.clinic_id == clinic_id,
        PlatformFeeEvent.fee_type == PlatformFeeType.ADMIN.value,
        PlatformFeeEvent.period_start == period_start,
        PlatformFeeEvent.period_end == period_end,
    )
    return session.execute(stmt).scalar_one_or_none()


def record_admin_fee(
    session: Session,
    clinic_id: int,
    period_start: datetime,
    period_end: datetime,
    sales_total: Optional[int] = None,
) -> Optional[PlatformFeeEvent]:
    """Record the clinic's admin fee for one period; zero amounts are skipped."""

    log = logger.bind(clinic_id=clinic_id)
    config = get_fee_config(session, clinic_id)
    if config is None or not config.is_active or config.admin_fee_type == AdminFeeType.NONE.value:
        log.debug("admin_fee_not_configured")
        return None
    period_start = ensure_utc(period_start)
    period_end = ensure_utc(period_end)
    existing = _period_fee(session, clinic_id, period_start, period_end)
    if existing is not None:
        log.warning("admin_fee_exists", event_id=existing.id)
        return existing

    if config.admin_fee_type == AdminFeeType.FLAT_WEEKLY.value:
        amount = config.admin_fee_amount
    else:
        if sales_total is None:
            sales_total = period_sales(session, clinic_id, period_start, period_end)
        amount = percent_of(sales_total, config.admin_fee_amount)
    if amount <= 0:
        log.debug("admin_fee_zero", amount_cents=amount)
        return None

    try:
        with session.begin_nested():
            event = PlatformFeeEvent(
                clinic_id=clinic_id,
                fee_type=PlatformFeeType.ADMIN.value,
                amount_cents=amount,
                calculation_details={
                    "fee_type": PlatformFeeType.ADMIN.value,
                    "calculation_type": config.admin_fee_type,
                    "rate": config.admin_fee_amount,
                    "base_amount": sales_total,
                },
                status=FeeStatus.PENDING.value,
                period_start=period_start,
                period_end=period_end,
                occurred_at=period_end,
            )
            session.add(event)
            session.flush()
    except IntegrityError:
        existing = _period_fee(session, clinic_id, period_start, period_end)
        log.warning("admin_fee_exists", event_id=existing.id if existing else None)
        return existing

    PLATFORM_FEES_TOTAL.labels(event.fee_type, event.status).inc()
    log.info("admin_fee_recorded", event_id=event.id, amount_cents=amount, admin_fee_type=config.admin_fee_type)
    return event


# ---------------------------------------------------------------------------
# State changes and reporting
# ---------------------------------------------------------------------------


def _get_fee(session: Session, fee_event_id: int) -> PlatformFeeEvent:
    event = session.get(PlatformFeeEvent, fee_event_id)
    if event is None:
        raise FeeEventNotFoundError(f"Fee event {fee_event_id} not found")
    return event


def void_fee(session: Session, fee_event_id: int, reason: str) -> PlatformFeeEvent:
    event = _get_fee(session, fee_event_id)
    if event.status == FeeStatus.VOIDED.value:
        return event
    if event.status == FeeStatus.PAID.value:
        logger.warning("fee_void_paid", fee_event_id=fee_event_id)
        raise FeeStateError("Cannot void a fee that has already been paid")
    event.status = FeeStatus.VOIDED.value
    event.voided_at = utc_now()
    event.voided_reason = reason
    session.flush()
    logger.info("fee_voided", fee_event_id=fee_event_id, reason=reason)
    return event


def void_fee_by_order(session: Session, clinic_id: int, order_id: str, reason: str) -> Optional[PlatformFeeEvent]:
    event = _order_fee(session, clinic_id, order_id)
    if event is None:
        return None
    return void_fee(session, event.id, reason)


def waive_fee(session: Session, fee_event_id: int, reason: str) -> PlatformFeeEvent:
    event = _get_fee(session, fee_event_id)
    if event.status != FeeStatus.PENDING.value:
        raise FeeStateError(f"Cannot waive fee with status: {event.status}")
    event.status = FeeStatus.WAIVED.value
    event.waived_at = utc_now()
    event.waived_reason = reason
    session.flush()
    logger.info("fee_waived", fee_event_id=fee_event_id, reason=reason)
    return event


def fee_summary(
    session: Session, clinic_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None
) -> Dict[str, int]:
    """Totals and counts per fee type; voided and waived fees are excluded."""

    stmt = select(PlatformFeeEvent.fee_type, PlatformFeeEvent.status, PlatformFeeEvent.amount_cents).where(
        PlatformFeeEvent.clinic_id == clinic_id
    )
    start = optional_utc(start)
    end = optional_utc(end)
    if start is not None:
        stmt = stmt.where(PlatformFeeEvent.occurred_at >= start)
    if end is not None:
        stmt = stmt.where(PlatformFeeEvent.occurred_at <= end)

    summary = {
        "total_prescription_fees": 0,
        "total_transmission_fees": 0,
        "total_admin_fees": 0,
        "prescription_count": 0,
        "transmission_count": 0,
        "admin_count": 0,
        "pending_count": 0,
        "invoiced_count": 0,
        "paid_count": 0,
    }
    for fee_type, status, amount in session.execute(stmt):
        if status in (FeeStatus.VOIDED.value, FeeStatus.WAIVED.value):
            continue
        kind = fee_type.lower()
        summary[f"total_{kind}_fees"] += amount
        summary[f"{kind}_count"] += 1
        status_key = f"{status.lower()}_count"
        if status_key in summary:
            summary[status_key] += 1
    summary["total_amount_cents"] = (
        summary["total_prescription_fees"] + summary["total_transmission_fees"] + summary["total_admin_fees"]
    )
    return summary


__all__ = [
    "FeeConfigError",
    "FeeStateError",
    "FeeEventNotFoundError",
    "WaiverDecision",
    "get_fee_config",
    "upsert_fee_config",
    "fee_type_for_provider",
    "normalize_medication_key",
    "calculate_fee_amount",
    "evaluate_waivers",
    "get_prescription_cycle",
    "upsert_prescription_cycle",
    "record_prescription_fee",
    "period_sales",
    "week_bounds",
    "record_admin_fee",
    "void_fee",
    "void_fee_by_order",
    "waive_fee",
    "fee_summary",
]
