"""Per-prescription provider compensation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import sqlalchemy as sa
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicledger.db.models import (
    Clinic,
    CompensationStatus,
    CompensationType,
    Provider,
    ProviderCompensationEvent,
    ProviderCompensationPlan,
)
from clinicledger.errors import NotFoundError, StateTransitionError, ValidationError
from clinicledger.money import BPS_DENOMINATOR, percent_of
from clinicledger.observability import COMMISSION_EVENTS_TOTAL
from clinicledger.time_utils import day_key, ensure_utc, start_of_month, start_of_week, utc_now


logger = structlog.get_logger(__name__)

LEDGER = "provider"
GROUP_BY_CHOICES = ("day", "week", "month")

_FLAT_TYPES = (CompensationType.FLAT_RATE.value, CompensationType.HYBRID.value)
_PERCENT_TYPES = (CompensationType.PERCENTAGE.value, CompensationType.HYBRID.value)


class PlanValidationError(ValidationError):
    """Raised for a compensation plan whose rates do not fit its type."""


class CompensationStateError(StateTransitionError):
    """Raised when a compensation event cannot change status."""


@dataclass(frozen=True)
class CompensationCalculation:
    amount_cents: int
    details: Dict[str, Any]


def validate_plan_input(
    compensation_type: str, flat_rate_per_script: Optional[int], percent_bps: Optional[int]
) -> None:
    if compensation_type not in {item.value for item in CompensationType}:
        raise PlanValidationError(f"Unknown compensation type {compensation_type!r}")
    if compensation_type in _FLAT_TYPES and (flat_rate_per_script is None or flat_rate_per_script < 0):
        raise PlanValidationError("Flat rate is required for FLAT_RATE or HYBRID compensation types")
    if compensation_type in _PERCENT_TYPES and (
        percent_bps is None or percent_bps < 0 or percent_bps > BPS_DENOMINATOR
    ):
        raise PlanValidationError("Percentage (0-10000 bps) is required for PERCENTAGE or HYBRID compensation types")


def get_plan(session: Session, clinic_id: int, provider_id: int) -> Optional[ProviderCompensationPlan]:
    stmt = select(ProviderCompensationPlan).where(
        ProviderCompensationPlan.clinic_id == clinic_id, ProviderCompensationPlan.provider_id == provider_id
    )
    return session.execute(stmt).scalar_one_or_none()


def upsert_plan(
    session: Session,
    clinic_id: int,
    provider_id: int,
    *,
    compensation_type: str,
    flat_rate_per_script: Optional[int] = None,
    percent_bps: Optional[int] = None,
    notes: Optional[str] = None,
) -> ProviderCompensationPlan:
    """Create the provider's plan for the clinic or update the existing one."""

    validate_plan_input(compensation_type, flat_rate_per_script, percent_bps)
    clinic = session.get(Clinic, clinic_id)
    if clinic is not None and not clinic.provider_compensation_enabled:
        logger.warning("provider_compensation_disabled_for_clinic", clinic_id=clinic_id)

    plan = get_plan(session, clinic_id, provider_id)
    if plan is None:
        plan = ProviderCompensationPlan(clinic_id=clinic_id, provider_id=provider_id)
        session.add(plan)
    plan.compensation_type = compensation_type
    plan.flat_rate_per_script = flat_rate_per_script or 0
    plan.percent_bps = percent_bps or 0
    plan.notes = notes
    plan.is_active = True
    session.flush()
    logger.info(
        "provider_plan_upserted",
        clinic_id=clinic_id,
        provider_id=provider_id,
        compensation_type=compensation_type,
        plan_id=plan.id,
    )
    return plan


def deactivate_plan(session: Session, plan_id: int) -> ProviderCompensationPlan:
    plan = session.get(ProviderCompensationPlan, plan_id)
    if plan is None:
        raise NotFoundError(f"Compensation plan {plan_id} not found")
    plan.is_active = False
    session.flush()
    return plan


def calculate(
    plan: ProviderCompensationPlan, order_total_cents: Optional[int], prescription_count: int = 1
) -> CompensationCalculation:
    flat_amount = 0
    percent_amount = 0
    if plan.compensation_type in _FLAT_TYPES:
        flat_amount = (plan.flat_rate_per_script or 0) * prescription_count
    if plan.compensation_type in _PERCENT_TYPES:
        if order_total_cents and plan.percent_bps:
            percent_amount = percent_of(order_total_cents, plan.percent_bps)
        elif not order_total_cents and plan.compensation_type == CompensationType.PERCENTAGE.value:
            logger.warning("provider_compensation_missing_order_total", plan_id=plan.id, percent_bps=plan.percent_bps)
    return CompensationCalculation(
        amount_cents=flat_amount + percent_amount,
        details={
            "compensation_type": plan.compensation_type,
            "flat_amount": flat_amount,
            "percent_amount": percent_amount,
            "percent_bps": plan.percent_bps,
            "order_total_cents": order_total_cents,
            "prescription_count": prescription_count,
        },
    )


def _event_for_order(session: Session, clinic_id: int, order_id: str) -> Optional[ProviderCompensationEvent]:
    stmt = select(ProviderCompensationEvent).where(
        ProviderCompensationEvent.clinic_id == clinic_id, ProviderCompensationEvent.order_id == order_id
    )
    return session.execute(stmt).scalar_one_or_none()


def record_prescription(
    session: Session,
    clinic_id: int,
    provider_id: int,
    order_id: str,
    *,
    prescription_count: int = 1,
    order_total_cents: Optional[int] = None,
    patient_id: Optional[int] = None,
    occurred_at: Optional[datetime] = None,
) -> Optional[ProviderCompensationEvent]:
    """Record compensation for a prescription order.

    Returns ``None`` when the clinic does not pay providers or the provider
    has no active plan.  A second call for the same order returns the
    existing event.
    """

    log = logger.bind(clinic_id=clinic_id, provider_id=provider_id, order_id=order_id)
    clinic = session.get(Clinic, clinic_id)
    if clinic is None or not clinic.provider_compensation_enabled:
        log.debug("provider_compensation_not_enabled")
        return None
    plan = get_plan(session, clinic_id, provider_id)
    if plan is None or not plan.is_active:
        log.debug("provider_compensation_no_plan")
        return None
    existing = _event_for_order(session, clinic_id, order_id)
    if existing is not None:
        log.warning("provider_compensation_exists", event_id=existing.id)
        return existing

    calculation = calculate(plan, order_total_cents, prescription_count)
    try:
        with session.begin_nested():
            event = ProviderCompensationEvent(
                clinic_id=clinic_id,
                provider_id=provider_id,
                plan_id=plan.id,
                order_id=order_id,
                patient_id=patient_id,
                prescription_count=prescription_count,
                order_total_cents=order_total_cents,
                amount_cents=calculation.amount_cents,
                calculation_details=calculation.details,
                status=CompensationStatus.PENDING.value,
                created_at=ensure_utc(occurred_at) if occurred_at else utc_now(),
            )
            session.add(event)
            session.flush()
    except IntegrityError:
        existing = _event_for_order(session, clinic_id, order_id)
        log.warning("provider_compensation_exists", event_id=existing.id if existing else None)
        return existing

    COMMISSION_EVENTS_TOTAL.labels(LEDGER).inc()
    log.info(
        "provider_compensation_recorded",
        event_id=event.id,
        compensation_type=plan.compensation_type,
        amount_cents=calculation.amount_cents,
        prescription_count=prescription_count,
    )
    return event


def void_event(
    session: Session, clinic_id: int, order_id: str, reason: str
) -> Optional[ProviderCompensationEvent]:
    event = _event_for_order(session, clinic_id, order_id)
    if event is None:
        logger.debug("provider_compensation_void_missing", clinic_id=clinic_id, order_id=order_id)
        return None
    if event.status == CompensationStatus.VOIDED.value:
        return event
    if event.status == CompensationStatus.PAID.value:
        logger.warning("provider_compensation_void_paid", order_id=order_id, event_id=event.id)
        raise CompensationStateError("Cannot void a compensation event that has already been paid")
    event.status = CompensationStatus.VOIDED.value
    event.voided_at = utc_now()
    event.voided_reason = reason
    session.flush()
    logger.info("provider_compensation_voided", event_id=event.id, order_id=order_id)
    return event


def approve_events(session: Session, event_ids: Sequence[int]) -> int:
    result = session.execute(
        sa.update(ProviderCompensationEvent)
        .where(
            ProviderCompensationEvent.id.in_(list(event_ids)),
            ProviderCompensationEvent.status == CompensationStatus.PENDING.value,
        )
        .values(status=CompensationStatus.APPROVED.value, approved_at=utc_now())
        .execution_options(synchronize_session="fetch")
    )
    logger.info("provider_compensation_approved", count=result.rowcount, event_ids=list(event_ids))
    return result.rowcount


def mark_paid(
    session: Session, event_ids: Sequence[int], payout_reference: str, payout_batch_id: Optional[str] = None
) -> int:
    payable = (CompensationStatus.PENDING.value, CompensationStatus.APPROVED.value)
    result = session.execute(
        sa.update(ProviderCompensationEvent)
        .where(ProviderCompensationEvent.id.in_(list(event_ids)), ProviderCompensationEvent.status.in_(payable))
        .values(
            status=CompensationStatus.PAID.value,
            paid_at=utc_now(),
            payout_reference=payout_reference,
            payout_batch_id=payout_batch_id,
        )
        .execution_options(synchronize_session="fetch")
    )
    logger.info("provider_compensation_paid", count=result.rowcount, payout_reference=payout_reference)
    return result.rowcount


def _events_between(
    session: Session, start: datetime, end: datetime, *, provider_id: Optional[int] = None, clinic_id: Optional[int] = None
) -> List[ProviderCompensationEvent]:
    stmt = select(ProviderCompensationEvent).where(
        ProviderCompensationEvent.created_at >= ensure_utc(start),
        ProviderCompensationEvent.created_at <= ensure_utc(end),
    )
    if provider_id is not None:
        stmt = stmt.where(ProviderCompensationEvent.provider_id == provider_id)
    if clinic_id is not None:
        stmt = stmt.where(ProviderCompensationEvent.clinic_id == clinic_id)
    return list(session.execute(stmt.order_by(ProviderCompensationEvent.created_at)).scalars())


def earnings_summary(
    session: Session, provider_id: int, start: datetime, end: datetime, clinic_id: Optional[int] = None
) -> Dict[str, Any]:
    """Totals by status for a provider, excluding voided events."""

    summary: Dict[str, Any] = {
        "total_prescriptions": 0,
        "total_earnings_cents": 0,
        "pending_earnings_cents": 0,
        "approved_earnings_cents": 0,
        "paid_earnings_cents": 0,
        "voided_count": 0,
    }
    days: Dict[str, Dict[str, int]] = {}
    for event in _events_between(session, start, end, provider_id=provider_id, clinic_id=clinic_id):
        if event.status == CompensationStatus.VOIDED.value:
            summary["voided_count"] += 1
            continue
        summary["total_prescriptions"] += event.prescription_count
        summary["total_earnings_cents"] += event.amount_cents
        status_key = f"{event.status.lower()}_earnings_cents"
        if status_key in summary:
            summary[status_key] += event.amount_cents
        bucket = days.setdefault(day_key(event.created_at), {"prescriptions": 0, "earnings_cents": 0})
        bucket["prescriptions"] += event.prescription_count
        bucket["earnings_cents"] += event.amount_cents
    summary["breakdown"] = [{"period": key, **days[key]} for key in sorted(days)]
    return summary


def _period_key(moment: datetime, group_by: str) -> str:
    if group_by == "week":
        return day_key(start_of_week(moment))
    if group_by == "month":
        return start_of_month(moment).strftime("%Y-%m")
    return day_key(moment)


def performance_report(
    session: Session, clinic_id: int, start: datetime, end: datetime, group_by: str = "day"
) -> Dict[str, Any]:
    if group_by not in GROUP_BY_CHOICES:
        raise ValidationError(f"group_by must be one of {', '.join(GROUP_BY_CHOICES)}")

    providers: Dict[int, Dict[str, Any]] = {}
    timeline: Dict[str, Dict[str, int]] = {}
    for event in _events_between(session, start, end, clinic_id=clinic_id):
        if event.status == CompensationStatus.VOIDED.value:
            continue
        entry = providers.get(event.provider_id)
        if entry is None:
            provider = session.get(Provider, event.provider_id)
            entry = {
                "id": event.provider_id,
                "name": provider.name if provider else None,
                "prescriptions": 0,
                "earnings_cents": 0,
            }
            providers[event.provider_id] = entry
        entry["prescriptions"] += event.prescription_count
        entry["earnings_cents"] += event.amount_cents
        bucket = timeline.setdefault(_period_key(event.created_at, group_by), {"prescriptions": 0, "earnings_cents": 0})
        bucket["prescriptions"] += event.prescription_count
        bucket["earnings_cents"] += event.amount_cents

    rows = sorted(providers.values(), key=lambda item: item["earnings_cents"], reverse=True)
    return {
        "summary": {
            "total_prescriptions": sum(item["prescriptions"] for item in rows),
            "total_earnings_cents": sum(item["earnings_cents"] for item in rows),
            "provider_count": len(rows),
        },
        "providers": rows,
        "timeline": [{"period": key, **timeline[key]} for key in sorted(timeline)],
    }


__all__ = [
    "PlanValidationError",
    "CompensationStateError",
    "CompensationCalculation",
    "validate_plan_input",
    "get_plan",
    "upsert_plan",
    "deactivate_plan",
    "calculate",
    "record_prescription",
    "void_event",
    "approve_events",
    "mark_paid",
    "earnings_summary",
    "performance_report",
]
