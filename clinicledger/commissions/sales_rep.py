"""Sales representative commissions and hourly compensation.

A sale earns the plan's base rate plus two optional bonuses: a multi-item
bonus once the sale reaches the plan's minimum quantity, and per-line bonuses
for products or bundles listed in the plan's product rules.  Hourly pay is
computed from logged minutes at the rate carried by the rep's assignment on
each work date.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

import sqlalchemy as sa
import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicledger.commissions.affiliate import CommissionResult, calculate_commission, select_rates
from clinicledger.db.models import (
    AppliesTo,
    CommissionStatus,
    RateType,
    SalesRep,
    SalesRepCommissionEvent,
    SalesRepCommissionPlan,
    SalesRepPlanAssignment,
    SalesRepProductRule,
    SalesRepTimeEntry,
)
from clinicledger.errors import NotFoundError, ValidationError
from clinicledger.money import percent_of, round_half_up, validate_bps
from clinicledger.observability import COMMISSION_EVENTS_TOTAL, COMMISSION_SKIPS_TOTAL
from clinicledger.time_utils import ensure_utc, utc_now


logger = structlog.get_logger(__name__)

LEDGER = "sales_rep"
DEFAULT_MULTI_ITEM_MIN_QUANTITY = 2
MINUTES_PER_DAY = 24 * 60


class SalesPlanValidationError(ValidationError):
    """Raised when a sales-rep plan or product rule is inconsistent."""


class SalesRepNotFoundError(NotFoundError):
    pass


@dataclass
class SaleLine:
    amount_cents: int
    quantity: int = 1
    product_id: Optional[int] = None
    product_bundle_id: Optional[int] = None


@dataclass
class SaleEvent:
    clinic_id: int
    sales_rep_id: int
    source_event_id: str
    source_object_id: str
    amount_cents: int
    lines: List[SaleLine] = field(default_factory=list)
    patient_id: Optional[int] = None
    occurred_at: Optional[datetime] = None
    is_first_payment: Optional[bool] = None
    is_recurring: bool = False
    recurring_month: Optional[int] = None


@dataclass
class SaleBreakdown:
    base_cents: int = 0
    multi_item_bonus_cents: int = 0
    product_bonus_cents: int = 0
    total_cents: int = 0
    total_quantity: int = 0
    product_rule_ids: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class HourlyCompensation:
    minutes: int
    amount_cents: int
    unpriced_minutes: int = 0


def _skipped(reason: str, detail: Optional[str] = None, event_id: Optional[int] = None) -> CommissionResult:
    COMMISSION_SKIPS_TOTAL.labels(LEDGER, reason).inc()
    return CommissionResult(success=True, skipped=True, reason=reason, detail=detail, event_id=event_id)


def validate_plan(plan: SalesRepCommissionPlan) -> None:
    if plan.plan_type not in (RateType.FLAT.value, RateType.PERCENT.value):
        raise SalesPlanValidationError(f"Unknown plan type {plan.plan_type!r}")
    try:
        for name in ("percent_bps", "initial_percent_bps", "recurring_percent_bps", "multi_item_bonus_percent_bps"):
            validate_bps(getattr(plan, name), name)
    except ValueError as exc:
        raise SalesPlanValidationError(str(exc)) from exc
    if plan.multi_item_bonus_enabled:
        if plan.multi_item_bonus_type not in (RateType.FLAT.value, RateType.PERCENT.value):
            raise SalesPlanValidationError("Multi-item bonus needs a FLAT or PERCENT type")
        if plan.multi_item_min_quantity is not None and plan.multi_item_min_quantity < 2:
            raise SalesPlanValidationError("Multi-item minimum quantity must be at least 2")
    if plan.hold_days is not None and plan.hold_days < 0:
        raise SalesPlanValidationError("hold_days cannot be negative")


def validate_product_rule(rule: SalesRepProductRule) -> None:
    if (rule.product_id is None) == (rule.product_bundle_id is None):
        raise SalesPlanValidationError("A product rule targets exactly one of product_id or product_bundle_id")
    if rule.bonus_type == RateType.PERCENT.value:
        try:
            validate_bps(rule.percent_bps, "percent_bps")
        except ValueError as exc:
            raise SalesPlanValidationError(str(exc)) from exc
    elif rule.bonus_type != RateType.FLAT.value:
        raise SalesPlanValidationError(f"Unknown bonus type {rule.bonus_type!r}")


def _rule_matches(rule: SalesRepProductRule, line: SaleLine) -> bool:
    if rule.product_id is not None:
        return line.product_id == rule.product_id
    return rule.product_bundle_id is not None and line.product_bundle_id == rule.product_bundle_id


def calculate_sale_commission(
    plan: SalesRepCommissionPlan, sale: SaleEvent, rules: Sequence[SalesRepProductRule] = ()
) -> SaleBreakdown:
    """Return the commission breakdown for ``sale`` under ``plan``."""

    breakdown = SaleBreakdown()
    percent_bps, flat_cents = select_rates(plan, sale.is_recurring)
    breakdown.base_cents = calculate_commission(sale.amount_cents, plan.plan_type, flat_cents, percent_bps)
    breakdown.total_quantity = sum(max(0, line.quantity) for line in sale.lines)

    min_quantity = plan.multi_item_min_quantity or DEFAULT_MULTI_ITEM_MIN_QUANTITY
    if plan.multi_item_bonus_enabled and breakdown.total_quantity >= min_quantity:
        if plan.multi_item_bonus_type == RateType.PERCENT.value:
            breakdown.multi_item_bonus_cents = percent_of(sale.amount_cents, plan.multi_item_bonus_percent_bps or 0)
        elif plan.multi_item_bonus_type == RateType.FLAT.value:
            breakdown.multi_item_bonus_cents = plan.multi_item_bonus_flat_cents or 0

    for line in sale.lines:
        for rule in rules:
            if not _rule_matches(rule, line):
                continue
            if rule.bonus_type == RateType.PERCENT.value:
                breakdown.product_bonus_cents += percent_of(line.amount_cents, rule.percent_bps or 0)
            else:
                breakdown.product_bonus_cents += (rule.flat_amount_cents or 0) * max(0, line.quantity)
            if rule.id not in breakdown.product_rule_ids:
                breakdown.product_rule_ids.append(rule.id)
            break

    if (
        sale.is_recurring
        and plan.recurring_months is not None
        and sale.recurring_month is not None
        and sale.recurring_month > plan.recurring_months
    ):
        return SaleBreakdown(total_quantity=breakdown.total_quantity)

    breakdown.total_cents = breakdown.base_cents + breakdown.multi_item_bonus_cents + breakdown.product_bonus_cents
    return breakdown


def get_effective_assignment(
    session: Session, clinic_id: int, sales_rep_id: int, at: Optional[datetime] = None
) -> Optional[SalesRepPlanAssignment]:
    moment = ensure_utc(at) if at else utc_now()
    stmt = (
        select(SalesRepPlanAssignment)
        .where(
            SalesRepPlanAssignment.clinic_id == clinic_id,
            SalesRepPlanAssignment.sales_rep_id == sales_rep_id,
            SalesRepPlanAssignment.effective_from <= moment,
            sa.or_(SalesRepPlanAssignment.effective_to.is_(None), SalesRepPlanAssignment.effective_to >= moment),
        )
        .order_by(SalesRepPlanAssignment.effective_from.desc(), SalesRepPlanAssignment.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def get_effective_plan(
    session: Session, clinic_id: int, sales_rep_id: int, at: Optional[datetime] = None
) -> Optional[SalesRepCommissionPlan]:
    assignment = get_effective_assignment(session, clinic_id, sales_rep_id, at)
    if assignment is None:
        return None
    plan = session.get(SalesRepCommissionPlan, assignment.plan_id)
    if plan is None or not plan.is_active:
        return None
    return plan


def _is_first_sale(session: Session, clinic_id: int, patient_id: Optional[int], before: datetime) -> bool:
    if patient_id is None:
        return True
    stmt = select(func.count(SalesRepCommissionEvent.id)).where(
        SalesRepCommissionEvent.clinic_id == clinic_id,
        SalesRepCommissionEvent.patient_id == patient_id,
        SalesRepCommissionEvent.occurred_at < before,
    )
    return session.execute(stmt).scalar_one() == 0


def process_sale(session: Session, sale: SaleEvent) -> CommissionResult:
    """Record the sales-rep commission for ``sale``; idempotent per source event."""

    occurred_at = ensure_utc(sale.occurred_at) if sale.occurred_at else utc_now()
    log = logger.bind(clinic_id=sale.clinic_id, sales_rep_id=sale.sales_rep_id, source_event_id=sale.source_event_id)

    existing = session.execute(
        select(SalesRepCommissionEvent.id).where(
            SalesRepCommissionEvent.clinic_id == sale.clinic_id,
            SalesRepCommissionEvent.source_event_id == sale.source_event_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return _skipped("duplicate", "Event already processed", event_id=existing)

    rep = session.get(SalesRep, sale.sales_rep_id)
    if rep is None or rep.clinic_id != sale.clinic_id or not rep.is_active:
        return _skipped("rep_inactive", "Sales rep not active")

    plan = get_effective_plan(session, sale.clinic_id, sale.sales_rep_id, occurred_at)
    if plan is None:
        return _skipped("no_active_plan", "No active commission plan")

    first_payment = sale.is_first_payment
    if first_payment is None:
        first_payment = _is_first_sale(session, sale.clinic_id, sale.patient_id, occurred_at)
    if plan.applies_to == AppliesTo.FIRST_PAYMENT_ONLY.value and not first_payment and not sale.is_recurring:
        return _skipped("first_payment_only", "Plan only pays on the first payment")
    if sale.is_recurring and not plan.recurring_enabled:
        return _skipped("recurring_disabled", "Recurring commissions disabled")

    rules = list(
        session.execute(
            select(SalesRepProductRule).where(SalesRepProductRule.plan_id == plan.id).order_by(SalesRepProductRule.id)
        ).scalars()
    )
    breakdown = calculate_sale_commission(plan, sale, rules)
    if breakdown.total_cents <= 0:
        return _skipped("zero_commission", "Zero commission")

    hold_until = occurred_at + timedelta(days=plan.hold_days) if plan.hold_days and plan.hold_days > 0 else None
    try:
        with session.begin_nested():
            event = SalesRepCommissionEvent(
                clinic_id=sale.clinic_id,
                sales_rep_id=sale.sales_rep_id,
                plan_id=plan.id,
                patient_id=sale.patient_id,
                source_event_id=sale.source_event_id,
                source_object_id=sale.source_object_id,
                event_amount_cents=sale.amount_cents,
                base_commission_cents=breakdown.base_cents,
                multi_item_bonus_cents=breakdown.multi_item_bonus_cents,
                product_bonus_cents=breakdown.product_bonus_cents,
                commission_amount_cents=breakdown.total_cents,
                is_recurring=sale.is_recurring,
                status=CommissionStatus.PENDING.value,
                occurred_at=occurred_at,
                hold_until=hold_until,
                event_metadata={
                    "planName": plan.name,
                    "planType": plan.plan_type,
                    "totalQuantity": breakdown.total_quantity,
                    "productRuleIds": breakdown.product_rule_ids,
                },
            )
            session.add(event)
            session.flush()
    except IntegrityError:
        log.info("sales_commission_duplicate_constraint")
        return _skipped("duplicate", "Event already processed (constraint)")

    COMMISSION_EVENTS_TOTAL.labels(LEDGER).inc()
    log.info("sales_commission_event_created", event_id=event.id, amount_cents=breakdown.total_cents)
    return CommissionResult(success=True, event_id=event.id, amount_cents=breakdown.total_cents)


def reverse_sale_commission(
    session: Session, clinic_id: int, source_object_id: str, reason: Optional[str] = None
) -> CommissionResult:
    reversible = (CommissionStatus.PENDING.value, CommissionStatus.APPROVED.value)
    event = session.execute(
        select(SalesRepCommissionEvent)
        .where(
            SalesRepCommissionEvent.clinic_id == clinic_id,
            SalesRepCommissionEvent.source_object_id == source_object_id,
            SalesRepCommissionEvent.status.in_(reversible),
        )
        .order_by(SalesRepCommissionEvent.id)
        .limit(1)
    ).scalar_one_or_none()
    if event is None:
        return _skipped("not_found", "No commission event found")
    plan = session.get(SalesRepCommissionPlan, event.plan_id) if event.plan_id is not None else None
    if plan is None or not plan.clawback_enabled:
        return _skipped("clawback_disabled", "Clawback not enabled", event_id=event.id)

    result = session.execute(
        sa.update(SalesRepCommissionEvent)
        .where(
            SalesRepCommissionEvent.id == event.id,
            SalesRepCommissionEvent.status.in_(reversible),
            SalesRepCommissionEvent.reversed_at.is_(None),
        )
        .values(status=CommissionStatus.REVERSED.value, reversed_at=utc_now(), reversal_reason=reason or "refund")
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        return _skipped("already_reversed", "Already reversed", event_id=event.id)
    logger.info("sales_commission_reversed", event_id=event.id, sales_rep_id=event.sales_rep_id)
    return CommissionResult(success=True, event_id=event.id, amount_cents=event.commission_amount_cents)


def approve_pending_sales_commissions(
    session: Session, clinic_id: Optional[int] = None, now: Optional[datetime] = None
) -> int:
    moment = ensure_utc(now) if now else utc_now()
    stmt = (
        sa.update(SalesRepCommissionEvent)
        .where(
            SalesRepCommissionEvent.status == CommissionStatus.PENDING.value,
            sa.or_(SalesRepCommissionEvent.hold_until.is_(None), SalesRepCommissionEvent.hold_until <= moment),
        )
        .values(status=CommissionStatus.APPROVED.value, approved_at=moment)
        .execution_options(synchronize_session="fetch")
    )
    if clinic_id is not None:
        stmt = stmt.where(SalesRepCommissionEvent.clinic_id == clinic_id)
    count = session.execute(stmt).rowcount or 0
    logger.info("sales_commissions_approved", clinic_id=clinic_id, count=count)
    return count


# ---------------------------------------------------------------------------
# Hourly compensation
# ---------------------------------------------------------------------------


def record_hours(
    session: Session,
    clinic_id: int,
    sales_rep_id: int,
    work_date: date,
    minutes: int,
    note: Optional[str] = None,
) -> SalesRepTimeEntry:
    if minutes <= 0 or minutes > MINUTES_PER_DAY:
        raise ValidationError(f"minutes must be between 1 and {MINUTES_PER_DAY}; got {minutes}")
    rep = session.get(SalesRep, sales_rep_id)
    if rep is None or rep.clinic_id != clinic_id:
        raise SalesRepNotFoundError(f"Sales rep {sales_rep_id} not found in clinic {clinic_id}")
    entry = SalesRepTimeEntry(
        clinic_id=clinic_id, sales_rep_id=sales_rep_id, work_date=work_date, minutes=minutes, note=note
    )
    session.add(entry)
    session.flush()
    return entry


def _rate_for_day(assignments: Sequence[SalesRepPlanAssignment], work_date: date) -> Optional[int]:
    day_start = datetime.combine(work_date, time.min, tzinfo=timezone.utc)
    day_end = day_start + timedelta(days=1)
    for assignment in assignments:
        starts = ensure_utc(assignment.effective_from)
        ends = ensure_utc(assignment.effective_to) if assignment.effective_to is not None else None
        if starts < day_end and (ends is None or ends >= day_start):
            return assignment.hourly_rate_cents
    return None


def hourly_compensation(session: Session, sales_rep_id: int, start: date, end: date) -> HourlyCompensation:
    """Sum logged minutes in ``[start, end]`` priced at each day's hourly rate."""

    entries = list(
        session.execute(
            select(SalesRepTimeEntry)
            .where(
                SalesRepTimeEntry.sales_rep_id == sales_rep_id,
                SalesRepTimeEntry.work_date >= start,
                SalesRepTimeEntry.work_date <= end,
            )
            .order_by(SalesRepTimeEntry.work_date)
        ).scalars()
    )
    assignments = list(
        session.execute(
            select(SalesRepPlanAssignment)
            .where(SalesRepPlanAssignment.sales_rep_id == sales_rep_id)
            .order_by(SalesRepPlanAssignment.effective_from.desc(), SalesRepPlanAssignment.id.desc())
        ).scalars()
    )
    total = Decimal(0)
    minutes = 0
    unpriced = 0
    rates: Dict[date, Optional[int]] = {}
    for entry in entries:
        minutes += entry.minutes
        if entry.work_date not in rates:
            rates[entry.work_date] = _rate_for_day(assignments, entry.work_date)
        rate = rates[entry.work_date]
        if rate is None:
            unpriced += entry.minutes
            continue
        total += Decimal(entry.minutes) * Decimal(rate) / 60
    return HourlyCompensation(minutes=minutes, amount_cents=round_half_up(total), unpriced_minutes=unpriced)


__all__ = [
    "SalesPlanValidationError",
    "SalesRepNotFoundError",
    "SaleLine",
    "SaleEvent",
    "SaleBreakdown",
    "HourlyCompensation",
    "validate_plan",
    "validate_product_rule",
    "calculate_sale_commission",
    "get_effective_assignment",
    "get_effective_plan",
    "process_sale",
    "reverse_sale_commission",
    "approve_pending_sales_commissions",
    "record_hours",
    "hourly_compensation",
]
