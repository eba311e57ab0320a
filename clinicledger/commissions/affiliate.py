"""Affiliate commission ledger.

Billing events are turned into ``AffiliateCommissionEvent`` rows.  The
calculation itself (:func:`calculate_enhanced_commission`) is a pure function
over the plan and its rule tables so that it can be tested and replayed
without a database; :func:`process_payment_for_commission` loads the rules,
screens the conversion for fraud and writes the ledger row idempotently on
``(clinic_id, stripe_event_id)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import sqlalchemy as sa
import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicledger.commissions.fraud import FraudCheckRequest, perform_fraud_check, record_fraud_alerts
from clinicledger.db.models import (
    Affiliate,
    AffiliateCommissionEvent,
    AffiliateCommissionPlan,
    AffiliateCommissionTier,
    AffiliatePlanAssignment,
    AffiliateProductRate,
    AffiliatePromotion,
    AffiliateStatus,
    AppliesTo,
    CommissionStatus,
    Patient,
    RateType,
)
from clinicledger.money import percent_of, round_half_up
from clinicledger.observability import COMMISSION_EVENTS_TOTAL, COMMISSION_SKIPS_TOTAL
from clinicledger.time_utils import day_key, ensure_utc, optional_utc, utc_now


logger = structlog.get_logger(__name__)

LEDGER = "affiliate"
SMALL_NUMBER_THRESHOLD = 5
TREND_DAYS = 90
DECAY_AFTER_MONTH = 12

SKIP_DUPLICATE = "duplicate"
SKIP_NO_ATTRIBUTION = "no_attribution"
SKIP_AFFILIATE_INACTIVE = "affiliate_inactive"
SKIP_NO_PLAN = "no_active_plan"
SKIP_FIRST_PAYMENT_ONLY = "first_payment_only"
SKIP_RECURRING_DISABLED = "recurring_disabled"
SKIP_ZERO_COMMISSION = "zero_commission"
SKIP_FRAUD = "fraud"
SKIP_NOT_FOUND = "not_found"
SKIP_CLAWBACK_DISABLED = "clawback_disabled"
SKIP_ALREADY_REVERSED = "already_reversed"


@dataclass
class CommissionContext:
    """Per-event inputs to :func:`calculate_enhanced_commission`."""

    is_recurring: bool = False
    recurring_month: Optional[int] = None
    affiliate_id: Optional[int] = None
    ref_code: Optional[str] = None
    product_sku: Optional[str] = None
    product_category: Optional[str] = None
    lifetime_conversions: int = 0
    lifetime_revenue_cents: int = 0
    now: Optional[datetime] = None


@dataclass
class CommissionBreakdown:
    base_cents: int = 0
    tier_bonus_cents: int = 0
    promotion_bonus_cents: int = 0
    product_adjustment_cents: int = 0
    multiplier: float = 1.0
    total_cents: int = 0
    tier_id: Optional[int] = None
    tier_name: Optional[str] = None
    promotion_ids: List[int] = field(default_factory=list)
    promotion_name: Optional[str] = None
    product_rule_id: Optional[int] = None
    product_rule_name: Optional[str] = None


@dataclass
class PaymentEvent:
    clinic_id: int
    patient_id: int
    stripe_event_id: str
    stripe_object_id: str
    amount_cents: int
    stripe_event_type: str = "payment_intent.succeeded"
    occurred_at: Optional[datetime] = None
    is_first_payment: Optional[bool] = None
    is_recurring: bool = False
    recurring_month: Optional[int] = None
    product_sku: Optional[str] = None
    product_category: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class RefundEvent:
    clinic_id: int
    stripe_object_id: str
    stripe_event_type: str = "charge.refunded"
    reason: Optional[str] = None


@dataclass
class CommissionResult:
    success: bool
    event_id: Optional[int] = None
    amount_cents: int = 0
    skipped: bool = False
    reason: Optional[str] = None
    detail: Optional[str] = None


def _skipped(reason: str, detail: Optional[str] = None, event_id: Optional[int] = None) -> CommissionResult:
    COMMISSION_SKIPS_TOTAL.labels(LEDGER, reason).inc()
    return CommissionResult(success=True, skipped=True, reason=reason, detail=detail, event_id=event_id)


# ---------------------------------------------------------------------------
# Pure calculation
# ---------------------------------------------------------------------------


def calculate_commission(
    amount_cents: int, plan_type: str, flat_amount_cents: Optional[int], percent_bps: Optional[int]
) -> int:
    """Return the base commission for a single rate."""

    if amount_cents <= 0:
        return 0
    if plan_type == RateType.FLAT.value:
        return flat_amount_cents or 0
    if plan_type == RateType.PERCENT.value:
        return percent_of(amount_cents, percent_bps or 0)
    return 0


def select_rates(plan: AffiliateCommissionPlan, is_recurring: bool) -> Tuple[Optional[int], Optional[int]]:
    """Return ``(percent_bps, flat_amount_cents)`` for the payment kind."""

    if is_recurring:
        percent = plan.recurring_percent_bps if plan.recurring_percent_bps is not None else plan.percent_bps
        flat = (
            plan.recurring_flat_amount_cents if plan.recurring_flat_amount_cents is not None else plan.flat_amount_cents
        )
    else:
        percent = plan.initial_percent_bps if plan.initial_percent_bps is not None else plan.percent_bps
        flat = plan.initial_flat_amount_cents if plan.initial_flat_amount_cents is not None else plan.flat_amount_cents
    return percent, flat


def select_tier(
    tiers: Sequence[AffiliateCommissionTier], lifetime_conversions: int, lifetime_revenue_cents: int
) -> Optional[AffiliateCommissionTier]:
    """Return the highest tier whose thresholds the affiliate meets."""

    for tier in sorted(tiers, key=lambda item: item.level, reverse=True):
        if lifetime_conversions >= tier.min_conversions and lifetime_revenue_cents >= tier.min_revenue_cents:
            return tier
    return None


def _product_rule_label(rule: AffiliateProductRate, matched_on: str) -> str:
    if matched_on == "sku":
        return f"SKU: {rule.product_sku}"
    if matched_on == "category":
        return f"Category: {rule.product_category}"
    return f"Price range: {rule.price_min_cents}-{rule.price_max_cents}"


def match_product_rate(
    rules: Sequence[AffiliateProductRate],
    amount_cents: int,
    product_sku: Optional[str] = None,
    product_category: Optional[str] = None,
) -> Optional[Tuple[AffiliateProductRate, str]]:
    """Return the first matching active rule by descending priority."""

    active = [rule for rule in rules if rule.is_active]
    for rule in sorted(active, key=lambda item: item.priority, reverse=True):
        if rule.product_sku and product_sku and rule.product_sku == product_sku:
            return rule, _product_rule_label(rule, "sku")
        if (
            rule.product_category
            and product_category
            and rule.product_category.lower() == product_category.lower()
        ):
            return rule, _product_rule_label(rule, "category")
        if amount_cents and rule.price_min_cents is not None and rule.price_max_cents is not None:
            if rule.price_min_cents <= amount_cents <= rule.price_max_cents:
                return rule, _product_rule_label(rule, "price")
    return None


def promotion_applies(promotion: AffiliatePromotion, amount_cents: int, ctx: CommissionContext) -> bool:
    """Return whether ``promotion`` is live and targets this conversion."""

    if not promotion.is_active:
        return False
    now = ensure_utc(ctx.now) if ctx.now else utc_now()
    if ensure_utc(promotion.starts_at) > now:
        return False
    if promotion.ends_at is not None and ensure_utc(promotion.ends_at) < now:
        return False
    if promotion.max_uses and (promotion.uses_count or 0) >= promotion.max_uses:
        return False
    if promotion.min_order_cents and amount_cents < promotion.min_order_cents:
        return False
    if promotion.affiliate_ids and ctx.affiliate_id not in promotion.affiliate_ids:
        return False
    if promotion.ref_codes and ctx.ref_code and ctx.ref_code not in promotion.ref_codes:
        return False
    return True


def recurring_multiplier(
    recurring_month: int, recurring_months: Optional[int], recurring_decay_pct: Optional[float]
) -> float:
    if recurring_months is not None and recurring_month > recurring_months:
        return 0.0
    if recurring_decay_pct is not None and recurring_month > DECAY_AFTER_MONTH:
        return recurring_decay_pct / 100
    return 1.0


def calculate_enhanced_commission(
    plan: AffiliateCommissionPlan,
    amount_cents: int,
    ctx: CommissionContext,
    tiers: Sequence[AffiliateCommissionTier] = (),
    product_rates: Sequence[AffiliateProductRate] = (),
    promotions: Sequence[AffiliatePromotion] = (),
) -> CommissionBreakdown:
    """Compute the full commission breakdown for one payment.

    Rates are picked for the payment kind, then a qualifying tier may
    override them and add its bonus, then a product rule may replace them.
    Promotion bonuses are added on top and recurring payments are scaled by
    the recurring multiplier before the final rounding.
    """

    breakdown = CommissionBreakdown()
    percent_bps, flat_cents = select_rates(plan, ctx.is_recurring)

    if plan.tiers_enabled:
        tier = select_tier(tiers, ctx.lifetime_conversions, ctx.lifetime_revenue_cents)
        if tier is not None:
            breakdown.tier_id = tier.id
            breakdown.tier_name = tier.name
            if tier.percent_bps is not None:
                percent_bps = tier.percent_bps
            if tier.flat_amount_cents is not None:
                flat_cents = tier.flat_amount_cents
            breakdown.tier_bonus_cents = tier.bonus_cents or 0

    matched = match_product_rate(product_rates, amount_cents, ctx.product_sku, ctx.product_category)
    if matched is not None:
        rule, label = matched
        breakdown.product_rule_id = rule.id
        breakdown.product_rule_name = label
        with_plan_rate = calculate_commission(amount_cents, plan.plan_type, flat_cents, percent_bps)
        rule_type = RateType.PERCENT.value if rule.percent_bps is not None else RateType.FLAT.value
        with_rule_rate = calculate_commission(amount_cents, rule_type, rule.flat_amount_cents, rule.percent_bps)
        breakdown.product_adjustment_cents = with_rule_rate - with_plan_rate
        if rule.percent_bps is not None:
            percent_bps = rule.percent_bps
        if rule.flat_amount_cents is not None:
            flat_cents = rule.flat_amount_cents

    breakdown.base_cents = calculate_commission(amount_cents, plan.plan_type, flat_cents, percent_bps)

    for promotion in promotions:
        if not promotion_applies(promotion, amount_cents, ctx):
            continue
        if promotion.bonus_percent_bps:
            breakdown.promotion_bonus_cents += percent_of(amount_cents, promotion.bonus_percent_bps)
        if promotion.bonus_flat_cents:
            breakdown.promotion_bonus_cents += promotion.bonus_flat_cents
        breakdown.promotion_ids.append(promotion.id)
        breakdown.promotion_name = promotion.name

    if ctx.is_recurring and plan.recurring_enabled and ctx.recurring_month:
        breakdown.multiplier = recurring_multiplier(
            ctx.recurring_month, plan.recurring_months, plan.recurring_decay_pct
        )

    subtotal = breakdown.base_cents + breakdown.tier_bonus_cents + breakdown.promotion_bonus_cents
    breakdown.total_cents = round_half_up(Decimal(subtotal) * Decimal(str(breakdown.multiplier)))
    return breakdown


# ---------------------------------------------------------------------------
# Loading plans and rules
# ---------------------------------------------------------------------------


def get_effective_plan(
    session: Session, clinic_id: int, affiliate_id: int, at: Optional[datetime] = None
) -> Optional[AffiliateCommissionPlan]:
    """Return the active plan assigned to the affiliate at ``at``."""

    moment = ensure_utc(at) if at else utc_now()
    stmt = (
        select(AffiliateCommissionPlan)
        .join(AffiliatePlanAssignment, AffiliatePlanAssignment.plan_id == AffiliateCommissionPlan.id)
        .where(
            AffiliatePlanAssignment.clinic_id == clinic_id,
            AffiliatePlanAssignment.affiliate_id == affiliate_id,
            AffiliatePlanAssignment.effective_from <= moment,
            sa.or_(AffiliatePlanAssignment.effective_to.is_(None), AffiliatePlanAssignment.effective_to >= moment),
            AffiliateCommissionPlan.is_active.is_(True),
        )
        .order_by(AffiliatePlanAssignment.effective_from.desc(), AffiliatePlanAssignment.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def load_plan_rules(
    session: Session, plan: AffiliateCommissionPlan
) -> Tuple[List[AffiliateCommissionTier], List[AffiliateProductRate], List[AffiliatePromotion]]:
    tiers: List[AffiliateCommissionTier] = []
    if plan.tiers_enabled:
        tiers = list(
            session.execute(
                select(AffiliateCommissionTier)
                .where(AffiliateCommissionTier.plan_id == plan.id)
                .order_by(AffiliateCommissionTier.level.desc())
            ).scalars()
        )
    product_rates = list(
        session.execute(
            select(AffiliateProductRate)
            .where(AffiliateProductRate.plan_id == plan.id, AffiliateProductRate.is_active.is_(True))
            .order_by(AffiliateProductRate.priority.desc(), AffiliateProductRate.id)
        ).scalars()
    )
    promotions = list(
        session.execute(
            select(AffiliatePromotion)
            .where(AffiliatePromotion.plan_id == plan.id, AffiliatePromotion.is_active.is_(True))
            .order_by(AffiliatePromotion.id)
        ).scalars()
    )
    return tiers, product_rates, promotions


def is_first_payment(
    session: Session, clinic_id: int, patient_id: int, before: Optional[datetime] = None
) -> bool:
    """Return ``True`` when the patient has no earlier commissioned payment."""

    stmt = select(func.count(AffiliateCommissionEvent.id)).where(
        AffiliateCommissionEvent.clinic_id == clinic_id,
        AffiliateCommissionEvent.patient_id == patient_id,
    )
    if before is not None:
        stmt = stmt.where(AffiliateCommissionEvent.occurred_at < ensure_utc(before))
    return session.execute(stmt).scalar_one() == 0


def _find_event(session: Session, clinic_id: int, stripe_event_id: str) -> Optional[AffiliateCommissionEvent]:
    stmt = select(AffiliateCommissionEvent).where(
        AffiliateCommissionEvent.clinic_id == clinic_id,
        AffiliateCommissionEvent.stripe_event_id == stripe_event_id,
    )
    return session.execute(stmt).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------


def process_payment_for_commission(session: Session, payment: PaymentEvent) -> CommissionResult:
    """Record the affiliate commission earned by ``payment``, if any."""

    occurred_at = ensure_utc(payment.occurred_at) if payment.occurred_at else utc_now()
    log = logger.bind(clinic_id=payment.clinic_id, stripe_event_id=payment.stripe_event_id)

    existing = _find_event(session, payment.clinic_id, payment.stripe_event_id)
    if existing is not None:
        log.debug("commission_duplicate_event", event_id=existing.id)
        return _skipped(SKIP_DUPLICATE, "Event already processed", event_id=existing.id)

    patient = session.get(Patient, payment.patient_id)
    if patient is None or patient.clinic_id != payment.clinic_id or patient.attribution_affiliate_id is None:
        return _skipped(SKIP_NO_ATTRIBUTION, "No affiliate attribution")

    affiliate = session.get(Affiliate, patient.attribution_affiliate_id)
    if (
        affiliate is None
        or affiliate.clinic_id != payment.clinic_id
        or affiliate.status != AffiliateStatus.ACTIVE.value
    ):
        return _skipped(SKIP_AFFILIATE_INACTIVE, "Affiliate not active")

    plan = get_effective_plan(session, payment.clinic_id, affiliate.id, occurred_at)
    if plan is None:
        return _skipped(SKIP_NO_PLAN, "No active commission plan")

    first_payment = payment.is_first_payment
    if first_payment is None:
        first_payment = is_first_payment(session, payment.clinic_id, patient.id, occurred_at)
    if plan.applies_to == AppliesTo.FIRST_PAYMENT_ONLY.value and not first_payment and not payment.is_recurring:
        return _skipped(SKIP_FIRST_PAYMENT_ONLY, "Plan only pays on the first payment")
    if payment.is_recurring and not plan.recurring_enabled:
        return _skipped(SKIP_RECURRING_DISABLED, "Recurring commissions disabled")

    tiers, product_rates, promotions = load_plan_rules(session, plan)
    ctx = CommissionContext(
        is_recurring=payment.is_recurring,
        recurring_month=payment.recurring_month,
        affiliate_id=affiliate.id,
        ref_code=patient.attribution_ref_code,
        product_sku=payment.product_sku,
        product_category=payment.product_category,
        lifetime_conversions=affiliate.lifetime_conversions or 0,
        lifetime_revenue_cents=affiliate.lifetime_revenue_cents or 0,
        now=occurred_at,
    )
    breakdown = calculate_enhanced_commission(plan, payment.amount_cents, ctx, tiers, product_rates, promotions)
    if breakdown.total_cents <= 0:
        return _skipped(SKIP_ZERO_COMMISSION, "Zero commission")

    fraud_request = FraudCheckRequest(
        clinic_id=payment.clinic_id,
        affiliate_id=affiliate.id,
        amount_cents=payment.amount_cents,
        patient_email=patient.email,
        ip_address=payment.ip_address,
        occurred_at=occurred_at,
    )
    fraud_result = None
    try:
        with session.begin_nested():
            fraud_result = perform_fraud_check(session, fraud_request)
    except Exception:
        log.exception("fraud_check_failed", affiliate_id=affiliate.id)
    if fraud_result is not None and fraud_result.recommendation == "reject":
        log.warning(
            "commission_blocked_by_fraud",
            affiliate_id=affiliate.id,
            risk_score=fraud_result.risk_score,
            alert_types=fraud_result.alert_types,
        )
        record_fraud_alerts(session, fraud_request, fraud_result)
        return _skipped(SKIP_FRAUD, "Fraud detected: " + ", ".join(fraud_result.alert_types))

    hold_until = occurred_at + timedelta(days=plan.hold_days) if plan.hold_days and plan.hold_days > 0 else None
    metadata: Dict[str, Any] = {
        "refCode": patient.attribution_ref_code,
        "planName": plan.name,
        "planType": plan.plan_type,
        "tierName": breakdown.tier_name,
        "promotionName": breakdown.promotion_name,
        "appliedProductRule": breakdown.product_rule_name,
        "recurringMultiplier": breakdown.multiplier,
        "fraudCheck": {
            "riskLevel": fraud_result.risk_level if fraud_result is not None else "LOW",
            "riskScore": fraud_result.risk_score if fraud_result is not None else 0,
        },
    }

    try:
        with session.begin_nested():
            event = AffiliateCommissionEvent(
                clinic_id=payment.clinic_id,
                affiliate_id=affiliate.id,
                plan_id=plan.id,
                patient_id=patient.id,
                stripe_event_id=payment.stripe_event_id,
                stripe_object_id=payment.stripe_object_id,
                stripe_event_type=payment.stripe_event_type,
                event_amount_cents=payment.amount_cents,
                base_commission_cents=breakdown.base_cents,
                tier_bonus_cents=breakdown.tier_bonus_cents,
                promotion_bonus_cents=breakdown.promotion_bonus_cents,
                product_adjustment_cents=breakdown.product_adjustment_cents,
                commission_amount_cents=breakdown.total_cents,
                is_recurring=payment.is_recurring,
                recurring_month=payment.recurring_month,
                status=CommissionStatus.PENDING.value,
                occurred_at=occurred_at,
                hold_until=hold_until,
                event_metadata=metadata,
            )
            session.add(event)
            session.flush()
            if breakdown.promotion_ids:
                session.execute(
                    sa.update(AffiliatePromotion)
                    .where(AffiliatePromotion.id.in_(breakdown.promotion_ids))
                    .values(uses_count=AffiliatePromotion.uses_count + 1)
                    .execution_options(synchronize_session="fetch")
                )
            session.execute(
                sa.update(Affiliate)
                .where(Affiliate.id == affiliate.id)
                .values(
                    lifetime_conversions=Affiliate.lifetime_conversions + 1,
                    lifetime_revenue_cents=Affiliate.lifetime_revenue_cents + payment.amount_cents,
                )
                .execution_options(synchronize_session="fetch")
            )
    except IntegrityError:
        log.info("commission_duplicate_constraint", affiliate_id=affiliate.id)
        return _skipped(SKIP_DUPLICATE, "Event already processed (constraint)")

    if fraud_result is not None and fraud_result.alerts:
        record_fraud_alerts(session, fraud_request, fraud_result, commission_event=event)

    COMMISSION_EVENTS_TOTAL.labels(LEDGER).inc()
    log.info(
        "commission_event_created",
        event_id=event.id,
        affiliate_id=affiliate.id,
        plan_id=plan.id,
        amount_cents=breakdown.total_cents,
        is_recurring=payment.is_recurring,
    )
    return CommissionResult(success=True, event_id=event.id, amount_cents=breakdown.total_cents)


def reverse_commission_for_refund(session: Session, refund: RefundEvent) -> CommissionResult:
    """Claw back the commission earned on a refunded charge."""

    log = logger.bind(clinic_id=refund.clinic_id, stripe_object_id=refund.stripe_object_id)
    reversible = (CommissionStatus.PENDING.value, CommissionStatus.APPROVED.value)
    stmt = (
        select(AffiliateCommissionEvent)
        .where(
            AffiliateCommissionEvent.clinic_id == refund.clinic_id,
            AffiliateCommissionEvent.stripe_object_id == refund.stripe_object_id,
            AffiliateCommissionEvent.status.in_(reversible),
        )
        .order_by(AffiliateCommissionEvent.id)
        .limit(1)
    )
    event = session.execute(stmt).scalar_one_or_none()
    if event is None:
        log.debug("commission_reversal_no_event")
        return _skipped(SKIP_NOT_FOUND, "No commission event found")

    plan = session.get(AffiliateCommissionPlan, event.plan_id) if event.plan_id is not None else None
    if plan is None or not plan.clawback_enabled:
        return _skipped(SKIP_CLAWBACK_DISABLED, "Clawback not enabled", event_id=event.id)

    now = utc_now()
    result = session.execute(
        sa.update(AffiliateCommissionEvent)
        .where(
            AffiliateCommissionEvent.id == event.id,
            AffiliateCommissionEvent.status.in_(reversible),
            AffiliateCommissionEvent.reversed_at.is_(None),
        )
        .values(
            status=CommissionStatus.REVERSED.value,
            reversed_at=now,
            reversal_reason=refund.reason or refund.stripe_event_type,
        )
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        log.info("commission_already_reversed", event_id=event.id)
        return _skipped(SKIP_ALREADY_REVERSED, "Already reversed", event_id=event.id)

    session.execute(
        sa.update(Affiliate)
        .where(Affiliate.id == event.affiliate_id)
        .values(lifetime_revenue_cents=Affiliate.lifetime_revenue_cents - event.event_amount_cents)
        .execution_options(synchronize_session="fetch")
    )
    log.info("commission_reversed", event_id=event.id, affiliate_id=event.affiliate_id, reason=refund.reason)
    return CommissionResult(success=True, event_id=event.id, amount_cents=event.commission_amount_cents)


def approve_pending_commissions(
    session: Session, clinic_id: Optional[int] = None, now: Optional[datetime] = None
) -> int:
    """Approve PENDING events whose hold period has elapsed."""

    moment = ensure_utc(now) if now else utc_now()
    stmt = (
        sa.update(AffiliateCommissionEvent)
        .where(
            AffiliateCommissionEvent.status == CommissionStatus.PENDING.value,
            sa.or_(AffiliateCommissionEvent.hold_until.is_(None), AffiliateCommissionEvent.hold_until <= moment),
        )
        .values(status=CommissionStatus.APPROVED.value, approved_at=moment)
        .execution_options(synchronize_session="fetch")
    )
    if clinic_id is not None:
        stmt = stmt.where(AffiliateCommissionEvent.clinic_id == clinic_id)
    count = session.execute(stmt).rowcount or 0
    logger.info("affiliate_commissions_approved", clinic_id=clinic_id, count=count)
    return count


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def commission_stats(
    session: Session,
    clinic_id: int,
    affiliate_id: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Aggregate commission counts and cents without exposing any patient.

    Daily trends with fewer than five conversions are suppressed.
    """

    filters = [AffiliateCommissionEvent.clinic_id == clinic_id]
    if affiliate_id is not None:
        filters.append(AffiliateCommissionEvent.affiliate_id == affiliate_id)
    since = optional_utc(since)
    until = optional_utc(until)
    if since is not None:
        filters.append(AffiliateCommissionEvent.occurred_at >= since)
    if until is not None:
        filters.append(AffiliateCommissionEvent.occurred_at <= until)

    by_status_stmt = (
        select(
            AffiliateCommissionEvent.status,
            func.count(AffiliateCommissionEvent.id),
            func.coalesce(func.sum(AffiliateCommissionEvent.commission_amount_cents), 0),
        )
        .where(*filters)
        .group_by(AffiliateCommissionEvent.status)
    )
    stats: Dict[str, Any] = {
        status.value.lower(): {"count": 0, "amount_cents": 0} for status in CommissionStatus
    }
    for status, count, amount in session.execute(by_status_stmt):
        stats[status.lower()] = {"count": int(count), "amount_cents": int(amount)}

    earning = [stats[key] for key in ("pending", "approved", "paid")]
    stats["totals"] = {
        "conversions": sum(item["count"] for item in earning),
        "commission_cents": sum(item["amount_cents"] for item in earning),
    }

    trend_stmt = select(
        AffiliateCommissionEvent.occurred_at,
        AffiliateCommissionEvent.event_amount_cents,
        AffiliateCommissionEvent.commission_amount_cents,
    ).where(*filters, AffiliateCommissionEvent.status != CommissionStatus.REVERSED.value)
    days: Dict[str, Dict[str, int]] = {}
    for occurred_at, revenue, commission in session.execute(trend_stmt):
        bucket = days.setdefault(day_key(occurred_at), {"conversions": 0, "revenue_cents": 0, "commission_cents": 0})
        bucket["conversions"] += 1
        bucket["revenue_cents"] += revenue
        bucket["commission_cents"] += commission

    trends = []
    for key in sorted(days, reverse=True)[:TREND_DAYS]:
        bucket = days[key]
        if bucket["conversions"] < SMALL_NUMBER_THRESHOLD:
            trends.append({"date": key, "conversions": "<5", "revenue_cents": None, "commission_cents": None})
        else:
            trends.append({"date": key, **bucket})
    stats["daily_trends"] = trends
    return stats


__all__ = [
    "CommissionContext",
    "CommissionBreakdown",
    "PaymentEvent",
    "RefundEvent",
    "CommissionResult",
    "calculate_commission",
    "select_rates",
    "select_tier",
    "match_product_rate",
    "promotion_applies",
    "recurring_multiplier",
    "calculate_enhanced_commission",
    "get_effective_plan",
    "load_plan_rules",
    "is_first_payment",
    "process_payment_for_commission",
    "reverse_commission_for_refund",
    "approve_pending_commissions",
    "commission_stats",
]
