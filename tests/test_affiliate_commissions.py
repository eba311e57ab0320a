from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import sqlalchemy as sa

from clinicledger.commissions import affiliate
from clinicledger.db import models


def _plan(**values):
    defaults = dict(
        plan_type='PERCENT',
        percent_bps=1000,
        flat_amount_cents=None,
        initial_percent_bps=None,
        initial_flat_amount_cents=None,
        recurring_percent_bps=None,
        recurring_flat_amount_cents=None,
        tiers_enabled=False,
        recurring_enabled=False,
        recurring_months=None,
        recurring_decay_pct=None,
    )
    defaults.update(values)
    return SimpleNamespace(**defaults)


def _tier(id, level, **values):
    defaults = dict(
        id=id,
        name=f'Level {level}',
        level=level,
        min_conversions=0,
        min_revenue_cents=0,
        percent_bps=None,
        flat_amount_cents=None,
        bonus_cents=0,
    )
    defaults.update(values)
    return SimpleNamespace(**defaults)


def _rate(id, **values):
    defaults = dict(
        id=id,
        is_active=True,
        priority=0,
        product_sku=None,
        product_category=None,
        price_min_cents=None,
        price_max_cents=None,
        percent_bps=None,
        flat_amount_cents=None,
    )
    defaults.update(values)
    return SimpleNamespace(**defaults)


def _promotion(id, **values):
    defaults = dict(
        id=id,
        name=f'Promo {id}',
        is_active=True,
        starts_at=datetime.now(timezone.utc) - timedelta(days=1),
        ends_at=None,
        max_uses=None,
        uses_count=0,
        min_order_cents=None,
        affiliate_ids=None,
        ref_codes=None,
        bonus_percent_bps=None,
        bonus_flat_cents=None,
    )
    defaults.update(values)
    return SimpleNamespace(**defaults)


def _payment(clinic, patient, event_id='evt_1', **values):
    values.setdefault('amount_cents', 10000)
    values.setdefault('stripe_object_id', f'pi_{event_id}')
    return affiliate.PaymentEvent(clinic_id=clinic.id, patient_id=patient.id, stripe_event_id=event_id, **values)


# ---------------------------------------------------------------------------
# Pure calculation
# ---------------------------------------------------------------------------


def test_calculate_commission():
    assert affiliate.calculate_commission(10000, 'PERCENT', None, 1000) == 1000
    assert affiliate.calculate_commission(10000, 'FLAT', 2500, None) == 2500
    assert affiliate.calculate_commission(0, 'FLAT', 2500, None) == 0
    assert affiliate.calculate_commission(-500, 'PERCENT', None, 1000) == 0
    # 49.95 cents rounds half up to 50
    assert affiliate.calculate_commission(333, 'PERCENT', None, 1500) == 50
    assert affiliate.calculate_commission(1001, 'PERCENT', None, 50) == 5


def test_select_rates_prefers_payment_kind_overrides():
    plan = _plan(percent_bps=1000, initial_percent_bps=2000, recurring_flat_amount_cents=300, flat_amount_cents=100)
    assert affiliate.select_rates(plan, is_recurring=False) == (2000, 100)
    assert affiliate.select_rates(plan, is_recurring=True) == (1000, 300)


def test_select_tier_uses_highest_qualifying_level():
    tiers = [
        _tier(1, 1, min_conversions=5),
        _tier(2, 2, min_conversions=20, min_revenue_cents=100000),
        _tier(3, 3, min_conversions=100),
    ]
    assert affiliate.select_tier(tiers, 3, 0) is None
    assert affiliate.select_tier(tiers, 25, 50000).id == 1
    assert affiliate.select_tier(tiers, 25, 150000).id == 2


def test_recurring_multiplier():
    assert affiliate.recurring_multiplier(3, None, 50.0) == 1.0
    assert affiliate.recurring_multiplier(13, None, 50.0) == 0.5
    assert affiliate.recurring_multiplier(13, 12, 50.0) == 0.0
    assert affiliate.recurring_multiplier(12, 12, None) == 1.0


def test_match_product_rate_order():
    rules = [
        _rate(1, priority=1, price_min_cents=5000, price_max_cents=20000, percent_bps=1200),
        _rate(2, priority=5, product_category='GLP-1', percent_bps=1500),
        _rate(3, priority=9, product_sku='SEMA-1', flat_amount_cents=4000),
        _rate(4, priority=10, product_sku='SEMA-1', flat_amount_cents=9000, is_active=False),
    ]
    rule, label = affiliate.match_product_rate(rules, 10000, 'SEMA-1', 'glp-1')
    assert (rule.id, label) == (3, 'SKU: SEMA-1')
    rule, label = affiliate.match_product_rate(rules, 10000, None, 'glp-1')
    assert (rule.id, label) == (2, 'Category: GLP-1')
    rule, label = affiliate.match_product_rate(rules, 10000)
    assert (rule.id, label) == (1, 'Price range: 5000-20000')
    assert affiliate.match_product_rate(rules, 100) is None


def test_enhanced_commission_combines_tier_product_and_promotion():
    plan = _plan(tiers_enabled=True)
    tiers = [_tier(1, 1, min_conversions=5, percent_bps=1500), _tier(2, 2, min_conversions=20, percent_bps=2000, bonus_cents=500)]
    ctx = affiliate.CommissionContext(lifetime_conversions=25, affiliate_id=7, product_sku='SEMA-1')

    breakdown = affiliate.calculate_enhanced_commission(
        plan,
        10000,
        ctx,
        tiers=tiers,
        product_rates=[_rate(9, product_sku='SEMA-1', percent_bps=2500)],
        promotions=[_promotion(4, bonus_percent_bps=500), _promotion(5, bonus_flat_cents=100, affiliate_ids=[8])],
    )

    assert breakdown.tier_id == 2
    assert breakdown.tier_bonus_cents == 500
    assert breakdown.product_rule_id == 9
    assert breakdown.product_adjustment_cents == 500
    assert breakdown.base_cents == 2500
    assert breakdown.promotion_bonus_cents == 500
    assert breakdown.promotion_ids == [4]
    assert breakdown.total_cents == 3500


def test_enhanced_commission_recurring_decay():
    plan = _plan(recurring_enabled=True, recurring_percent_bps=500, recurring_decay_pct=50.0)
    ctx = affiliate.CommissionContext(is_recurring=True, recurring_month=14)
    breakdown = affiliate.calculate_enhanced_commission(plan, 10001, ctx)
    # 5% of 10001 cents rounds to 500 before the multiplier halves it
    assert breakdown.multiplier == 0.5
    assert breakdown.total_cents == 250


def test_promotion_window_and_limits():
    now = datetime.now(timezone.utc)
    ctx = affiliate.CommissionContext(affiliate_id=1, ref_code='JORDAN10', now=now)
    assert affiliate.promotion_applies(_promotion(1), 1000, ctx)
    assert not affiliate.promotion_applies(_promotion(1, starts_at=now + timedelta(hours=1)), 1000, ctx)
    assert not affiliate.promotion_applies(_promotion(1, ends_at=now - timedelta(seconds=1)), 1000, ctx)
    assert not affiliate.promotion_applies(_promotion(1, max_uses=3, uses_count=3), 1000, ctx)
    assert not affiliate.promotion_applies(_promotion(1, min_order_cents=5000), 1000, ctx)
    assert not affiliate.promotion_applies(_promotion(1, ref_codes=['OTHER']), 1000, ctx)
    assert affiliate.promotion_applies(_promotion(1, ref_codes=['JORDAN10'], affiliate_ids=[1]), 1000, ctx)


# ---------------------------------------------------------------------------
# Processing payments
# ---------------------------------------------------------------------------


def test_payment_creates_pending_commission(orm_session, clinic, affiliate_setup):
    partner, plan, patient = affiliate_setup

    result = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient))

    assert result.success and not result.skipped
    assert result.amount_cents == 1000
    event = orm_session.get(models.AffiliateCommissionEvent, result.event_id)
    assert event.status == 'PENDING'
    assert event.hold_until is None
    assert event.base_commission_cents == 1000
    assert event.event_metadata['refCode'] == 'JORDAN10'
    assert event.event_metadata['planName'] == 'Standard 10%'
    assert event.event_metadata['fraudCheck'] == {'riskLevel': 'LOW', 'riskScore': 0}
    orm_session.refresh(partner)
    assert partner.lifetime_conversions == 1
    assert partner.lifetime_revenue_cents == 10000


def test_duplicate_payment_is_skipped(orm_session, clinic, affiliate_setup):
    _, _, patient = affiliate_setup
    first = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient))
    again = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient))

    assert again.skipped
    assert again.reason == affiliate.SKIP_DUPLICATE
    assert again.event_id == first.event_id
    count = orm_session.execute(sa.select(sa.func.count(models.AffiliateCommissionEvent.id))).scalar_one()
    assert count == 1


def test_unattributed_patient_is_skipped(orm_session, clinic, affiliate_setup, make_patient):
    walk_in = make_patient(clinic.id)
    result = affiliate.process_payment_for_commission(orm_session, _payment(clinic, walk_in))
    assert result.reason == affiliate.SKIP_NO_ATTRIBUTION


def test_inactive_affiliate_is_skipped(orm_session, clinic, affiliate_setup):
    partner, _, patient = affiliate_setup
    partner.status = models.AffiliateStatus.SUSPENDED.value
    orm_session.flush()
    result = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient))
    assert result.reason == affiliate.SKIP_AFFILIATE_INACTIVE


def test_payment_outside_assignment_window_has_no_plan(orm_session, clinic, affiliate_setup):
    _, _, patient = affiliate_setup
    long_ago = datetime.now(timezone.utc) - timedelta(days=800)
    result = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient, occurred_at=long_ago))
    assert result.reason == affiliate.SKIP_NO_PLAN


def test_first_payment_only_plan(orm_session, clinic, affiliate_setup):
    _, plan, patient = affiliate_setup
    plan.applies_to = models.AppliesTo.FIRST_PAYMENT_ONLY.value
    orm_session.flush()
    now = datetime.now(timezone.utc)

    first = affiliate.process_payment_for_commission(
        orm_session, _payment(clinic, patient, 'evt_a', occurred_at=now - timedelta(days=2))
    )
    second = affiliate.process_payment_for_commission(
        orm_session, _payment(clinic, patient, 'evt_b', occurred_at=now - timedelta(days=1))
    )

    assert not first.skipped
    assert second.reason == affiliate.SKIP_FIRST_PAYMENT_ONLY


def test_recurring_payment_requires_recurring_plan(orm_session, clinic, affiliate_setup):
    _, _, patient = affiliate_setup
    result = affiliate.process_payment_for_commission(
        orm_session, _payment(clinic, patient, is_recurring=True, recurring_month=2)
    )
    assert result.reason == affiliate.SKIP_RECURRING_DISABLED


def test_zero_commission_is_skipped(orm_session, clinic, affiliate_setup):
    _, _, patient = affiliate_setup
    result = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient, amount_cents=0))
    assert result.reason == affiliate.SKIP_ZERO_COMMISSION


def test_tier_bonus_and_limited_promotion(orm_session, clinic, affiliate_setup):
    _, plan, patient = affiliate_setup
    plan.tiers_enabled = True
    orm_session.add(models.AffiliateCommissionTier(plan_id=plan.id, name='Bronze', level=1, bonus_cents=100))
    promotion = models.AffiliatePromotion(
        plan_id=plan.id,
        name='Launch week',
        bonus_flat_cents=200,
        starts_at=datetime.now(timezone.utc) - timedelta(days=7),
        max_uses=1,
    )
    orm_session.add(promotion)
    orm_session.flush()

    first = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient, 'evt_a'))
    orm_session.expire_all()
    second = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient, 'evt_b'))

    assert first.amount_cents == 1300
    assert second.amount_cents == 1100
    orm_session.refresh(promotion)
    assert promotion.uses_count == 1
    event = orm_session.get(models.AffiliateCommissionEvent, first.event_id)
    assert event.tier_bonus_cents == 100
    assert event.promotion_bonus_cents == 200
    assert event.event_metadata['tierName'] == 'Bronze'
    assert event.event_metadata['promotionName'] == 'Launch week'


def test_hold_period_then_approval(orm_session, clinic, affiliate_setup):
    _, plan, patient = affiliate_setup
    plan.hold_days = 14
    orm_session.flush()
    occurred = datetime.now(timezone.utc) - timedelta(days=1)

    result = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient, occurred_at=occurred))
    event = orm_session.get(models.AffiliateCommissionEvent, result.event_id)
    assert event.hold_until.replace(tzinfo=timezone.utc) == occurred + timedelta(days=14)

    assert affiliate.approve_pending_commissions(orm_session, clinic.id, now=occurred + timedelta(days=2)) == 0
    assert affiliate.approve_pending_commissions(orm_session, clinic.id, now=occurred + timedelta(days=15)) == 1
    orm_session.expire_all()
    event = orm_session.get(models.AffiliateCommissionEvent, result.event_id)
    assert event.status == 'APPROVED'
    assert event.approved_at is not None


def test_self_referral_blocks_commission(orm_session, clinic, affiliate_setup, make_patient):
    partner, _, _ = affiliate_setup
    own_patient = make_patient(
        clinic.id, email='Partner@Example.test', attribution_affiliate_id=partner.id, attribution_ref_code='JORDAN10'
    )

    result = affiliate.process_payment_for_commission(orm_session, _payment(clinic, own_patient))

    assert result.reason == affiliate.SKIP_FRAUD
    assert 'SELF_REFERRAL' in result.detail
    alert = orm_session.execute(sa.select(models.AffiliateFraudAlert)).scalar_one()
    assert (alert.alert_type, alert.severity, alert.affected_amount_cents) == ('SELF_REFERRAL', 'CRITICAL', 10000)
    assert alert.commission_event_id is None


def test_failing_fraud_check_does_not_block_commission(orm_session, clinic, affiliate_setup, monkeypatch):
    _, _, patient = affiliate_setup

    def broken_check(session, request):
        raise RuntimeError('ip lookup unavailable')

    monkeypatch.setattr(affiliate, 'perform_fraud_check', broken_check)
    result = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient))

    assert result.success and not result.skipped
    event = orm_session.get(models.AffiliateCommissionEvent, result.event_id)
    assert event.event_metadata['fraudCheck'] == {'riskLevel': 'LOW', 'riskScore': 0}


# ---------------------------------------------------------------------------
# Refunds
# ---------------------------------------------------------------------------


def test_refund_reverses_commission(orm_session, clinic, affiliate_setup):
    partner, _, patient = affiliate_setup
    created = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient, 'evt_r'))

    result = affiliate.reverse_commission_for_refund(
        orm_session, affiliate.RefundEvent(clinic_id=clinic.id, stripe_object_id='pi_evt_r')
    )

    assert result.event_id == created.event_id
    assert result.amount_cents == 1000
    orm_session.expire_all()
    event = orm_session.get(models.AffiliateCommissionEvent, created.event_id)
    assert event.status == 'REVERSED'
    assert event.reversal_reason == 'charge.refunded'
    assert orm_session.get(models.Affiliate, partner.id).lifetime_revenue_cents == 0

    repeat = affiliate.reverse_commission_for_refund(
        orm_session, affiliate.RefundEvent(clinic_id=clinic.id, stripe_object_id='pi_evt_r')
    )
    assert repeat.reason == affiliate.SKIP_NOT_FOUND


def test_refund_without_clawback(orm_session, clinic, affiliate_setup):
    _, plan, patient = affiliate_setup
    plan.clawback_enabled = False
    orm_session.flush()
    created = affiliate.process_payment_for_commission(orm_session, _payment(clinic, patient, 'evt_c'))

    result = affiliate.reverse_commission_for_refund(
        orm_session, affiliate.RefundEvent(clinic_id=clinic.id, stripe_object_id='pi_evt_c', reason='requested')
    )

    assert result.reason == affiliate.SKIP_CLAWBACK_DISABLED
    assert orm_session.get(models.AffiliateCommissionEvent, created.event_id).status == 'PENDING'


def test_paid_commission_is_not_reversed(orm_session, clinic, affiliate_setup, make_commission_event):
    partner, plan, _ = affiliate_setup
    make_commission_event(clinic.id, partner.id, plan_id=plan.id, stripe_object_id='pi_paid', status='PAID')

    result = affiliate.reverse_commission_for_refund(
        orm_session, affiliate.RefundEvent(clinic_id=clinic.id, stripe_object_id='pi_paid')
    )
    assert result.reason == affiliate.SKIP_NOT_FOUND


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def test_commission_stats_suppresses_small_days(orm_session, clinic, affiliate_setup, make_commission_event):
    partner, _, _ = affiliate_setup
    busy_day = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
    quiet_day = datetime(2026, 3, 3, 15, 0, tzinfo=timezone.utc)
    for _ in range(5):
        make_commission_event(clinic.id, partner.id, occurred_at=busy_day)
    make_commission_event(clinic.id, partner.id, occurred_at=quiet_day, status='PENDING', commission_amount_cents=700)
    make_commission_event(clinic.id, partner.id, occurred_at=quiet_day, status='REVERSED')

    stats = affiliate.commission_stats(orm_session, clinic.id, partner.id)

    assert stats['approved'] == {'count': 5, 'amount_cents': 5000}
    assert stats['pending'] == {'count': 1, 'amount_cents': 700}
    assert stats['reversed'] == {'count': 1, 'amount_cents': 1000}
    assert stats['paid'] == {'count': 0, 'amount_cents': 0}
    assert stats['totals'] == {'conversions': 6, 'commission_cents': 5700}
    assert stats['daily_trends'] == [
        {'date': '2026-03-03', 'conversions': '<5', 'revenue_cents': None, 'commission_cents': None},
        {'date': '2026-03-02', 'conversions': 5, 'revenue_cents': 50000, 'commission_cents': 5000},
    ]


def test_commission_stats_date_filter(orm_session, clinic, affiliate_setup, make_commission_event):
    partner, _, _ = affiliate_setup
    make_commission_event(clinic.id, partner.id, occurred_at=datetime(2026, 1, 10, tzinfo=timezone.utc))
    make_commission_event(clinic.id, partner.id, occurred_at=datetime(2026, 2, 10, tzinfo=timezone.utc))

    stats = affiliate.commission_stats(
        orm_session, clinic.id, since=datetime(2026, 2, 1, tzinfo=timezone.utc)
    )

    assert stats['totals']['conversions'] == 1
