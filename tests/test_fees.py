from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from clinicledger import fees
from clinicledger.db import models


MARCH_2 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def providers(orm_session, clinic):
    platform = models.Provider(clinic_id=clinic.id, name='Dr. Platform', is_platform_provider=True)
    outside = models.Provider(clinic_id=clinic.id, name='Dr. Outside')
    orm_session.add_all([platform, outside])
    orm_session.flush()
    return platform, outside


@pytest.fixture
def fee_config(orm_session, clinic):
    return fees.upsert_fee_config(
        orm_session,
        clinic.id,
        prescription_fee_type='FLAT',
        prescription_fee_amount=1500,
        transmission_fee_type='PERCENTAGE',
        transmission_fee_amount=300,
        prescription_cycle_days=30,
    )


def test_normalize_medication_key():
    assert fees.normalize_medication_key('Semaglutide', '2.5 mg', 'Vial') == 'semaglutide-25-mg-vial'
    assert fees.normalize_medication_key('Tirzepatide', '5mg') == 'tirzepatide-5mg'
    assert fees.normalize_medication_key('B12 / Methylcobalamin') == 'b12-methylcobalamin'


def test_calculate_fee_amount():
    assert fees.calculate_fee_amount('FLAT', 1500, None) == 1500
    assert fees.calculate_fee_amount('PERCENTAGE', 300, 25000) == 750
    # Without an order total the configured rate is charged as cents.
    assert fees.calculate_fee_amount('PERCENTAGE', 300, None) == 300


def test_upsert_fee_config_validation(orm_session, clinic):
    config = fees.upsert_fee_config(orm_session, clinic.id, transmission_fee_amount=250)
    assert (config.prescription_fee_type, config.prescription_cycle_days, config.admin_fee_type) == (
        'FLAT',
        90,
        'NONE',
    )
    updated = fees.upsert_fee_config(orm_session, clinic.id, admin_fee_type=models.AdminFeeType.FLAT_WEEKLY, admin_fee_amount=5000)
    assert updated.id == config.id
    assert updated.admin_fee_type == 'FLAT_WEEKLY'

    for values in (
        {'prescription_fee_amount': -1},
        {'transmission_fee_type': 'PERCENTAGE', 'transmission_fee_amount': 10001},
        {'prescription_fee_type': 'TIERED'},
        {'admin_fee_type': 'MONTHLY'},
        {'admin_fee_type': 'PERCENTAGE_WEEKLY', 'admin_fee_amount': 20000},
        {'prescription_cycle_days': -3},
        {'surprise': 1},
    ):
        with pytest.raises(fees.FeeConfigError):
            fees.upsert_fee_config(orm_session, clinic.id, **values)
        orm_session.expire_all()


def test_fee_type_follows_provider(orm_session, clinic, providers, fee_config, make_patient):
    platform, outside = providers
    patient = make_patient(clinic.id)

    prescription = fees.record_prescription_fee(
        orm_session, clinic.id, 'ord-1', platform.id, medication_key='semaglutide-25mg', patient_id=patient.id,
        occurred_at=MARCH_2,
    )
    transmission = fees.record_prescription_fee(
        orm_session, clinic.id, 'ord-2', outside.id, medication_key='b12', order_total_cents=20000,
        occurred_at=MARCH_2,
    )

    assert (prescription.fee_type, prescription.amount_cents, prescription.status) == ('PRESCRIPTION', 1500, 'PENDING')
    assert (transmission.fee_type, transmission.amount_cents) == ('TRANSMISSION', 600)
    assert transmission.calculation_details['calculation_type'] == 'PERCENTAGE'


def test_repeated_order_returns_existing_fee(orm_session, clinic, providers, fee_config):
    platform, _ = providers
    first = fees.record_prescription_fee(orm_session, clinic.id, 'ord-1', platform.id, medication_key='b12')
    again = fees.record_prescription_fee(orm_session, clinic.id, 'ord-1', platform.id, medication_key='b12')
    assert again.id == first.id


def test_order_with_both_fee_types_resolves_to_first(orm_session, clinic, providers, fee_config):
    platform, _ = providers
    first = fees.record_prescription_fee(orm_session, clinic.id, 'ord-1', platform.id, medication_key='b12')
    orm_session.add(
        models.PlatformFeeEvent(
            clinic_id=clinic.id,
            fee_type='TRANSMISSION',
            order_id='ord-1',
            amount_cents=300,
            status='PENDING',
            occurred_at=MARCH_2,
        )
    )
    orm_session.flush()

    again = fees.record_prescription_fee(orm_session, clinic.id, 'ord-1', platform.id, medication_key='b12')
    voided = fees.void_fee_by_order(orm_session, clinic.id, 'ord-1', 'order cancelled')

    assert again.id == first.id
    assert (voided.id, voided.status) == (first.id, 'VOIDED')


def test_no_fee_without_config_or_provider(orm_session, clinic, providers):
    platform, _ = providers
    assert fees.record_prescription_fee(orm_session, clinic.id, 'ord-1', platform.id, medication_key='b12') is None
    fees.upsert_fee_config(orm_session, clinic.id, prescription_fee_amount=1500)
    assert fees.record_prescription_fee(orm_session, clinic.id, 'ord-1', 424242, medication_key='b12') is None


def test_prescription_cycle_waives_refills(orm_session, clinic, providers, fee_config, make_patient):
    platform, _ = providers
    patient = make_patient(clinic.id)

    def order(order_id, days, medication='semaglutide-25mg'):
        return fees.record_prescription_fee(
            orm_session,
            clinic.id,
            order_id,
            platform.id,
            medication_key=medication,
            patient_id=patient.id,
            occurred_at=MARCH_2 + timedelta(days=days),
        )

    charged = order('ord-1', 0)
    refill = order('ord-2', 10)
    other_drug = order('ord-3', 10, medication='b12')
    after_cycle = order('ord-4', 31)
    refill_again = order('ord-5', 40)

    assert charged.status == 'PENDING'
    assert (refill.status, refill.waived_reason, refill.amount_cents) == ('WAIVED', 'prescription_cycle', 1500)
    assert refill.calculation_details['next_eligible_at'] == (MARCH_2 + timedelta(days=30)).isoformat()
    assert other_drug.status == 'PENDING'
    assert after_cycle.status == 'PENDING'
    assert refill_again.status == 'WAIVED'

    cycle = fees.get_prescription_cycle(orm_session, clinic.id, patient.id, 'semaglutide-25mg')
    assert cycle.last_order_id == 'ord-4'


def test_waiver_rule_with_per_patient_limit(orm_session, clinic, providers, fee_config, make_patient):
    _, outside = providers
    first_patient = make_patient(clinic.id)
    second_patient = make_patient(clinic.id)
    rule = models.FeeWaiverRule(
        clinic_id=clinic.id,
        name='Intro month',
        fee_type='TRANSMISSION',
        medication_key_prefix='semaglutide',
        max_waivers_per_patient=1,
        effective_from=MARCH_2 - timedelta(days=1),
    )
    orm_session.add(rule)
    orm_session.flush()

    def order(order_id, patient, medication='semaglutide-25mg', days=0):
        return fees.record_prescription_fee(
            orm_session,
            clinic.id,
            order_id,
            outside.id,
            medication_key=medication,
            patient_id=patient.id,
            order_total_cents=10000,
            occurred_at=MARCH_2 + timedelta(days=days),
        )

    waived = order('ord-1', first_patient)
    other_medication = order('ord-2', first_patient, medication='b12')
    second_patient_fee = order('ord-3', second_patient)

    assert (waived.status, waived.waived_reason) == ('WAIVED', f'waiver_rule:{rule.id}')
    assert other_medication.status == 'PENDING'
    assert second_patient_fee.waived_reason == f'waiver_rule:{rule.id}'

    # The rule is used up for the first patient, who has no cycle on file
    # because waived orders do not start one.
    repeat = order('ord-4', first_patient, days=1)
    assert repeat.status == 'PENDING'
    assert repeat.amount_cents == 300


def test_waiver_rule_outside_effective_window(orm_session, clinic, providers, fee_config):
    platform, _ = providers
    orm_session.add(
        models.FeeWaiverRule(
            clinic_id=clinic.id,
            name='Expired',
            effective_from=MARCH_2 - timedelta(days=30),
            effective_to=MARCH_2 - timedelta(days=1),
        )
    )
    orm_session.flush()
    fee = fees.record_prescription_fee(
        orm_session, clinic.id, 'ord-1', platform.id, medication_key='b12', occurred_at=MARCH_2
    )
    assert fee.status == 'PENDING'


def test_flat_admin_fee_once_per_week(orm_session, clinic):
    fees.upsert_fee_config(orm_session, clinic.id, admin_fee_type='FLAT_WEEKLY', admin_fee_amount=2500)
    start, end = fees.week_bounds(MARCH_2)
    assert (start, end) == (datetime(2026, 3, 1, tzinfo=timezone.utc), datetime(2026, 3, 8, tzinfo=timezone.utc))

    first = fees.record_admin_fee(orm_session, clinic.id, start, end)
    again = fees.record_admin_fee(orm_session, clinic.id, start, end)

    assert (first.fee_type, first.amount_cents, first.status) == ('ADMIN', 2500, 'PENDING')
    assert again.id == first.id
    assert first.occurred_at == end


def test_concurrent_admin_fee_returns_existing_event(orm_session, clinic, monkeypatch):
    fees.upsert_fee_config(orm_session, clinic.id, admin_fee_type='FLAT_WEEKLY', admin_fee_amount=2500)
    start, end = fees.week_bounds(MARCH_2)
    first = fees.record_admin_fee(orm_session, clinic.id, start, end)

    lookup = fees._period_fee
    calls = []

    def missed_once(*args):
        calls.append(args)
        return None if len(calls) == 1 else lookup(*args)

    monkeypatch.setattr(fees, '_period_fee', missed_once)
    again = fees.record_admin_fee(orm_session, clinic.id, start, end)

    assert len(calls) == 2
    assert again.id == first.id


def test_percentage_admin_fee_uses_period_sales(orm_session, clinic, providers):
    platform, _ = providers
    fees.upsert_fee_config(
        orm_session,
        clinic.id,
        prescription_fee_amount=1000,
        admin_fee_type='PERCENTAGE_WEEKLY',
        admin_fee_amount=250,
    )
    start, end = fees.week_bounds(MARCH_2)
    for order_id, total, moment in (
        ('ord-1', 40000, MARCH_2),
        ('ord-2', 20000, MARCH_2 + timedelta(days=2)),
        ('ord-3', 99999, end),
    ):
        fees.record_prescription_fee(
            orm_session, clinic.id, order_id, platform.id, medication_key='b12', order_total_cents=total,
            occurred_at=moment,
        )
    voided = fees.record_prescription_fee(
        orm_session, clinic.id, 'ord-4', platform.id, medication_key='b12', order_total_cents=50000,
        occurred_at=MARCH_2,
    )
    fees.void_fee(orm_session, voided.id, 'cancelled')

    assert fees.period_sales(orm_session, clinic.id, start, end) == 60000
    event = fees.record_admin_fee(orm_session, clinic.id, start, end)
    assert event.amount_cents == 1500
    assert event.calculation_details['base_amount'] == 60000


def test_admin_fee_skipped_when_not_configured_or_zero(orm_session, clinic):
    start, end = fees.week_bounds(MARCH_2)
    assert fees.record_admin_fee(orm_session, clinic.id, start, end) is None
    fees.upsert_fee_config(orm_session, clinic.id, admin_fee_type='PERCENTAGE_WEEKLY', admin_fee_amount=250)
    assert fees.record_admin_fee(orm_session, clinic.id, start, end) is None
    count = orm_session.execute(sa.select(sa.func.count(models.PlatformFeeEvent.id))).scalar_one()
    assert count == 0


def test_void_and_waive_transitions(orm_session, clinic, providers, fee_config):
    platform, _ = providers
    fee = fees.record_prescription_fee(orm_session, clinic.id, 'ord-1', platform.id, medication_key='b12')
    other = fees.record_prescription_fee(orm_session, clinic.id, 'ord-2', platform.id, medication_key='b12')

    waived = fees.waive_fee(orm_session, fee.id, 'goodwill')
    assert (waived.status, waived.waived_reason) == ('WAIVED', 'goodwill')
    with pytest.raises(fees.FeeStateError, match='Cannot waive fee with status: WAIVED'):
        fees.waive_fee(orm_session, fee.id, 'again')

    voided = fees.void_fee_by_order(orm_session, clinic.id, 'ord-2', 'order cancelled')
    assert voided.id == other.id
    assert fees.void_fee(orm_session, other.id, 'twice').voided_reason == 'order cancelled'
    assert fees.void_fee_by_order(orm_session, clinic.id, 'ord-missing', 'n/a') is None

    other.status = 'PAID'
    orm_session.flush()
    with pytest.raises(fees.FeeStateError):
        fees.void_fee(orm_session, other.id, 'refund')
    with pytest.raises(fees.FeeEventNotFoundError):
        fees.void_fee(orm_session, 424242, 'missing')


def test_fee_summary(orm_session, clinic, providers, fee_config):
    platform, outside = providers
    fees.upsert_fee_config(orm_session, clinic.id, admin_fee_type='FLAT_WEEKLY', admin_fee_amount=2500)
    fees.record_prescription_fee(orm_session, clinic.id, 'ord-1', platform.id, medication_key='b12', occurred_at=MARCH_2)
    fees.record_prescription_fee(
        orm_session, clinic.id, 'ord-2', outside.id, medication_key='b12', order_total_cents=10000, occurred_at=MARCH_2
    )
    waived = fees.record_prescription_fee(
        orm_session, clinic.id, 'ord-3', platform.id, medication_key='b12', occurred_at=MARCH_2
    )
    fees.waive_fee(orm_session, waived.id, 'goodwill')
    start, end = fees.week_bounds(MARCH_2)
    fees.record_admin_fee(orm_session, clinic.id, start, end)
    fees.record_prescription_fee(
        orm_session, clinic.id, 'ord-4', platform.id, medication_key='b12', occurred_at=MARCH_2 + timedelta(days=30)
    )

    summary = fees.fee_summary(orm_session, clinic.id, start, end)

    assert summary == {
        'total_prescription_fees': 1500,
        'total_transmission_fees': 300,
        'total_admin_fees': 2500,
        'prescription_count': 1,
        'transmission_count': 1,
        'admin_count': 1,
        'pending_count': 3,
        'invoiced_count': 0,
        'paid_count': 0,
        'total_amount_cents': 4300,
    }
    assert fees.fee_summary(orm_session, clinic.id)['prescription_count'] == 2
