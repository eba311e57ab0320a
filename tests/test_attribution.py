from datetime import datetime, timedelta, timezone

import pytest

from clinicledger.commissions import attribution, fraud
from clinicledger.db import models
from clinicledger.errors import ValidationError
from clinicledger.security import hash_identifier


NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def partner(affiliate_setup):
    affiliate, _, _ = affiliate_setup
    return affiliate


@pytest.fixture
def second_partner(orm_session, clinic):
    affiliate = models.Affiliate(
        clinic_id=clinic.id, display_name='Riley Partner', email='riley@example.test', ref_code='RILEY5'
    )
    orm_session.add(affiliate)
    orm_session.flush()
    return affiliate


def _touches(*days_ago):
    return [
        attribution.WeightedTouch(
            touch_id=index + 1, affiliate_id=index + 1, ref_code=None, created_at=NOW - timedelta(days=days)
        )
        for index, days in enumerate(days_ago)
    ]


def _weights(touches):
    return [round(touch.weight, 4) for touch in touches]


def test_single_touch_models():
    touches = _touches(10, 5, 1)

    assert _weights(attribution.apply_model(touches, 'FIRST_CLICK', NOW)) == [1.0, 0.0, 0.0]
    assert _weights(attribution.apply_model(touches, 'LAST_CLICK', NOW)) == [0.0, 0.0, 1.0]
    assert attribution.apply_model([], 'LINEAR', NOW) == []


def test_multi_touch_models_sum_to_one():
    touches = _touches(14, 7, 3, 0)

    linear = attribution.apply_model(touches, 'LINEAR', NOW)
    assert _weights(linear) == [0.25] * 4

    position = attribution.apply_model(touches, 'POSITION', NOW)
    assert _weights(position) == [0.4, 0.1, 0.1, 0.4]
    assert _weights(attribution.apply_model(_touches(3, 1), 'POSITION', NOW)) == [0.5, 0.5]

    decay = attribution.apply_model(touches, 'TIME_DECAY', NOW)
    weights = [touch.weight for touch in decay]
    assert weights == sorted(weights)
    # A touch one half-life older carries half the weight.
    assert weights[0] == pytest.approx(weights[1] / 2)
    for model in ('LINEAR', 'POSITION', 'TIME_DECAY'):
        assert sum(t.weight for t in attribution.apply_model(touches, model, NOW)) == pytest.approx(1.0)


def test_confidence_levels():
    assert attribution.determine_confidence(True, True, 2) == 'high'
    assert attribution.determine_confidence(False, True, 1) == 'medium'
    assert attribution.determine_confidence(True, True, 0) == 'low'


def test_record_touch_hashes_ip_and_normalizes_code(orm_session, clinic, partner):
    touch = attribution.record_touch(
        orm_session, clinic.id, ' jordan10 ', cookie_id='ck-1', ip_address='203.0.113.7', utm_source='newsletter'
    )

    assert touch.affiliate_id == partner.id
    assert touch.ref_code == 'JORDAN10'
    assert touch.touch_type == 'CLICK'
    assert touch.ip_address_hash == hash_identifier('203.0.113.7')
    assert touch.utm_source == 'newsletter'


def test_record_touch_ignores_unknown_and_inactive_codes(orm_session, clinic, partner):
    assert attribution.record_touch(orm_session, clinic.id, 'NOBODY', cookie_id='ck-1') is None

    partner.status = models.AffiliateStatus.SUSPENDED.value
    orm_session.flush()
    assert attribution.record_touch(orm_session, clinic.id, 'JORDAN10', cookie_id='ck-1') is None


def test_record_touch_validation(orm_session, clinic, partner):
    with pytest.raises(ValidationError):
        attribution.record_touch(orm_session, clinic.id, 'JORDAN10')
    with pytest.raises(ValidationError):
        attribution.record_touch(orm_session, clinic.id, 'JORDAN10', cookie_id='ck-1', touch_type='SWIPE')


def test_resolution_uses_new_and_returning_models(orm_session, clinic, partner, second_partner):
    attribution.record_touch(orm_session, clinic.id, 'JORDAN10', cookie_id='ck-9', occurred_at=NOW - timedelta(days=5))
    attribution.record_touch(orm_session, clinic.id, 'RILEY5', cookie_id='ck-9', occurred_at=NOW - timedelta(days=1))
    # Outside the default 30 day window.
    attribution.record_touch(orm_session, clinic.id, 'RILEY5', cookie_id='ck-9', occurred_at=NOW - timedelta(days=45))

    new = attribution.resolve_attribution(
        orm_session, attribution.AttributionRequest(clinic_id=clinic.id, cookie_id='ck-9', now=NOW)
    )
    assert (new.affiliate_id, new.model, new.confidence) == (partner.id, 'FIRST_CLICK', 'medium')
    assert len(new.touches) == 2

    returning = attribution.resolve_attribution(
        orm_session,
        attribution.AttributionRequest(clinic_id=clinic.id, cookie_id='ck-9', is_new_patient=False, now=NOW),
    )
    assert (returning.affiliate_id, returning.model) == (second_partner.id, 'LAST_CLICK')

    assert (
        attribution.resolve_attribution(
            orm_session, attribution.AttributionRequest(clinic_id=clinic.id, cookie_id='ck-other', now=NOW)
        )
        is None
    )


def test_clinic_config_and_linear_tie_goes_to_earliest(orm_session, clinic, partner, second_partner):
    orm_session.add(
        models.AffiliateAttributionConfig(
            clinic_id=clinic.id, new_patient_model='LINEAR', returning_patient_model='LAST_CLICK', cookie_window_days=7
        )
    )
    attribution.record_touch(orm_session, clinic.id, 'RILEY5', visitor_fingerprint='fp-1', occurred_at=NOW - timedelta(days=3))
    attribution.record_touch(orm_session, clinic.id, 'JORDAN10', visitor_fingerprint='fp-1', occurred_at=NOW - timedelta(days=2))
    attribution.record_touch(orm_session, clinic.id, 'JORDAN10', visitor_fingerprint='fp-1', occurred_at=NOW - timedelta(days=10))

    result = attribution.resolve_attribution(
        orm_session, attribution.AttributionRequest(clinic_id=clinic.id, visitor_fingerprint='fp-1', now=NOW)
    )

    assert result.model == 'LINEAR'
    assert result.weight == pytest.approx(0.5)
    assert result.affiliate_id == second_partner.id


def test_attribute_patient_from_tracked_touches(orm_session, clinic, partner, make_patient):
    touch = attribution.record_touch(orm_session, clinic.id, 'JORDAN10', cookie_id='ck-3')
    patient = make_patient(clinic.id)

    result = attribution.attribute_patient(orm_session, patient, cookie_id='ck-3')

    assert result.touch_id == touch.id
    assert (patient.attribution_affiliate_id, patient.attribution_ref_code) == (partner.id, 'JORDAN10')
    assert patient.attributed_at is not None
    assert touch.converted_patient_id == patient.id
    assert touch.converted_at is not None

    stored = attribution.get_patient_attribution(orm_session, patient.id)
    assert (stored.affiliate_id, stored.model) == (partner.id, 'STORED')


def test_intake_promo_code_attributes_once(orm_session, clinic, partner, make_patient):
    patient = make_patient(clinic.id)

    result = attribution.attribute_from_intake(
        orm_session, patient, 'jordan10', source='weight-loss', ip_address='198.51.100.30', now=NOW
    )

    assert (result.affiliate_id, result.model) == (partner.id, 'INTAKE_DIRECT')
    touch = orm_session.get(models.AffiliateTouch, result.touch_id)
    assert (touch.touch_type, touch.converted_patient_id, touch.utm_source) == ('POSTBACK', patient.id, 'weight-loss')
    assert touch.ip_address_hash == hash_identifier('198.51.100.30')
    assert partner.lifetime_conversions == 0

    assert attribution.attribute_from_intake(orm_session, patient, 'JORDAN10', now=NOW) is None
    assert attribution.get_patient_attribution(orm_session, make_patient(clinic.id).id) is None


def test_intake_conversions_feed_duplicate_ip_screening(orm_session, clinic, partner, make_patient):
    now = datetime.now(timezone.utc)
    for _ in range(3):
        attribution.attribute_from_intake(orm_session, make_patient(clinic.id), 'JORDAN10', ip_address='203.0.113.44')

    request = fraud.FraudCheckRequest(
        clinic_id=clinic.id, affiliate_id=partner.id, amount_cents=10000, ip_address='203.0.113.44'
    )
    alert = fraud.check_duplicate_ip(orm_session, request, fraud.FraudConfig(), now)

    assert alert is not None
    assert alert.evidence['conversions'] == 3
