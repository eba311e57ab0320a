"""Affiliate attribution.

Marketing touches (clicks, impressions, postbacks) are ledgered as
``AffiliateTouch`` rows keyed by a visitor fingerprint and/or cookie id.
When a patient converts, the clinic's attribution model weights the
visitor's touches inside the cookie window; the heaviest touch wins, is
marked converted and stamped onto the patient.  Intake forms carrying a
promo code attribute the patient directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from clinicledger.db.models import (
    Affiliate,
    AffiliateAttributionConfig,
    AffiliateStatus,
    AffiliateTouch,
    AttributionModel,
    Patient,
    TouchType,
)
from clinicledger.errors import NotFoundError, ValidationError
from clinicledger.security import hash_identifier
from clinicledger.time_utils import ensure_utc, utc_now


logger = structlog.get_logger(__name__)

TIME_DECAY_HALF_LIFE = timedelta(days=7)
POSITION_END_WEIGHT = 0.4
STORED_MODEL = "STORED"
INTAKE_MODEL = "INTAKE_DIRECT"


@dataclass(frozen=True)
class AttributionConfig:
    new_patient_model: str = AttributionModel.FIRST_CLICK.value
    returning_patient_model: str = AttributionModel.LAST_CLICK.value
    cookie_window_days: int = 30


@dataclass(frozen=True)
class WeightedTouch:
    touch_id: int
    affiliate_id: int
    ref_code: Optional[str]
    created_at: datetime
    weight: float = 0.0


@dataclass
class AttributionRequest:
    clinic_id: int
    visitor_fingerprint: Optional[str] = None
    cookie_id: Optional[str] = None
    is_new_patient: bool = True
    now: Optional[datetime] = None


@dataclass
class AttributionResult:
    affiliate_id: int
    ref_code: Optional[str]
    touch_id: Optional[int]
    model: str
    confidence: str
    weight: float
    touches: List[WeightedTouch] = field(default_factory=list)


def get_attribution_config(session: Session, clinic_id: int) -> AttributionConfig:
    row = session.get(AffiliateAttributionConfig, clinic_id)
    if row is None:
        return AttributionConfig()
    return AttributionConfig(
        new_patient_model=row.new_patient_model,
        returning_patient_model=row.returning_patient_model,
        cookie_window_days=row.cookie_window_days,
    )


def normalize_ref_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    return code.strip().upper() or None


def active_affiliate_for_code(session: Session, clinic_id: int, ref_code: Optional[str]) -> Optional[Affiliate]:
    code = normalize_ref_code(ref_code)
    if code is None:
        return None
    stmt = select(Affiliate).where(Affiliate.clinic_id == clinic_id, Affiliate.ref_code == code)
    affiliate = session.execute(stmt).scalar_one_or_none()
    if affiliate is None:
        logger.info("attribution_ref_code_unknown", clinic_id=clinic_id, ref_code=code)
        return None
    if affiliate.status != AffiliateStatus.ACTIVE.value:
        logger.warning(
            "attribution_affiliate_inactive", clinic_id=clinic_id, affiliate_id=affiliate.id, status=affiliate.status
        )
        return None
    return affiliate


def record_touch(
    session: Session,
    clinic_id: int,
    ref_code: str,
    *,
    touch_type: str = TouchType.CLICK.value,
    visitor_fingerprint: Optional[str] = None,
    cookie_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    landing_page: Optional[str] = None,
    utm_source: Optional[str] = None,
    utm_medium: Optional[str] = None,
    utm_campaign: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> Optional[AffiliateTouch]:
    """Ledger a touch for an active affiliate's ref code.

    Unknown or inactive codes are ignored and return ``None``.  The raw IP
    address is never stored, only its hash.
    """

    if touch_type not in {item.value for item in TouchType}:
        raise ValidationError(f"Unknown touch type {touch_type!r}")
    if not visitor_fingerprint and not cookie_id:
        raise ValidationError("visitor_fingerprint or cookie_id is required")
    affiliate = active_affiliate_for_code(session, clinic_id, ref_code)
    if affiliate is None:
        return None
    touch = AffiliateTouch(
        clinic_id=clinic_id,
        affiliate_id=affiliate.id,
        ref_code=affiliate.ref_code,
        touch_type=touch_type,
        visitor_fingerprint=visitor_fingerprint,
        cookie_id=cookie_id,
        ip_address_hash=hash_identifier(ip_address),
        landing_page=landing_page,
        utm_source=utm_source,
        utm_medium=utm_medium,
        utm_campaign=utm_campaign,
        created_at=ensure_utc(occurred_at) if occurred_at else utc_now(),
    )
    session.add(touch)
    session.flush()
    logger.debug("affiliate_touch_recorded", clinic_id=clinic_id, affiliate_id=affiliate.id, touch_id=touch.id)
    return touch


def find_touches(
    session: Session,
    clinic_id: int,
    visitor_fingerprint: Optional[str],
    cookie_id: Optional[str],
    window_days: int,
    now: datetime,
) -> List[WeightedTouch]:
    """Touches for the visitor inside the window, oldest first."""

    identifiers = []
    if visitor_fingerprint:
        identifiers.append(AffiliateTouch.visitor_fingerprint == visitor_fingerprint)
    if cookie_id:
        identifiers.append(AffiliateTouch.cookie_id == cookie_id)
    if not identifiers:
        return []
    stmt = (
        select(AffiliateTouch)
        .where(
            AffiliateTouch.clinic_id == clinic_id,
            AffiliateTouch.created_at >= ensure_utc(now) - timedelta(days=window_days),
            or_(*identifiers),
        )
        .order_by(AffiliateTouch.created_at, AffiliateTouch.id)
    )
    return [
        WeightedTouch(
            touch_id=touch.id,
            affiliate_id=touch.affiliate_id,
            ref_code=touch.ref_code,
            created_at=ensure_utc(touch.created_at),
        )
        for touch in session.execute(stmt).scalars()
    ]


def _weights(model: str, touches: List[WeightedTouch], now: datetime) -> List[float]:
    count = len(touches)
    if model == AttributionModel.FIRST_CLICK.value:
        return [1.0 if index == 0 else 0.0 for index in range(count)]
    if model == AttributionModel.LINEAR.value:
        return [1.0 / count] * count
    if model == AttributionModel.TIME_DECAY.value:
        raw = [0.5 ** ((now - touch.created_at) / TIME_DECAY_HALF_LIFE) for touch in touches]
        total = sum(raw)
        return [value / total if total > 0 else 0.0 for value in raw]
    if model == AttributionModel.POSITION.value:
        if count == 1:
            return [1.0]
        if count == 2:
            return [0.5, 0.5]
        middle = (1 - 2 * POSITION_END_WEIGHT) / (count - 2)
        return [POSITION_END_WEIGHT] + [middle] * (count - 2) + [POSITION_END_WEIGHT]
    # LAST_CLICK and anything unrecognised
    return [1.0 if index == count - 1 else 0.0 for index in range(count)]


def apply_model(touches: List[WeightedTouch], model: str, now: Optional[datetime] = None) -> List[WeightedTouch]:
    """Return ``touches`` with weights assigned by ``model``; weights sum to 1."""

    if not touches:
        return []
    now = ensure_utc(now) if now else utc_now()
    weights = _weights(model, touches, now)
    return [replace(touch, weight=weight) for touch, weight in zip(touches, weights)]


def determine_confidence(has_fingerprint: bool, has_cookie: bool, touch_count: int) -> str:
    if touch_count < 1:
        return "low"
    if has_fingerprint and has_cookie:
        return "high"
    if has_fingerprint or has_cookie:
        return "medium"
    return "low"


def resolve_attribution(session: Session, request: AttributionRequest) -> Optional[AttributionResult]:
    """Pick the affiliate credited for a visitor's conversion.

    New patients use the clinic's new-patient model (first click by
    default), returning patients the returning model (last click).  Ties go
    to the earliest touch.
    """

    now = ensure_utc(request.now) if request.now else utc_now()
    config = get_attribution_config(session, request.clinic_id)
    model = config.new_patient_model if request.is_new_patient else config.returning_patient_model
    touches = find_touches(
        session, request.clinic_id, request.visitor_fingerprint, request.cookie_id, config.cookie_window_days, now
    )
    if not touches:
        logger.info(
            "attribution_no_touches",
            clinic_id=request.clinic_id,
            has_fingerprint=bool(request.visitor_fingerprint),
            has_cookie=bool(request.cookie_id),
        )
        return None

    weighted = apply_model(touches, model, now)
    winner = weighted[0]
    for touch in weighted[1:]:
        if touch.weight > winner.weight:
            winner = touch
    confidence = determine_confidence(bool(request.visitor_fingerprint), bool(request.cookie_id), len(touches))
    logger.info(
        "attribution_resolved",
        clinic_id=request.clinic_id,
        model=model,
        touch_count=len(touches),
        affiliate_id=winner.affiliate_id,
        confidence=confidence,
    )
    return AttributionResult(
        affiliate_id=winner.affiliate_id,
        ref_code=winner.ref_code,
        touch_id=winner.touch_id,
        model=model,
        confidence=confidence,
        weight=winner.weight,
        touches=weighted,
    )


def get_patient_attribution(session: Session, patient_id: int) -> Optional[AttributionResult]:
    patient = session.get(Patient, patient_id)
    if patient is None or patient.attribution_affiliate_id is None:
        return None
    return AttributionResult(
        affiliate_id=patient.attribution_affiliate_id,
        ref_code=patient.attribution_ref_code,
        touch_id=None,
        model=STORED_MODEL,
        confidence="high",
        weight=1.0,
    )


def mark_touch_converted(
    session: Session, touch_id: int, patient_id: int, now: Optional[datetime] = None
) -> AffiliateTouch:
    touch = session.get(AffiliateTouch, touch_id)
    if touch is None:
        raise NotFoundError(f"Touch {touch_id} not found")
    touch.converted_patient_id = patient_id
    touch.converted_at = ensure_utc(now) if now else utc_now()
    session.flush()
    logger.info("affiliate_touch_converted", touch_id=touch_id, patient_id=patient_id)
    return touch


def set_patient_attribution(
    session: Session, patient: Patient, result: AttributionResult, now: Optional[datetime] = None
) -> Patient:
    now = ensure_utc(now) if now else utc_now()
    patient.attribution_affiliate_id = result.affiliate_id
    patient.attribution_ref_code = result.ref_code
    patient.attributed_at = now
    session.flush()
    if result.touch_id:
        mark_touch_converted(session, result.touch_id, patient.id, now=now)
    logger.info(
        "patient_attribution_set",
        clinic_id=patient.clinic_id,
        patient_id=patient.id,
        affiliate_id=result.affiliate_id,
        model=result.model,
    )
    return patient


def attribute_from_intake(
    session: Session,
    patient: Patient,
    promo_code: str,
    *,
    source: str = "intake",
    ip_address: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[AttributionResult]:
    """Attribute ``patient`` from a promo code entered on an intake form.

    Patients that are already attributed keep their affiliate.  A converted
    POSTBACK touch is ledgered so the conversion shows up in IP screening.
    """

    if patient.attribution_affiliate_id is not None:
        logger.info(
            "attribution_already_set",
            patient_id=patient.id,
            affiliate_id=patient.attribution_affiliate_id,
        )
        return None
    affiliate = active_affiliate_for_code(session, patient.clinic_id, promo_code)
    if affiliate is None:
        return None
    now = ensure_utc(now) if now else utc_now()
    touch = AffiliateTouch(
        clinic_id=patient.clinic_id,
        affiliate_id=affiliate.id,
        ref_code=affiliate.ref_code,
        touch_type=TouchType.POSTBACK.value,
        visitor_fingerprint=f"intake-{patient.id}",
        ip_address_hash=hash_identifier(ip_address),
        landing_page=f"/intake/{source}",
        utm_source=source,
        utm_medium="intake_form",
        utm_campaign="promo_code",
        created_at=now,
    )
    session.add(touch)
    session.flush()
    result = AttributionResult(
        affiliate_id=affiliate.id,
        ref_code=affiliate.ref_code,
        touch_id=touch.id,
        model=INTAKE_MODEL,
        confidence="high",
        weight=1.0,
    )
    set_patient_attribution(session, patient, result, now=now)
    return result


def attribute_patient(
    session: Session,
    patient: Patient,
    *,
    promo_code: Optional[str] = None,
    visitor_fingerprint: Optional[str] = None,
    cookie_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    source: str = "intake",
    is_new_patient: bool = True,
) -> Optional[AttributionResult]:
    """Attribute a converting patient: the promo code first, then tracked touches."""

    if patient.attribution_affiliate_id is not None:
        return None
    if normalize_ref_code(promo_code):
        result = attribute_from_intake(session, patient, promo_code, source=source, ip_address=ip_address)
        if result is not None:
            return result
    if not visitor_fingerprint and not cookie_id:
        return None
    result = resolve_attribution(
        session,
        AttributionRequest(
            clinic_id=patient.clinic_id,
            visitor_fingerprint=visitor_fingerprint,
            cookie_id=cookie_id,
            is_new_patient=is_new_patient,
        ),
    )
    if result is None:
        return None
    set_patient_attribution(session, patient, result)
    return result


__all__ = [
    "AttributionConfig",
    "WeightedTouch",
    "AttributionRequest",
    "AttributionResult",
    "get_attribution_config",
    "normalize_ref_code",
    "active_affiliate_for_code",
    "record_touch",
    "find_touches",
    "apply_model",
    "determine_confidence",
    "resolve_attribution",
    "get_patient_attribution",
    "mark_touch_converted",
    "set_patient_attribution",
    "attribute_from_intake",
    "attribute_patient",
]
