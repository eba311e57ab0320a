"""Affiliate payout eligibility, payout creation and payout history.

Payouts through an automated method complete immediately.  Bank wires,
checks and manual payouts wait in ``AWAITING_APPROVAL`` with their events
reserved until an operator records the transfer reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinicledger.config import get_settings
from clinicledger.db.models import (
    AffiliateCommissionEvent,
    AffiliatePayout,
    AffiliatePayoutMethod,
    AffiliateProgram,
    AffiliateTaxDocument,
    CommissionStatus,
)
from clinicledger.errors import NotFoundError, StateTransitionError
from clinicledger.time_utils import ensure_utc, optional_utc, start_of_year, utc_now


logger = structlog.get_logger(__name__)

PAYOUT_PENDING = "PENDING"
PAYOUT_AWAITING_APPROVAL = "AWAITING_APPROVAL"
PAYOUT_COMPLETED = "COMPLETED"
MANUAL_METHOD_TYPES = ("BANK_WIRE", "CHECK", "MANUAL")
DEFAULT_HISTORY_LIMIT = 20
TAX_DOC_VERIFIED = "VERIFIED"

REASON_BELOW_MINIMUM = "below_minimum"
REASON_NO_PAYOUT_METHOD = "no_verified_payout_method"
REASON_TAX_DOC_REQUIRED = "tax_document_required"


class EligibilityError(StateTransitionError):
    """Raised when a payout is requested for an ineligible affiliate."""

    def __init__(self, reasons: List[str]):
        super().__init__(f"Affiliate is not eligible for payout: {', '.join(reasons)}")
        self.reasons = reasons


class PayoutStateError(StateTransitionError):
    """Raised when a payout cannot be completed from its current status."""


@dataclass
class PayoutEligibility:
    eligible: bool
    available_cents: int
    event_count: int
    minimum_payout_cents: int
    ytd_paid_cents: int
    has_payout_method: bool
    requires_tax_document: bool
    has_tax_document: bool
    reasons: List[str] = field(default_factory=list)


def _available(session: Session, clinic_id: int, affiliate_id: int):
    stmt = select(
        func.coalesce(func.sum(AffiliateCommissionEvent.commission_amount_cents), 0),
        func.count(AffiliateCommissionEvent.id),
    ).where(
        AffiliateCommissionEvent.clinic_id == clinic_id,
        AffiliateCommissionEvent.affiliate_id == affiliate_id,
        AffiliateCommissionEvent.status == CommissionStatus.APPROVED.value,
        AffiliateCommissionEvent.payout_id.is_(None),
    )
    amount, count = session.execute(stmt).one()
    return int(amount), int(count)


def _minimum_payout(session: Session, clinic_id: int) -> int:
    program = session.get(AffiliateProgram, clinic_id)
    if program is not None and program.minimum_payout_cents:
        return program.minimum_payout_cents
    return get_settings().default_min_payout_cents


def _ytd_paid(session: Session, affiliate_id: int, now: datetime) -> int:
    stmt = select(func.coalesce(func.sum(AffiliatePayout.amount_cents), 0)).where(
        AffiliatePayout.affiliate_id == affiliate_id,
        AffiliatePayout.status == PAYOUT_COMPLETED,
        AffiliatePayout.completed_at >= start_of_year(now),
    )
    return int(session.execute(stmt).scalar_one())


def _verified_method(session: Session, affiliate_id: int) -> Optional[AffiliatePayoutMethod]:
    stmt = (
        select(AffiliatePayoutMethod)
        .where(AffiliatePayoutMethod.affiliate_id == affiliate_id, AffiliatePayoutMethod.is_verified.is_(True))
        .order_by(AffiliatePayoutMethod.is_default.desc(), AffiliatePayoutMethod.id)
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def _has_tax_document(session: Session, affiliate_id: int, year: int) -> bool:
    stmt = select(func.count(AffiliateTaxDocument.id)).where(
        AffiliateTaxDocument.affiliate_id == affiliate_id,
        AffiliateTaxDocument.tax_year == year,
        AffiliateTaxDocument.status == TAX_DOC_VERIFIED,
    )
    return session.execute(stmt).scalar_one() > 0


def payout_eligibility(
    session: Session, clinic_id: int, affiliate_id: int, now: Optional[datetime] = None
) -> PayoutEligibility:
    """Report whether the affiliate's approved balance can be paid out.

    Every failing requirement is listed in ``reasons``: the minimum balance
    first, then a verified payout method, then the tax document.
    """

    now = now or utc_now()
    available, count = _available(session, clinic_id, affiliate_id)
    minimum = _minimum_payout(session, clinic_id)
    ytd_paid = _ytd_paid(session, affiliate_id, now)
    has_method = _verified_method(session, affiliate_id) is not None
    requires_tax = ytd_paid + available >= get_settings().tax_doc_threshold_cents
    has_tax = _has_tax_document(session, affiliate_id, now.year) if requires_tax else False

    reasons: List[str] = []
    if available < minimum:
        reasons.append(REASON_BELOW_MINIMUM)
    if not has_method:
        reasons.append(REASON_NO_PAYOUT_METHOD)
    if requires_tax and not has_tax:
        reasons.append(REASON_TAX_DOC_REQUIRED)

    return PayoutEligibility(
        eligible=not reasons,
        available_cents=available,
        event_count=count,
        minimum_payout_cents=minimum,
        ytd_paid_cents=ytd_paid,
        has_payout_method=has_method,
        requires_tax_document=requires_tax,
        has_tax_document=has_tax,
        reasons=reasons,
    )


def create_payout(
    session: Session, clinic_id: int, affiliate_id: int, now: Optional[datetime] = None
) -> AffiliatePayout:
    """Pay out every approved, unpaid commission event of the affiliate.

    With a manual payout method the events are only reserved; they are
    marked paid by :func:`complete_manual_payout`.
    """

    now = now or utc_now()
    eligibility = payout_eligibility(session, clinic_id, affiliate_id, now=now)
    if not eligibility.eligible:
        logger.info(
            "payout_ineligible",
            clinic_id=clinic_id,
            affiliate_id=affiliate_id,
            reasons=eligibility.reasons,
        )
        raise EligibilityError(eligibility.reasons)

    events = list(
        session.execute(
            select(AffiliateCommissionEvent)
            .where(
                AffiliateCommissionEvent.clinic_id == clinic_id,
                AffiliateCommissionEvent.affiliate_id == affiliate_id,
                AffiliateCommissionEvent.status == CommissionStatus.APPROVED.value,
                AffiliateCommissionEvent.payout_id.is_(None),
            )
            .with_for_update()
        ).scalars()
    )
    method = _verified_method(session, affiliate_id)
    manual = method is not None and method.method_type in MANUAL_METHOD_TYPES
    payout = AffiliatePayout(
        clinic_id=clinic_id,
        affiliate_id=affiliate_id,
        payout_method_id=method.id if method else None,
        method_type=method.method_type if method else None,
        amount_cents=sum(event.commission_amount_cents for event in events),
        event_count=len(events),
        status=PAYOUT_AWAITING_APPROVAL if manual else PAYOUT_COMPLETED,
        completed_at=None if manual else now,
    )
    session.add(payout)
    session.flush()
    for event in events:
        event.payout_id = payout.id
        if not manual:
            event.status = CommissionStatus.PAID.value
            event.paid_at = now
    session.flush()
    logger.info(
        "payout_created",
        clinic_id=clinic_id,
        affiliate_id=affiliate_id,
        payout_id=payout.id,
        amount_cents=payout.amount_cents,
        event_count=payout.event_count,
        status=payout.status,
    )
    return payout


def complete_manual_payout(
    session: Session,
    payout_id: int,
    reference: str,
    approved_by: str,
    *,
    clinic_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> AffiliatePayout:
    """Record the wire or check reference and mark the payout's events paid."""

    payout = session.get(AffiliatePayout, payout_id)
    if payout is None or (clinic_id is not None and payout.clinic_id != clinic_id):
        raise NotFoundError(f"Payout {payout_id} not found")
    if payout.status not in (PAYOUT_AWAITING_APPROVAL, PAYOUT_PENDING):
        raise PayoutStateError(f"Cannot complete payout with status: {payout.status}")

    now = now or utc_now()
    payout.status = PAYOUT_COMPLETED
    payout.completed_at = now
    payout.reference = reference
    payout.approved_by = approved_by
    events = session.execute(
        select(AffiliateCommissionEvent).where(AffiliateCommissionEvent.payout_id == payout.id)
    ).scalars()
    for event in events:
        event.status = CommissionStatus.PAID.value
        event.paid_at = now
    session.flush()
    logger.info(
        "manual_payout_completed",
        clinic_id=payout.clinic_id,
        payout_id=payout.id,
        approved_by=approved_by,
    )
    return payout


def payout_history(
    session: Session, clinic_id: int, affiliate_id: int, *, page: int = 1, limit: int = DEFAULT_HISTORY_LIMIT
) -> Dict[str, Any]:
    """Newest-first page of the affiliate's payouts with pagination totals."""

    page = max(page, 1)
    limit = max(limit, 1)
    scope = (AffiliatePayout.clinic_id == clinic_id, AffiliatePayout.affiliate_id == affiliate_id)
    total = int(session.execute(select(func.count(AffiliatePayout.id)).where(*scope)).scalar_one())
    commission_count = (
        select(func.count(AffiliateCommissionEvent.id))
        .where(AffiliateCommissionEvent.payout_id == AffiliatePayout.id)
        .scalar_subquery()
    )
    rows = session.execute(
        select(AffiliatePayout, commission_count)
        .where(*scope)
        .order_by(AffiliatePayout.created_at.desc(), AffiliatePayout.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return {
        "payouts": [
            {
                "id": payout.id,
                "created_at": ensure_utc(payout.created_at).isoformat(),
                "amount_cents": payout.amount_cents,
                "method_type": payout.method_type,
                "status": payout.status,
                "reference": payout.reference,
                "completed_at": optional_utc(payout.completed_at).isoformat() if payout.completed_at else None,
                "commission_count": count,
            }
            for payout, count in rows
        ],
        "pagination": {"page": page, "limit": limit, "total": total, "total_pages": -(-total // limit)},
    }


__all__ = [
    "EligibilityError",
    "PayoutStateError",
    "PayoutEligibility",
    "payout_eligibility",
    "create_payout",
    "complete_manual_payout",
    "payout_history",
]
