"""FastAPI surface for the clinic ledgers.

Billing webhooks are authenticated by an HMAC signature header; every other
route requires a bearer JWT carrying ``sub``, ``role`` and ``clinic`` claims.
Callers other than ``admin`` only ever see their own clinic.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import text
from sqlalchemy.orm import Session

from clinicledger import __version__, audit, fees, payouts, worker
from clinicledger.commissions import affiliate, attribution, provider, sales_rep
from clinicledger.config import get_settings
from clinicledger.db import get_session
from clinicledger.db.models import Patient
from clinicledger.errors import LedgerError, NotFoundError, StateTransitionError, ValidationError
from clinicledger.identifiers import create_patient
from clinicledger.observability import configure_logging
from clinicledger.security import WebhookSignatureError, verify_webhook_signature


configure_logging()
logger = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60
SIGNATURE_HEADER = "x-clinicledger-signature"

ROLE_ADMIN = "admin"
ROLE_BILLING = "billing"
ROLE_STAFF = "staff"
ROLE_PROVIDER = "provider"
ROLE_AUDITOR = "auditor"

security = HTTPBearer()

START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised when served
    logger.info("lifespan_startup", version=__version__)
    worker.start_scheduler()
    try:
        yield
    finally:
        await worker.stop_scheduler()
        logger.info("lifespan_shutdown_complete", uptime=round(time.time() - START_TIME, 2))


app = FastAPI(title="ClinicLedger API", version=__version__, lifespan=lifespan)


def _status_for(exc: LedgerError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, StateTransitionError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Translate domain errors into JSON error responses."""

    status_code = _status_for(exc)
    logger.warning(
        "ledger_error",
        path=request.url.path,
        error=type(exc).__name__,
        status_code=status_code,
    )
    content: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    reasons = getattr(exc, "reasons", None)
    if reasons:
        content["reasons"] = reasons
    return JSONResponse(status_code=status_code, content=content)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def _jwt_secret() -> str:
    secret = get_settings().jwt_secret
    if not secret:
        logger.error("jwt_secret_missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
        )
    return secret


def create_access_token(
    subject: str,
    role: str,
    clinic: Optional[int] = None,
    *,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a signed JWT access token for the given user."""
    minutes = expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES
    payload: Dict[str, Any] = {
        "sub": subject,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    if clinic is not None:
        payload["clinic"] = clinic
    return jwt.encode(payload, _jwt_secret(), algorithm=JWT_ALGORITHM)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    required_role: Optional[str] = None,
) -> Dict[str, Any]:
    """Decode the provided JWT and optionally enforce a required role."""
    try:
        data = jwt.decode(credentials.credentials, _jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    if required_role and data.get("role") not in (required_role, ROLE_ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient privileges",
        )
    return data


def require_role(role: str):
    """Dependency factory ensuring the current user has ``role``.

    ``admin`` passes every role check.
    """

    def checker(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
        return get_current_user(credentials, required_role=role)

    return checker


def _user_clinic(user: Dict[str, Any]) -> Optional[int]:
    clinic = user.get("clinic")
    if clinic in (None, ""):
        return None
    try:
        return int(clinic)
    except (TypeError, ValueError):
        return None


def _scoped_clinic(user: Dict[str, Any], clinic_id: Optional[int]) -> Optional[int]:
    """Return the clinic the caller may act on, rejecting foreign clinics."""

    if user.get("role") == ROLE_ADMIN:
        return clinic_id if clinic_id is not None else _user_clinic(user)
    own = _user_clinic(user)
    if own is None or (clinic_id is not None and clinic_id != own):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Clinic access denied")
    return own


async def _verified_body(request: Request) -> bytes:
    body = await request.body()
    settings = get_settings()
    if settings.webhook_signing_secret:
        verify_webhook_signature(
            settings.webhook_signing_secret,
            request.headers.get(SIGNATURE_HEADER),
            body,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )
    return body


def _parse(model: type, body: bytes):
    try:
        return model.model_validate_json(body)
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        )


@app.exception_handler(WebhookSignatureError)
async def webhook_signature_handler(request: Request, exc: WebhookSignatureError) -> JSONResponse:
    logger.warning("webhook_signature_rejected", path=request.url.path, reason=str(exc))
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SaleLineModel(BaseModel):
    amount_cents: int = Field(ge=0)
    quantity: int = Field(default=1, ge=1)
    product_id: Optional[int] = None
    product_bundle_id: Optional[int] = None


class PaymentWebhook(BaseModel):
    clinic_id: int
    patient_id: int
    event_id: str
    object_id: str
    amount_cents: int
    event_type: str = "payment_intent.succeeded"
    occurred_at: Optional[datetime] = None
    is_first_payment: Optional[bool] = None
    is_recurring: bool = False
    recurring_month: Optional[int] = None
    product_sku: Optional[str] = None
    product_category: Optional[str] = None
    ip_address: Optional[str] = None
    sales_rep_id: Optional[int] = None
    lines: List[SaleLineModel] = Field(default_factory=list)


class RefundWebhook(BaseModel):
    clinic_id: int
    object_id: str
    event_type: str = "charge.refunded"
    reason: Optional[str] = None


class PatientCreate(BaseModel):
    clinic_id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    promo_code: Optional[str] = None
    intake_source: str = "intake"
    visitor_fingerprint: Optional[str] = None
    cookie_id: Optional[str] = None
    ip_address: Optional[str] = None


class TouchWebhook(BaseModel):
    clinic_id: int
    ref_code: str
    touch_type: str = "CLICK"
    visitor_fingerprint: Optional[str] = None
    cookie_id: Optional[str] = None
    ip_address: Optional[str] = None
    landing_page: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    occurred_at: Optional[datetime] = None


class ManualPayoutComplete(BaseModel):
    reference: str = Field(min_length=1)


class PrescriptionCreate(BaseModel):
    clinic_id: Optional[int] = None
    order_id: str
    medication_name: str
    strength: Optional[str] = None
    form: Optional[str] = None
    patient_id: Optional[int] = None
    prescription_count: int = Field(default=1, ge=1)
    order_total_cents: Optional[int] = Field(default=None, ge=0)
    occurred_at: Optional[datetime] = None


def _result_dict(result: Optional[affiliate.CommissionResult]) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    return {
        "success": result.success,
        "event_id": result.event_id,
        "amount_cents": result.amount_cents,
        "skipped": result.skipped,
        "reason": result.reason,
        "detail": result.detail,
    }


# ---------------------------------------------------------------------------
# Billing webhooks
# ---------------------------------------------------------------------------


@app.post("/api/billing/payments", tags=["billing"])
async def billing_payment(request: Request, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Record affiliate and sales-rep commissions for a successful payment."""

    payload: PaymentWebhook = _parse(PaymentWebhook, await _verified_body(request))
    commission = affiliate.process_payment_for_commission(
        session,
        affiliate.PaymentEvent(
            clinic_id=payload.clinic_id,
            patient_id=payload.patient_id,
            stripe_event_id=payload.event_id,
            stripe_object_id=payload.object_id,
            amount_cents=payload.amount_cents,
            stripe_event_type=payload.event_type,
            occurred_at=payload.occurred_at,
            is_first_payment=payload.is_first_payment,
            is_recurring=payload.is_recurring,
            recurring_month=payload.recurring_month,
            product_sku=payload.product_sku,
            product_category=payload.product_category,
            ip_address=payload.ip_address,
        ),
    )
    sale = None
    if payload.sales_rep_id is not None:
        sale = sales_rep.process_sale(
            session,
            sales_rep.SaleEvent(
                clinic_id=payload.clinic_id,
                sales_rep_id=payload.sales_rep_id,
                source_event_id=payload.event_id,
                source_object_id=payload.object_id,
                amount_cents=payload.amount_cents,
                lines=[sales_rep.SaleLine(**line.model_dump()) for line in payload.lines],
                patient_id=payload.patient_id,
                occurred_at=payload.occurred_at,
                is_first_payment=payload.is_first_payment,
                is_recurring=payload.is_recurring,
                recurring_month=payload.recurring_month,
            ),
        )
    return {"affiliate": _result_dict(commission), "sales_rep": _result_dict(sale)}


@app.post("/api/billing/refunds", tags=["billing"])
async def billing_refund(request: Request, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Reverse commissions tied to a refunded charge."""

    payload: RefundWebhook = _parse(RefundWebhook, await _verified_body(request))
    commission = affiliate.reverse_commission_for_refund(
        session,
        affiliate.RefundEvent(
            clinic_id=payload.clinic_id,
            stripe_object_id=payload.object_id,
            stripe_event_type=payload.event_type,
            reason=payload.reason,
        ),
    )
    sale = sales_rep.reverse_sale_commission(session, payload.clinic_id, payload.object_id, payload.reason)
    return {"affiliate": _result_dict(commission), "sales_rep": _result_dict(sale)}


@app.post("/api/affiliates/touches", tags=["affiliates"])
async def record_touch_route(request: Request, session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Ledger a marketing touch reported by a tracking webhook."""

    payload: TouchWebhook = _parse(TouchWebhook, await _verified_body(request))
    touch = attribution.record_touch(
        session,
        payload.clinic_id,
        payload.ref_code,
        touch_type=payload.touch_type,
        visitor_fingerprint=payload.visitor_fingerprint,
        cookie_id=payload.cookie_id,
        ip_address=payload.ip_address,
        landing_page=payload.landing_page,
        utm_source=payload.utm_source,
        utm_medium=payload.utm_medium,
        utm_campaign=payload.utm_campaign,
        occurred_at=payload.occurred_at,
    )
    if touch is None:
        return {"recorded": False, "touch_id": None, "affiliate_id": None}
    return {"recorded": True, "touch_id": touch.id, "affiliate_id": touch.affiliate_id}


# ---------------------------------------------------------------------------
# Patients and prescriptions
# ---------------------------------------------------------------------------


@app.post("/api/patients", status_code=status.HTTP_201_CREATED, tags=["patients"])
def create_patient_route(
    payload: PatientCreate,
    user: Dict[str, Any] = Depends(require_role(ROLE_STAFF)),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    clinic_id = _scoped_clinic(user, payload.clinic_id)
    if clinic_id is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="clinic_id is required")
    patient = create_patient(
        session,
        clinic_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        actor_id=str(user.get("sub")),
        actor_role=user.get("role"),
    )
    credited = None
    try:
        with session.begin_nested():
            credited = attribution.attribute_patient(
                session,
                patient,
                promo_code=payload.promo_code,
                visitor_fingerprint=payload.visitor_fingerprint,
                cookie_id=payload.cookie_id,
                ip_address=payload.ip_address,
                source=payload.intake_source,
            )
    except Exception:
        logger.exception("patient_attribution_failed", clinic_id=clinic_id, patient_id=patient.id)
    return {
        "id": patient.id,
        "clinic_id": patient.clinic_id,
        "patient_id": patient.patient_id,
        "attribution": None
        if credited is None
        else {"affiliate_id": credited.affiliate_id, "ref_code": credited.ref_code, "model": credited.model},
    }


@app.post("/api/providers/{provider_id}/prescriptions", tags=["providers"])
def record_prescription_route(
    provider_id: int,
    payload: PrescriptionCreate,
    user: Dict[str, Any] = Depends(require_role(ROLE_PROVIDER)),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Ledger provider compensation and the platform fee for an order."""

    clinic_id = _scoped_clinic(user, payload.clinic_id)
    if clinic_id is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="clinic_id is required")
    compensation = provider.record_prescription(
        session,
        clinic_id,
        provider_id,
        payload.order_id,
        prescription_count=payload.prescription_count,
        order_total_cents=payload.order_total_cents,
        patient_id=payload.patient_id,
        occurred_at=payload.occurred_at,
    )
    medication_key = fees.normalize_medication_key(payload.medication_name, payload.strength, payload.form)
    fee = fees.record_prescription_fee(
        session,
        clinic_id,
        payload.order_id,
        provider_id,
        medication_key=medication_key,
        patient_id=payload.patient_id,
        order_total_cents=payload.order_total_cents,
        occurred_at=payload.occurred_at,
    )
    if payload.patient_id is not None:
        patient = session.get(Patient, payload.patient_id)
        if patient is not None:
            audit.log_prescription(
                session,
                approved=True,
                order_id=payload.order_id,
                patient_id=patient.patient_id,
                clinic_id=clinic_id,
                user_id=str(user.get("sub")),
                user_role=user.get("role"),
            )
    return {
        "order_id": payload.order_id,
        "medication_key": medication_key,
        "compensation": None
        if compensation is None
        else {"event_id": compensation.id, "amount_cents": compensation.amount_cents, "status": compensation.status},
        "fee": None
        if fee is None
        else {
            "event_id": fee.id,
            "fee_type": fee.fee_type,
            "amount_cents": fee.amount_cents,
            "status": fee.status,
            "waived_reason": fee.waived_reason,
        },
    }


# ---------------------------------------------------------------------------
# Affiliate payouts
# ---------------------------------------------------------------------------


@app.get("/api/affiliates/{affiliate_id}/payout-eligibility", tags=["affiliates"])
def payout_eligibility_route(
    affiliate_id: int,
    clinic_id: Optional[int] = None,
    user: Dict[str, Any] = Depends(require_role(ROLE_BILLING)),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    scoped = _scoped_clinic(user, clinic_id)
    if scoped is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="clinic_id is required")
    result = payouts.payout_eligibility(session, scoped, affiliate_id)
    return {"affiliate_id": affiliate_id, "clinic_id": scoped, **asdict(result)}


@app.post("/api/affiliates/{affiliate_id}/payouts", status_code=status.HTTP_201_CREATED, tags=["affiliates"])
def create_payout_route(
    affiliate_id: int,
    clinic_id: Optional[int] = None,
    user: Dict[str, Any] = Depends(require_role(ROLE_BILLING)),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    scoped = _scoped_clinic(user, clinic_id)
    if scoped is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="clinic_id is required")
    payout = payouts.create_payout(session, scoped, affiliate_id)
    return {
        "payout_id": payout.id,
        "amount_cents": payout.amount_cents,
        "event_count": payout.event_count,
        "status": payout.status,
    }


@app.get("/api/affiliates/{affiliate_id}/payouts", tags=["affiliates"])
def payout_history_route(
    affiliate_id: int,
    clinic_id: Optional[int] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=payouts.DEFAULT_HISTORY_LIMIT, ge=1, le=100),
    user: Dict[str, Any] = Depends(require_role(ROLE_BILLING)),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    scoped = _scoped_clinic(user, clinic_id)
    if scoped is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="clinic_id is required")
    return payouts.payout_history(session, scoped, affiliate_id, page=page, limit=limit)


@app.post("/api/payouts/{payout_id}/complete", tags=["affiliates"])
def complete_payout_route(
    payout_id: int,
    payload: ManualPayoutComplete,
    user: Dict[str, Any] = Depends(require_role(ROLE_BILLING)),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    scoped = None if user.get("role") == ROLE_ADMIN else _scoped_clinic(user, None)
    payout = payouts.complete_manual_payout(
        session, payout_id, payload.reference, str(user.get("sub")), clinic_id=scoped
    )
    return {
        "payout_id": payout.id,
        "status": payout.status,
        "reference": payout.reference,
        "completed_at": payout.completed_at.isoformat(),
    }


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


def _audit_query(
    user: Dict[str, Any],
    clinic_id: Optional[int],
    user_id: Optional[str],
    patient_id: Optional[str],
    event_type: Optional[List[str]],
    outcome: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
    limit: int,
    offset: int,
) -> audit.AuditQuery:
    try:
        event_types = [audit.AuditEventType(item) for item in event_type] if event_type else None
        parsed_outcome = audit.AuditOutcome(outcome) if outcome else None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return audit.AuditQuery(
        clinic_id=_scoped_clinic(user, clinic_id),
        user_id=user_id,
        patient_id=patient_id,
        event_types=event_types,
        outcome=parsed_outcome,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )


@app.get("/api/audit", tags=["audit"])
def list_audit_entries(
    clinic_id: Optional[int] = None,
    user_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    event_type: Optional[List[str]] = Query(default=None),
    outcome: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    user: Dict[str, Any] = Depends(require_role(ROLE_AUDITOR)),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    query = _audit_query(user, clinic_id, user_id, patient_id, event_type, outcome, since, until, limit, offset)
    entries = audit.query_entries(session, query)
    return {"entries": [audit.entry_to_dict(entry) for entry in entries], "count": len(entries)}


@app.get("/api/audit/export", tags=["audit"], response_model=None)
def export_audit_entries(
    format: str = Query(default="json", pattern="^(json|csv)$"),
    clinic_id: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=1000, ge=1, le=1000),
    user: Dict[str, Any] = Depends(require_role(ROLE_AUDITOR)),
    session: Session = Depends(get_session),
) -> Response | List[Dict[str, Any]]:
    query = _audit_query(user, clinic_id, None, None, None, None, since, until, limit, 0)
    report = audit.export_report(audit.query_entries(session, query), format)
    logger.info("audit_exported", clinic_id=query.clinic_id, format=format, user=user.get("sub"))
    if format == "csv":
        return Response(
            content=report,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="audit.csv"'},
        )
    return report


@app.get("/api/audit/verify", tags=["audit"])
def verify_audit(
    chain_id: Optional[str] = None,
    user: Dict[str, Any] = Depends(require_role(ROLE_AUDITOR)),
    session: Session = Depends(get_session),
) -> Dict[str, Any]:
    """Verify one chain, or every chain for administrators."""

    if user.get("role") == ROLE_ADMIN:
        results = [audit.verify_chain(session, chain_id)] if chain_id else audit.verify_all_chains(session)
    else:
        own_chain = audit.chain_id_for(_scoped_clinic(user, None))
        if chain_id is not None and chain_id != own_chain:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Clinic access denied")
        results = [audit.verify_chain(session, own_chain)]
    return {
        "valid": all(result.valid for result in results),
        "chains": [asdict(result) for result in results],
    }


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
def health(session: Session = Depends(get_session)) -> Dict[str, Any]:
    """Lightweight health check with a best-effort database check."""
    try:
        session.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.exception("health_db_check_failed")
        db_ok = False
    return {"status": "ok", "version": __version__, "uptime": round(time.time() - START_TIME, 2), "db": db_ok}


@app.get("/metrics", tags=["system"], response_model=None)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = ["app", "create_access_token", "get_current_user", "require_role"]
