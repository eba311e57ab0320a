"""Append-only, hash-chained HIPAA audit ledger.

Every entry stores the hash of its predecessor in the same chain together
with a contiguous sequence number.  The entry hash is a SHA-256 digest over
the canonical JSON form of every stored field except the hash itself, so any
edit to a persisted row (or a deleted/reordered row) is detected by
:func:`verify_chain`.

Chains are scoped per clinic (``clinic:<id>``) with a ``global`` chain for
events that have no clinic.  Concurrent writers serialise on the unique
``(chain_id, sequence)`` constraint: the loser retries from the new head.
"""

from __future__ import annotations

import csv
import enum
import hashlib
import io
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import sqlalchemy as sa
import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicledger.config import get_settings
from clinicledger.db.models import HIPAAAuditEntry
from clinicledger.errors import LedgerError, NotFoundError
from clinicledger.observability import AUDIT_ENTRIES_TOTAL
from clinicledger.security import redact_email, sanitize_phi_metadata
from clinicledger.time_utils import ensure_utc, optional_utc, utc_now


logger = structlog.get_logger(__name__)

GENESIS_HASH = "0" * 64
GLOBAL_CHAIN = "global"


class AuditEventType(str, enum.Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    MFA_CHALLENGE = "MFA_CHALLENGE"
    SESSION_TIMEOUT = "SESSION_TIMEOUT"

    PHI_VIEW = "PHI_VIEW"
    PHI_CREATE = "PHI_CREATE"
    PHI_UPDATE = "PHI_UPDATE"
    PHI_DELETE = "PHI_DELETE"
    PHI_EXPORT = "PHI_EXPORT"
    PHI_PRINT = "PHI_PRINT"

    DOCUMENT_VIEW = "DOCUMENT_VIEW"
    DOCUMENT_UPLOAD = "DOCUMENT_UPLOAD"
    DOCUMENT_DELETE = "DOCUMENT_DELETE"
    DOCUMENT_DOWNLOAD = "DOCUMENT_DOWNLOAD"

    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    PERMISSION_CHANGE = "PERMISSION_CHANGE"

    EMERGENCY_ACCESS = "EMERGENCY_ACCESS"
    BREAK_GLASS = "BREAK_GLASS"

    SYSTEM_ACCESS = "SYSTEM_ACCESS"
    CONFIGURATION_CHANGE = "CONFIGURATION_CHANGE"
    SECURITY_ALERT = "SECURITY_ALERT"

    PRESCRIPTION_QUEUED = "PRESCRIPTION_QUEUED"
    PRESCRIPTION_APPROVED = "PRESCRIPTION_APPROVED"


class AuditOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PARTIAL = "PARTIAL"


CRITICAL_EVENT_TYPES = frozenset(
    {
        AuditEventType.PHI_VIEW,
        AuditEventType.PHI_UPDATE,
        AuditEventType.PHI_DELETE,
        AuditEventType.PHI_EXPORT,
        AuditEventType.DOCUMENT_DOWNLOAD,
        AuditEventType.EMERGENCY_ACCESS,
        AuditEventType.BREAK_GLASS,
        AuditEventType.PERMISSION_CHANGE,
        AuditEventType.SECURITY_ALERT,
    }
)

PHI_EVENT_TYPES = frozenset(
    {
        AuditEventType.PHI_VIEW,
        AuditEventType.PHI_CREATE,
        AuditEventType.PHI_UPDATE,
        AuditEventType.PHI_DELETE,
        AuditEventType.PHI_EXPORT,
        AuditEventType.PHI_PRINT,
    }
)

ACTION_EVENT_TYPES: Dict[str, AuditEventType] = {
    "view": AuditEventType.PHI_VIEW,
    "create": AuditEventType.PHI_UPDATE,
    "edit": AuditEventType.PHI_UPDATE,
    "message:send": AuditEventType.PHI_UPDATE,
    "export": AuditEventType.PHI_EXPORT,
    "delete": AuditEventType.PHI_DELETE,
    "print": AuditEventType.PHI_PRINT,
}

FAILED_LOGIN_ALERT_THRESHOLD = 3

CSV_COLUMNS = (
    "id",
    "chain_id",
    "sequence",
    "created_at",
    "event_type",
    "outcome",
    "user_id",
    "user_role",
    "clinic_id",
    "patient_id",
    "resource_type",
    "resource_id",
    "action",
    "reason",
    "ip_address",
    "request_id",
    "hash",
)


class AuditChainError(LedgerError):
    """Raised when the append-only invariant would be violated."""


class AuditEntryNotFoundError(NotFoundError):
    """Raised when verifying an entry id that does not exist."""


@dataclass
class AuditEvent:
    """Caller-supplied description of an auditable action."""

    event_type: AuditEventType
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_role: Optional[str] = None
    clinic_id: Optional[int] = None
    patient_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    action: Optional[str] = None
    reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    request_method: Optional[str] = None
    request_path: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    occurred_at: Optional[datetime] = None


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class ChainVerification:
    chain_id: str
    valid: bool
    checked: int
    first_invalid_id: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class AuditQuery:
    clinic_id: Optional[int] = None
    user_id: Optional[str] = None
    patient_id: Optional[str] = None
    event_types: Optional[Sequence[AuditEventType]] = None
    outcome: Optional[AuditOutcome] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


def chain_id_for(clinic_id: Optional[int]) -> str:
    if clinic_id is None:
        return GLOBAL_CHAIN
    return f"clinic:{clinic_id}"


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def _hash_fields(entry: HIPAAAuditEntry) -> Dict[str, Any]:
    return {
        "chain_id": entry.chain_id,
        "sequence": entry.sequence,
        "created_at": ensure_utc(entry.created_at).isoformat(),
        "event_type": entry.event_type,
        "outcome": entry.outcome,
        "user_id": entry.user_id,
        "user_email": entry.user_email,
        "user_role": entry.user_role,
        "clinic_id": entry.clinic_id,
        "patient_id": entry.patient_id,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "action": entry.action,
        "reason": entry.reason,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "session_id": entry.session_id,
        "request_id": entry.request_id,
        "request_method": entry.request_method,
        "request_path": entry.request_path,
        "metadata": entry.entry_metadata or {},
        "previous_hash": entry.previous_hash,
    }


def compute_entry_hash(entry: HIPAAAuditEntry) -> str:
    """Return the SHA-256 digest of the canonical form of ``entry``."""

    canonical = json.dumps(_hash_fields(entry), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _json_safe(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


# ---------------------------------------------------------------------------
# Append
# ---------------------------------------------------------------------------


def _enum_value(value: Any) -> str:
    return value.value if isinstance(value, enum.Enum) else str(value)


def _chain_head(session: Session, chain_id: str) -> Optional[HIPAAAuditEntry]:
    stmt = (
        select(HIPAAAuditEntry)
        .where(HIPAAAuditEntry.chain_id == chain_id)
        .order_by(HIPAAAuditEntry.sequence.desc())
        .limit(1)
        .with_for_update()
    )
    return session.execute(stmt).scalar_one_or_none()


def _should_alert(event_type: str, metadata: Mapping[str, Any]) -> bool:
    if event_type in (AuditEventType.SECURITY_ALERT.value, AuditEventType.EMERGENCY_ACCESS.value):
        return True
    if event_type == AuditEventType.LOGIN_FAILED.value:
        try:
            attempts = int(metadata.get("attempts") or 0)
        except (TypeError, ValueError):
            attempts = 0
        return attempts > FAILED_LOGIN_ALERT_THRESHOLD
    return False


def _log_event(event: AuditEvent, event_type: str, outcome: str, metadata: Mapping[str, Any]) -> None:
    fields = {
        "event_type": event_type,
        "outcome": outcome,
        "user_id": event.user_id,
        "user_email": redact_email(event.user_email),
        "clinic_id": event.clinic_id,
        "resource_type": event.resource_type,
        "resource_id": event.resource_id,
        "request_id": event.request_id,
    }
    if event_type in {item.value for item in CRITICAL_EVENT_TYPES}:
        logger.warning("hipaa_audit_critical", **fields)
    else:
        logger.info("hipaa_audit", **fields)
    if _should_alert(event_type, metadata):
        logger.error("security_alert", attempts=metadata.get("attempts"), **fields)


def append_entry(session: Session, event: AuditEvent) -> Optional[HIPAAAuditEntry]:
    """Append ``event`` to its clinic chain and return the persisted entry.

    Returns ``None`` when ``AUDIT_TO_DATABASE`` is disabled; the event is
    still written to the structured log.
    """

    settings = get_settings()
    event_type = _enum_value(event.event_type)
    outcome = _enum_value(event.outcome)
    metadata = _json_safe(sanitize_phi_metadata(dict(event.metadata or {})))
    _log_event(event, event_type, outcome, metadata)
    if not settings.audit_to_database:
        return None

    chain_id = chain_id_for(event.clinic_id)
    created_at = ensure_utc(event.occurred_at) if event.occurred_at else utc_now()
    for attempt in range(1, settings.counter_retry_attempts + 1):
        try:
            with session.begin_nested():
                head = _chain_head(session, chain_id)
                entry = HIPAAAuditEntry(
                    chain_id=chain_id,
                    sequence=(head.sequence + 1) if head else 1,
                    previous_hash=head.hash if head else GENESIS_HASH,
                    created_at=created_at,
                    event_type=event_type,
                    outcome=outcome,
                    user_id=None if event.user_id is None else str(event.user_id),
                    user_email=event.user_email,
                    user_role=event.user_role,
                    clinic_id=event.clinic_id,
                    patient_id=None if event.patient_id is None else str(event.patient_id),
                    resource_type=event.resource_type,
                    resource_id=None if event.resource_id is None else str(event.resource_id),
                    action=event.action,
                    reason=event.reason,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    session_id=event.session_id,
                    request_id=event.request_id,
                    request_method=event.request_method,
                    request_path=event.request_path,
                    entry_metadata=metadata,
                )
                entry.hash = compute_entry_hash(entry)
                session.add(entry)
                session.flush()
        except IntegrityError:
            logger.warning("audit_chain_conflict", chain_id=chain_id, attempt=attempt)
            continue
        AUDIT_ENTRIES_TOTAL.labels(event_type).inc()
        return entry
    raise AuditChainError(f"Could not append to audit chain {chain_id} after {settings.counter_retry_attempts} attempts")


@sa.event.listens_for(HIPAAAuditEntry, "before_update")
def _reject_update(mapper, connection, target):  # type: ignore[override]
    raise AuditChainError("HIPAA audit entries are append-only")


@sa.event.listens_for(HIPAAAuditEntry, "before_delete")
def _reject_delete(mapper, connection, target):  # type: ignore[override]
    raise AuditChainError("HIPAA audit entries cannot be deleted")


# ---------------------------------------------------------------------------
# Convenience loggers
# ---------------------------------------------------------------------------


def log_phi_access(
    session: Session,
    *,
    action: str,
    patient_id: str,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
    user_role: Optional[str] = None,
    clinic_id: Optional[int] = None,
    resource_type: str = "Patient",
    resource_id: Optional[str] = None,
    reason: Optional[str] = None,
    request_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[HIPAAAuditEntry]:
    """Record a PHI access, mapping ``action`` onto the audit event type."""

    event_type = ACTION_EVENT_TYPES.get(action.lower(), AuditEventType.PHI_VIEW)
    return append_entry(
        session,
        AuditEvent(
            event_type=event_type,
            user_id=user_id,
            user_email=user_email,
            user_role=user_role,
            clinic_id=clinic_id,
            patient_id=patient_id,
            resource_type=resource_type,
            resource_id=resource_id or patient_id,
            action=action,
            reason=reason,
            request_id=request_id,
            metadata=metadata or {},
        ),
    )


def log_login(
    session: Session,
    *,
    user_id: str,
    user_email: Optional[str] = None,
    clinic_id: Optional[int] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Optional[HIPAAAuditEntry]:
    return append_entry(
        session,
        AuditEvent(
            event_type=AuditEventType.LOGIN,
            user_id=user_id,
            user_email=user_email,
            clinic_id=clinic_id,
            resource_type="Session",
            action="login",
            ip_address=ip_address,
            user_agent=user_agent,
        ),
    )


def log_login_failed(
    session: Session,
    *,
    user_email: Optional[str],
    attempts: int,
    clinic_id: Optional[int] = None,
    ip_address: Optional[str] = None,
    reason: Optional[str] = None,
) -> Optional[HIPAAAuditEntry]:
    return append_entry(
        session,
        AuditEvent(
            event_type=AuditEventType.LOGIN_FAILED,
            outcome=AuditOutcome.FAILURE,
            user_email=user_email,
            clinic_id=clinic_id,
            resource_type="Session",
            action="login",
            reason=reason,
            ip_address=ip_address,
            metadata={"attempts": attempts},
        ),
    )


def log_security_alert(
    session: Session,
    *,
    reason: str,
    clinic_id: Optional[int] = None,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Optional[HIPAAAuditEntry]:
    return append_entry(
        session,
        AuditEvent(
            event_type=AuditEventType.SECURITY_ALERT,
            outcome=AuditOutcome.FAILURE,
            user_id=user_id,
            clinic_id=clinic_id,
            resource_type="System",
            action="alert",
            reason=reason,
            metadata=metadata or {},
        ),
    )


def log_prescription(
    session: Session,
    *,
    approved: bool,
    order_id: str,
    patient_id: str,
    clinic_id: int,
    user_id: Optional[str] = None,
    user_role: Optional[str] = None,
) -> Optional[HIPAAAuditEntry]:
    event_type = AuditEventType.PRESCRIPTION_APPROVED if approved else AuditEventType.PRESCRIPTION_QUEUED
    return append_entry(
        session,
        AuditEvent(
            event_type=event_type,
            user_id=user_id,
            user_role=user_role,
            clinic_id=clinic_id,
            patient_id=patient_id,
            resource_type="Order",
            resource_id=order_id,
            action="approve" if approved else "queue",
        ),
    )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verify_entry(session: Session, entry_id: int) -> VerificationResult:
    """Recompute the hash of a single entry."""

    entry = session.get(HIPAAAuditEntry, entry_id)
    if entry is None:
        raise AuditEntryNotFoundError(f"Audit entry {entry_id} not found")
    if compute_entry_hash(entry) != entry.hash:
        return VerificationResult(valid=False, reason="hash_mismatch")
    return VerificationResult(valid=True)


def verify_chain(session: Session, chain_id: str = GLOBAL_CHAIN) -> ChainVerification:
    """Walk ``chain_id`` in sequence order checking hashes, links and gaps."""

    stmt = (
        select(HIPAAAuditEntry)
        .where(HIPAAAuditEntry.chain_id == chain_id)
        .order_by(HIPAAAuditEntry.sequence.asc())
        .execution_options(yield_per=500)
    )
    expected_previous = GENESIS_HASH
    expected_sequence = 1
    checked = 0
    for entry in session.execute(stmt).scalars():
        checked += 1
        reason: Optional[str] = None
        if entry.sequence != expected_sequence:
            reason = "sequence_gap"
        elif entry.previous_hash != expected_previous:
            reason = "broken_link"
        elif compute_entry_hash(entry) != entry.hash:
            reason = "hash_mismatch"
        if reason is not None:
            logger.error(
                "audit_chain_invalid",
                chain_id=chain_id,
                entry_id=entry.id,
                sequence=entry.sequence,
                reason=reason,
            )
            return ChainVerification(
                chain_id=chain_id, valid=False, checked=checked, first_invalid_id=entry.id, reason=reason
            )
        expected_previous = entry.hash
        expected_sequence += 1
    return ChainVerification(chain_id=chain_id, valid=True, checked=checked)


def list_chains(session: Session) -> List[str]:
    stmt = select(HIPAAAuditEntry.chain_id).distinct().order_by(HIPAAAuditEntry.chain_id)
    return list(session.execute(stmt).scalars())


def verify_all_chains(session: Session) -> List[ChainVerification]:
    return [verify_chain(session, chain_id) for chain_id in list_chains(session)]


# ---------------------------------------------------------------------------
# Query and reporting
# ---------------------------------------------------------------------------


def _apply_filters(stmt, query: AuditQuery):
    if query.clinic_id is not None:
        stmt = stmt.where(HIPAAAuditEntry.clinic_id == query.clinic_id)
    if query.user_id is not None:
        stmt = stmt.where(HIPAAAuditEntry.user_id == str(query.user_id))
    if query.patient_id is not None:
        stmt = stmt.where(HIPAAAuditEntry.patient_id == str(query.patient_id))
    if query.event_types:
        stmt = stmt.where(HIPAAAuditEntry.event_type.in_([_enum_value(item) for item in query.event_types]))
    if query.outcome is not None:
        stmt = stmt.where(HIPAAAuditEntry.outcome == _enum_value(query.outcome))
    if query.since is not None:
        stmt = stmt.where(HIPAAAuditEntry.created_at >= ensure_utc(query.since))
    if query.until is not None:
        stmt = stmt.where(HIPAAAuditEntry.created_at <= ensure_utc(query.until))
    return stmt


def query_entries(session: Session, query: AuditQuery) -> List[HIPAAAuditEntry]:
    """Return entries matching ``query``, newest first."""

    stmt = _apply_filters(select(HIPAAAuditEntry), query)
    stmt = stmt.order_by(HIPAAAuditEntry.created_at.desc(), HIPAAAuditEntry.id.desc())
    stmt = stmt.limit(max(1, min(query.limit, 1000))).offset(max(0, query.offset))
    return list(session.execute(stmt).scalars())


def audit_stats(
    session: Session,
    *,
    clinic_id: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> Dict[str, Any]:
    query = AuditQuery(clinic_id=clinic_id, since=since, until=until)
    by_type_stmt = _apply_filters(
        select(HIPAAAuditEntry.event_type, func.count()).group_by(HIPAAAuditEntry.event_type), query
    )
    by_outcome_stmt = _apply_filters(
        select(HIPAAAuditEntry.outcome, func.count()).group_by(HIPAAAuditEntry.outcome), query
    )
    users_stmt = _apply_filters(select(func.count(sa.distinct(HIPAAAuditEntry.user_id))), query)
    by_type = {event_type: count for event_type, count in session.execute(by_type_stmt)}
    by_outcome = {outcome: count for outcome, count in session.execute(by_outcome_stmt)}
    phi_values = {item.value for item in PHI_EVENT_TYPES}
    return {
        "total": sum(by_type.values()),
        "by_event_type": by_type,
        "by_outcome": by_outcome,
        "phi_access_count": sum(count for key, count in by_type.items() if key in phi_values),
        "unique_users": session.execute(users_stmt).scalar_one(),
    }


def entry_to_dict(entry: HIPAAAuditEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "chain_id": entry.chain_id,
        "sequence": entry.sequence,
        "created_at": ensure_utc(entry.created_at).isoformat(),
        "event_type": entry.event_type,
        "outcome": entry.outcome,
        "user_id": entry.user_id,
        "user_email": redact_email(entry.user_email),
        "user_role": entry.user_role,
        "clinic_id": entry.clinic_id,
        "patient_id": entry.patient_id,
        "resource_type": entry.resource_type,
        "resource_id": entry.resource_id,
        "action": entry.action,
        "reason": entry.reason,
        "ip_address": entry.ip_address,
        "request_id": entry.request_id,
        "metadata": entry.entry_metadata or {},
        "previous_hash": entry.previous_hash,
        "hash": entry.hash,
    }


def export_report(entries: Iterable[HIPAAAuditEntry], fmt: str = "json") -> Any:
    """Render ``entries`` as a list of dicts (``json``) or a CSV string."""

    rows = [entry_to_dict(entry) for entry in entries]
    if fmt == "json":
        return rows
    if fmt != "csv":
        raise ValueError(f"Unsupported audit export format {fmt!r}")
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({key: "" if row.get(key) is None else row.get(key) for key in CSV_COLUMNS})
    return buffer.getvalue()


__all__ = [
    "AuditEventType",
    "AuditOutcome",
    "AuditEvent",
    "AuditQuery",
    "AuditChainError",
    "AuditEntryNotFoundError",
    "VerificationResult",
    "ChainVerification",
    "GENESIS_HASH",
    "GLOBAL_CHAIN",
    "chain_id_for",
    "compute_entry_hash",
    "append_entry",
    "log_phi_access",
    "log_login",
    "log_login_failed",
    "log_security_alert",
    "log_prescription",
    "verify_entry",
    "verify_chain",
    "verify_all_chains",
    "list_chains",
    "query_entries",
    "audit_stats",
    "entry_to_dict",
    "export_report",
]
