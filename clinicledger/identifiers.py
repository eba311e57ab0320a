"""Clinic-scoped sequential identifiers.

Each clinic owns an independent counter per named sequence (``patient``,
``ticket``).  Allocation is a single ``INSERT .. ON CONFLICT DO UPDATE ..
RETURNING`` so two transactions can never receive the same number and the
counter never moves backwards.  :func:`sync_counter` repairs counters that
lag behind identifiers written by an import or a migration.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinicledger.audit import AuditEvent, AuditEventType, append_entry
from clinicledger.config import get_settings
from clinicledger.db import dialect_insert
from clinicledger.db.models import Clinic, ClinicCounter, Patient, Ticket
from clinicledger.errors import LedgerError, NotFoundError
from clinicledger.observability import COUNTER_ALLOCATIONS_TOTAL
from clinicledger.time_utils import utc_now


logger = structlog.get_logger(__name__)

PATIENT_SEQUENCE = "patient"
TICKET_SEQUENCE = "ticket"
ID_WIDTH = 6
DEFAULT_TICKET_PREFIX = "TKT"

_PREFIX_RE = re.compile(r"^[A-Z]{2,5}$")
_TRAILING_DIGITS_RE = re.compile(r"(\d+)$")


class ClinicNotFoundError(NotFoundError):
    """Raised when allocating for a clinic that does not exist."""


class AllocationConflictError(LedgerError):
    """Raised when an identifier keeps colliding after counter repair."""


def allocate_number(session: Session, clinic_id: int, sequence: str = PATIENT_SEQUENCE) -> int:
    """Return the next number for ``(clinic_id, sequence)``, starting at 1."""

    table = ClinicCounter.__table__
    now = utc_now()
    stmt = dialect_insert(session, table).values(
        clinic_id=clinic_id, sequence=sequence, current_value=1, updated_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.clinic_id, table.c.sequence],
        set_={"current_value": table.c.current_value + 1, "updated_at": now},
    ).returning(table.c.current_value)
    value = session.execute(stmt).scalar_one()
    COUNTER_ALLOCATIONS_TOTAL.labels(sequence).inc()
    return int(value)


def sync_counter(session: Session, clinic_id: int, sequence: str, minimum: int) -> int:
    """Raise the counter to at least ``minimum`` and return its value.

    The counter is never lowered, so repeated or concurrent calls are safe.
    """

    table = ClinicCounter.__table__
    now = utc_now()
    insert_stmt = dialect_insert(session, table).values(
        clinic_id=clinic_id, sequence=sequence, current_value=minimum, updated_at=now
    )
    excluded = insert_stmt.excluded
    stmt = insert_stmt.on_conflict_do_update(
        index_elements=[table.c.clinic_id, table.c.sequence],
        set_={
            "current_value": sa.case(
                (table.c.current_value < excluded.current_value, excluded.current_value),
                else_=table.c.current_value,
            ),
            "updated_at": now,
        },
    ).returning(table.c.current_value)
    return int(session.execute(stmt).scalar_one())


def current_value(session: Session, clinic_id: int, sequence: str = PATIENT_SEQUENCE) -> int:
    stmt = select(ClinicCounter.current_value).where(
        ClinicCounter.clinic_id == clinic_id, ClinicCounter.sequence == sequence
    )
    value = session.execute(stmt).scalar_one_or_none()
    return int(value) if value is not None else 0


def format_patient_id(number: int, prefix: Optional[str] = None) -> str:
    """Render ``number`` as ``000123`` or ``PREFIX-000123``."""

    if number < 1:
        raise ValueError("Patient numbers start at 1")
    padded = str(number).zfill(ID_WIDTH)
    if not prefix:
        return padded
    if not _PREFIX_RE.match(prefix):
        raise ValueError(f"Patient id prefix must be 2-5 uppercase letters; got {prefix!r}")
    return f"{prefix}-{padded}"


def parse_patient_number(patient_id: str) -> Optional[int]:
    """Return the numeric suffix of ``patient_id`` or ``None``."""

    match = _TRAILING_DIGITS_RE.search(patient_id or "")
    if not match:
        return None
    return int(match.group(1))


def _get_clinic(session: Session, clinic_id: int) -> Clinic:
    clinic = session.get(Clinic, clinic_id)
    if clinic is None:
        raise ClinicNotFoundError(f"Clinic {clinic_id} not found")
    return clinic


def allocate_patient_id(session: Session, clinic_id: int) -> str:
    clinic = _get_clinic(session, clinic_id)
    number = allocate_number(session, clinic_id, PATIENT_SEQUENCE)
    return format_patient_id(number, clinic.patient_id_prefix)


def max_existing_patient_number(session: Session, clinic_id: int) -> int:
    stmt = select(Patient.patient_id).where(Patient.clinic_id == clinic_id)
    highest = 0
    for patient_id in session.execute(stmt).scalars():
        number = parse_patient_number(patient_id)
        if number is not None and number > highest:
            highest = number
    return highest


def create_patient(
    session: Session,
    clinic_id: int,
    *,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    email: Optional[str] = None,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> Patient:
    """Create a patient with the next clinic-scoped identifier.

    If the allocated identifier already exists (rows imported without
    advancing the counter) the counter is synced to the highest existing
    number and allocation is retried.
    """

    attempts = get_settings().counter_retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            with session.begin_nested():
                patient = Patient(
                    clinic_id=clinic_id,
                    patient_id=allocate_patient_id(session, clinic_id),
                    first_name=first_name,
                    last_name=last_name,
                    email=email,
                )
                session.add(patient)
                session.flush()
        except IntegrityError:
            highest = max_existing_patient_number(session, clinic_id)
            synced = sync_counter(session, clinic_id, PATIENT_SEQUENCE, highest)
            logger.warning(
                "patient_id_collision",
                clinic_id=clinic_id,
                attempt=attempt,
                synced_to=synced,
            )
            continue
        append_entry(
            session,
            AuditEvent(
                event_type=AuditEventType.PHI_CREATE,
                user_id=actor_id,
                user_role=actor_role,
                clinic_id=clinic_id,
                patient_id=patient.patient_id,
                resource_type="Patient",
                resource_id=str(patient.id),
                action="create",
            ),
        )
        logger.info("patient_created", clinic_id=clinic_id, patient_pk=patient.id, patient_id=patient.patient_id)
        return patient
    raise AllocationConflictError(f"Could not allocate a unique patient id for clinic {clinic_id}")


def backfill_counters(session: Session) -> Dict[int, int]:
    """Sync every clinic's patient counter to its highest existing patient id."""

    results: Dict[int, int] = {}
    for clinic_id in session.execute(select(Clinic.id).order_by(Clinic.id)).scalars():
        highest = max_existing_patient_number(session, clinic_id)
        if highest == 0 and current_value(session, clinic_id, PATIENT_SEQUENCE) == 0:
            continue
        results[clinic_id] = sync_counter(session, clinic_id, PATIENT_SEQUENCE, highest)
    logger.info("patient_counters_backfilled", clinics=len(results))
    return results


def ticket_prefix(clinic: Clinic) -> str:
    subdomain = (clinic.subdomain or "").strip()
    if not subdomain:
        return DEFAULT_TICKET_PREFIX
    return subdomain.upper()[:3]


def allocate_ticket_number(session: Session, clinic_id: int) -> str:
    clinic = _get_clinic(session, clinic_id)
    number = allocate_number(session, clinic_id, TICKET_SEQUENCE)
    return f"{ticket_prefix(clinic)}-{str(number).zfill(ID_WIDTH)}"


def create_ticket(session: Session, clinic_id: int, title: str) -> Ticket:
    ticket = Ticket(clinic_id=clinic_id, ticket_number=allocate_ticket_number(session, clinic_id), title=title)
    session.add(ticket)
    session.flush()
    return ticket


def counter_snapshot(session: Session, clinic_id: int) -> Dict[str, Any]:
    stmt = select(ClinicCounter.sequence, ClinicCounter.current_value).where(ClinicCounter.clinic_id == clinic_id)
    return {sequence: value for sequence, value in session.execute(stmt)}


__all__ = [
    "PATIENT_SEQUENCE",
    "TICKET_SEQUENCE",
    "ClinicNotFoundError",
    "AllocationConflictError",
    "allocate_number",
    "sync_counter",
    "current_value",
    "format_patient_id",
    "parse_patient_number",
    "allocate_patient_id",
    "max_existing_patient_number",
    "create_patient",
    "backfill_counters",
    "ticket_prefix",
    "allocate_ticket_number",
    "create_ticket",
    "counter_snapshot",
]
