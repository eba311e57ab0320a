import pytest
import sqlalchemy as sa

from clinicledger import identifiers
from clinicledger.db import models


def test_format_patient_id():
    assert identifiers.format_patient_id(1) == '000001'
    assert identifiers.format_patient_id(42, 'NSW') == 'NSW-000042'
    assert identifiers.format_patient_id(1234567, 'AB') == 'AB-1234567'


@pytest.mark.parametrize('prefix', ['n', 'nsw', 'TOOLONG', 'A1', 'A'])
def test_format_patient_id_rejects_bad_prefix(prefix):
    with pytest.raises(ValueError):
        identifiers.format_patient_id(1, prefix)


def test_format_patient_id_rejects_zero():
    with pytest.raises(ValueError):
        identifiers.format_patient_id(0)


def test_parse_patient_number():
    assert identifiers.parse_patient_number('NSW-000123') == 123
    assert identifiers.parse_patient_number('000007') == 7
    assert identifiers.parse_patient_number('legacy') is None
    assert identifiers.parse_patient_number('') is None


def test_allocate_number_is_sequential_per_clinic(orm_session, clinic, other_clinic):
    assert identifiers.allocate_number(orm_session, clinic.id) == 1
    assert identifiers.allocate_number(orm_session, clinic.id) == 2
    assert identifiers.allocate_number(orm_session, other_clinic.id) == 1
    assert identifiers.allocate_number(orm_session, clinic.id, identifiers.TICKET_SEQUENCE) == 1
    assert identifiers.current_value(orm_session, clinic.id) == 2
    assert identifiers.counter_snapshot(orm_session, clinic.id) == {'patient': 2, 'ticket': 1}


def test_sync_counter_never_lowers(orm_session, clinic):
    assert identifiers.sync_counter(orm_session, clinic.id, 'patient', 10) == 10
    assert identifiers.sync_counter(orm_session, clinic.id, 'patient', 4) == 10
    assert identifiers.allocate_number(orm_session, clinic.id) == 11


def test_create_patient_uses_clinic_prefix(orm_session, clinic, other_clinic):
    first = identifiers.create_patient(orm_session, clinic.id, first_name='Ana', actor_id='7', actor_role='staff')
    second = identifiers.create_patient(orm_session, clinic.id)
    elsewhere = identifiers.create_patient(orm_session, other_clinic.id)
    assert first.patient_id == 'NSW-000001'
    assert second.patient_id == 'NSW-000002'
    assert elsewhere.patient_id == '000001'


def test_create_patient_writes_audit_entry(orm_session, clinic):
    patient = identifiers.create_patient(orm_session, clinic.id, actor_id='7', actor_role='staff')
    entry = orm_session.execute(
        sa.select(models.HIPAAAuditEntry).where(models.HIPAAAuditEntry.chain_id == f'clinic:{clinic.id}')
    ).scalar_one()
    assert entry.event_type == 'PHI_CREATE'
    assert entry.patient_id == patient.patient_id
    assert entry.resource_id == str(patient.id)
    assert entry.user_id == '7'


def test_create_patient_recovers_from_imported_ids(orm_session, clinic, make_patient):
    make_patient(clinic.id, patient_id='NSW-000001')
    make_patient(clinic.id, patient_id='NSW-000002')

    patient = identifiers.create_patient(orm_session, clinic.id)

    assert patient.patient_id == 'NSW-000003'
    assert identifiers.current_value(orm_session, clinic.id) == 3


def test_create_patient_gives_up_after_retries(orm_session, clinic, make_patient, monkeypatch):
    make_patient(clinic.id, patient_id='NSW-000001')
    monkeypatch.setattr(identifiers, 'sync_counter', lambda *args, **kwargs: 0)
    with pytest.raises(identifiers.AllocationConflictError):
        identifiers.create_patient(orm_session, clinic.id)


def test_create_patient_unknown_clinic(orm_session, prepare_database):
    with pytest.raises(identifiers.ClinicNotFoundError):
        identifiers.create_patient(orm_session, 9999)


def test_backfill_counters(orm_session, clinic, other_clinic, make_patient):
    make_patient(clinic.id, patient_id='NSW-000041')
    make_patient(clinic.id, patient_id='NSW-000017')

    synced = identifiers.backfill_counters(orm_session)

    assert synced == {clinic.id: 41}
    assert identifiers.allocate_patient_id(orm_session, clinic.id) == 'NSW-000042'
    # Running again is harmless.
    assert identifiers.backfill_counters(orm_session)[clinic.id] == 42


def test_tickets_use_subdomain_prefix(orm_session, clinic, other_clinic):
    bare = models.Clinic(name='No Subdomain')
    orm_session.add(bare)
    orm_session.flush()

    assert identifiers.create_ticket(orm_session, clinic.id, 'Refund request').ticket_number == 'NOR-000001'
    assert identifiers.create_ticket(orm_session, clinic.id, 'Follow up').ticket_number == 'NOR-000002'
    assert identifiers.create_ticket(orm_session, other_clinic.id, 'Billing').ticket_number == 'LAK-000001'
    assert identifiers.create_ticket(orm_session, bare.id, 'Hello').ticket_number == 'TKT-000001'


@pytest.mark.postgres
def test_counter_upsert_on_postgres(orm_session, clinic):
    assert orm_session.bind.dialect.name == 'postgresql'
    numbers = [identifiers.allocate_number(orm_session, clinic.id) for _ in range(3)]
    assert numbers == [1, 2, 3]
    assert identifiers.current_value(orm_session, clinic.id) == 3
