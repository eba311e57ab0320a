import importlib.util
import os

import pytest
import sqlalchemy as sa

from clinicledger import audit
from clinicledger.db import models, session_scope

SCRIPTS = os.path.join(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')), 'scripts')


def _load_script(name):
    spec = importlib.util.spec_from_file_location(name, os.path.join(SCRIPTS, f'{name}.py'))
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def seeded_clinic(file_database):
    with session_scope() as session:
        clinic = models.Clinic(name='Northside Wellness', subdomain='northside', patient_id_prefix='NSW')
        session.add(clinic)
        session.flush()
        session.add(models.Patient(clinic_id=clinic.id, patient_id='NSW-000041'))
        return clinic.id


def test_backfill_patient_counters(seeded_clinic, capsys):
    script = _load_script('backfill_patient_counters')

    assert script.main([]) == 0

    assert capsys.readouterr().out.strip() == f'clinic {seeded_clinic}: patient counter at 41'


def test_backfill_with_no_clinics(file_database, capsys):
    script = _load_script('backfill_patient_counters')

    assert script.main([]) == 0
    assert 'nothing to backfill' in capsys.readouterr().out


def test_verify_audit_chain_script(seeded_clinic, capsys):
    script = _load_script('verify_audit_chain')
    assert script.main([]) == 0
    assert 'No audit entries recorded.' in capsys.readouterr().out

    with session_scope() as session:
        entry = audit.log_login(session, user_id='nurse-1', clinic_id=seeded_clinic)
        entry_id = entry.id

    assert script.main(['--clinic', str(seeded_clinic)]) == 0
    assert capsys.readouterr().out.strip() == f'clinic:{seeded_clinic}: ok (1 entries)'

    table = models.HIPAAAuditEntry.__table__
    with session_scope() as session:
        session.execute(sa.update(table).where(table.c.id == entry_id).values(user_id='intruder'))

    assert script.main(['--chain', f'clinic:{seeded_clinic}']) == 1
    assert f'BROKEN at entry {entry_id} (hash_mismatch)' in capsys.readouterr().out
