import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator

import pytest
import sqlalchemy as sa
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# The scripts/ entry points import the package from the repository root.
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

# Tokens are minted in-process, so any fixed secret will do.
os.environ.setdefault('JWT_SECRET', 'ledger-test-secret')

from clinicledger.config import get_settings  # noqa: E402
from clinicledger.db import configure_sqlite_engine  # noqa: E402
from clinicledger.db import models  # noqa: E402
from clinicledger.db.config import get_database_settings  # noqa: E402

IN_MEMORY_URL = 'sqlite+pysqlite:///:memory:'


def pytest_addoption(parser):
    parser.addoption(
        '--run-postgres',
        action='store_true',
        default=os.getenv('RUN_PG_TESTS', '').lower() in {'1', 'true', 'yes'},
        help='Run tests marked postgres against TEST_DATABASE_URL.',
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption('--run-postgres'):
        return
    skip = pytest.mark.skip(reason='PostgreSQL run not requested (RUN_PG_TESTS=1 or --run-postgres).')
    for item in items:
        if item.get_closest_marker('postgres') is not None:
            item.add_marker(skip)


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> Iterator[None]:
    for cached in (get_settings, get_database_settings):
        cached.cache_clear()
    yield
    for cached in (get_settings, get_database_settings):
        cached.cache_clear()


@pytest.fixture(scope='session')
def database_url(pytestconfig) -> str:
    url = os.getenv('TEST_DATABASE_URL')
    if url:
        return url
    if pytestconfig.getoption('--run-postgres'):
        pytest.skip('--run-postgres needs TEST_DATABASE_URL.')
    return IN_MEMORY_URL


@pytest.fixture(scope='session')
def ledger_engine(database_url: str) -> Iterator[sa.Engine]:
    if database_url.startswith('sqlite'):
        # One shared connection keeps the in-memory schema alive across threads.
        engine = sa.create_engine(
            database_url, future=True, poolclass=StaticPool, connect_args={'check_same_thread': False}
        )
        configure_sqlite_engine(engine)
    else:
        engine = sa.create_engine(database_url, future=True, pool_pre_ping=True)
    yield engine
    engine.dispose()


def _migrate_to_head(url: str) -> None:
    from alembic import command
    from alembic.config import Config

    migrations = os.path.join(REPO_ROOT, 'clinicledger', 'alembic')
    alembic_cfg = Config(os.path.join(migrations, 'alembic.ini'))
    alembic_cfg.set_main_option('script_location', migrations)
    alembic_cfg.set_main_option('sqlalchemy.url', url)
    command.upgrade(alembic_cfg, 'head')


@pytest.fixture(scope='session')
def prepare_database(ledger_engine: sa.Engine, database_url: str) -> Iterator[None]:
    """Build the schema once per run: migrations on PostgreSQL, create_all on SQLite."""

    if database_url.startswith('postgres'):
        _migrate_to_head(database_url)
    else:
        models.Base.metadata.create_all(ledger_engine)
    yield
    models.Base.metadata.drop_all(ledger_engine)


@pytest.fixture
def orm_session(prepare_database: None, ledger_engine: sa.Engine) -> Iterator[Session]:
    """A session bound to an outer transaction that is rolled back afterwards.

    Service code may open savepoints; nothing it writes outlives the test.
    """

    connection = ledger_engine.connect()
    outer = connection.begin()
    session = sessionmaker(bind=connection, autoflush=False, expire_on_commit=False)()
    try:
        yield session
        session.flush()
    finally:
        session.close()
        if outer.is_active:
            outer.rollback()
        connection.close()


@pytest.fixture
def file_database(tmp_path, monkeypatch) -> Iterator[str]:
    """Point the process-wide engine at a throwaway SQLite file."""

    from clinicledger import db as db_module

    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    monkeypatch.setenv('CLINICLEDGER_DATABASE_URL', url)
    monkeypatch.setattr(db_module, '_engine', None)
    db_module.configure_session_factory(None)
    get_database_settings.cache_clear()
    db_module.initialise_schema()
    yield url
    db_module.get_engine().dispose()
    db_module.configure_session_factory(None)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


@pytest.fixture
def utc() -> Callable[..., datetime]:
    def _utc(*args: int) -> datetime:
        return datetime(*args, tzinfo=timezone.utc)

    return _utc


@pytest.fixture
def clinic(orm_session: Session) -> models.Clinic:
    record = models.Clinic(name='Northside Wellness', subdomain='northside', patient_id_prefix='NSW')
    orm_session.add(record)
    orm_session.flush()
    return record


@pytest.fixture
def other_clinic(orm_session: Session) -> models.Clinic:
    record = models.Clinic(name='Lakeshore Health', subdomain='lakeshore')
    orm_session.add(record)
    orm_session.flush()
    return record


@pytest.fixture
def make_patient(orm_session: Session) -> Callable[..., models.Patient]:
    counter = {'value': 0}

    def _make(clinic_id: int, **values) -> models.Patient:
        counter['value'] += 1
        values.setdefault('patient_id', f"IMP-{counter['value']:06d}")
        patient = models.Patient(clinic_id=clinic_id, **values)
        orm_session.add(patient)
        orm_session.flush()
        return patient

    return _make


@pytest.fixture
def affiliate_setup(orm_session: Session, clinic: models.Clinic, make_patient):
    """An active affiliate on a 10% plan with one attributed patient."""

    affiliate = models.Affiliate(
        clinic_id=clinic.id, display_name='Jordan Partner', email='partner@example.test', ref_code='JORDAN10'
    )
    orm_session.add(affiliate)
    orm_session.flush()
    plan = models.AffiliateCommissionPlan(
        clinic_id=clinic.id,
        name='Standard 10%',
        plan_type=models.RateType.PERCENT.value,
        percent_bps=1000,
        applies_to=models.AppliesTo.ALL_PAYMENTS.value,
        clawback_enabled=True,
    )
    orm_session.add(plan)
    orm_session.flush()
    orm_session.add(
        models.AffiliatePlanAssignment(
            clinic_id=clinic.id,
            affiliate_id=affiliate.id,
            plan_id=plan.id,
            effective_from=datetime.now(timezone.utc) - timedelta(days=365),
        )
    )
    patient = make_patient(
        clinic.id,
        email='patient@example.test',
        attribution_affiliate_id=affiliate.id,
        attribution_ref_code='JORDAN10',
    )
    orm_session.flush()
    return affiliate, plan, patient


@pytest.fixture
def make_commission_event(orm_session: Session) -> Callable[..., models.AffiliateCommissionEvent]:
    """Insert an affiliate commission event directly, bypassing the engine."""

    counter = {'value': 0}

    def _make(clinic_id: int, affiliate_id: int, **values) -> models.AffiliateCommissionEvent:
        counter['value'] += 1
        values.setdefault('stripe_event_id', f"evt_seed_{counter['value']}")
        values.setdefault('stripe_object_id', f"pi_seed_{counter['value']}")
        values.setdefault('stripe_event_type', 'payment_intent.succeeded')
        values.setdefault('event_amount_cents', 10000)
        values.setdefault('commission_amount_cents', 1000)
        values.setdefault('status', models.CommissionStatus.APPROVED.value)
        values.setdefault('occurred_at', datetime.now(timezone.utc) - timedelta(days=1))
        event = models.AffiliateCommissionEvent(clinic_id=clinic_id, affiliate_id=affiliate_id, **values)
        orm_session.add(event)
        orm_session.flush()
        return event

    return _make


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@pytest.fixture
def api_client(orm_session: Session) -> Iterator[TestClient]:
    """Yield a FastAPI test client whose requests share ``orm_session``.

    The client is not entered as a context manager so the background
    scheduler stays off.
    """

    from clinicledger import main
    from clinicledger.db import get_session

    def _session_dependency() -> Iterator[Session]:
        yield orm_session

    main.app.dependency_overrides[get_session] = _session_dependency
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.pop(get_session, None)


@pytest.fixture
def auth_header() -> Callable[..., dict]:
    from clinicledger import main

    def _header(role: str, clinic=None, subject: str = 'user-1') -> dict:
        token = main.create_access_token(subject, role, clinic)
        return {'Authorization': f'Bearer {token}'}

    return _header
