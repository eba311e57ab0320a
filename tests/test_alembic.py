import os

import sqlalchemy as sa
from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))


def _alembic_config(url: str) -> AlembicConfig:
    script_location = os.path.join(ROOT, 'clinicledger', 'alembic')
    cfg = AlembicConfig(os.path.join(script_location, 'alembic.ini'))
    cfg.set_main_option('script_location', script_location)
    cfg.set_main_option('sqlalchemy.url', url)
    return cfg


def test_upgrade_and_downgrade_sqlite(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv('CLINICLEDGER_DATABASE_URL', url)
    cfg = _alembic_config(url)

    alembic_command.upgrade(cfg, 'head')

    engine = sa.create_engine(url, future=True)
    try:
        tables = set(sa.inspect(engine).get_table_names())
        for expected in (
            'clinics',
            'patients',
            'hipaa_audit_entries',
            'affiliate_commission_events',
            'platform_fee_events',
            'alembic_version',
        ):
            assert expected in tables
        with engine.connect() as connection:
            assert connection.execute(sa.text('SELECT version_num FROM alembic_version')).scalar_one() == '0001_baseline'

        alembic_command.downgrade(cfg, 'base')
        assert set(sa.inspect(engine).get_table_names()) <= {'alembic_version'}
    finally:
        engine.dispose()
