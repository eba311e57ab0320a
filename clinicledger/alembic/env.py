"""Migration environment for the ledger schema.

The target database is the ``sqlalchemy.url`` set on the Alembic config
(tests and ``-x`` overrides), falling back to the application settings.
"""

from __future__ import annotations

from alembic import context
import sqlalchemy as sa
from sqlalchemy import pool

from clinicledger.db.config import get_database_settings
from clinicledger.db.models import Base

target_metadata = Base.metadata


def _target_url() -> str:
    explicit = context.config.get_main_option("sqlalchemy.url")
    return explicit or get_database_settings().url


def _connect_args(url: str) -> dict:
    settings = get_database_settings()
    if url != settings.url:
        return {}
    return dict(settings.engine_options().get("connect_args", {}))


def _configure(**options) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **options)


def run_offline(url: str) -> None:
    _configure(url=url, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    engine = sa.create_engine(url, connect_args=_connect_args(url), poolclass=pool.NullPool, future=True)
    try:
        with engine.begin() as connection:
            if connection.dialect.name == "postgresql":
                connection.execute(sa.text("SET TIME ZONE 'UTC'"))
            _configure(connection=connection, transaction_per_migration=True)
            context.run_migrations()
    finally:
        engine.dispose()


url = _target_url()
context.config.set_main_option("sqlalchemy.url", url)
if context.is_offline_mode():
    run_offline(url)
else:
    run_online(url)
