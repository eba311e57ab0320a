"""Database helpers for ClinicLedger.

This package centralises creation of the SQLAlchemy engine that backs the
ledger.  It supports the default SQLite deployment used in local development
and PostgreSQL connections controlled via environment variables (see
:mod:`clinicledger.db.config`).  Tests replace the session factory through
:func:`configure_session_factory`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Iterator, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseSettings, get_database_settings
from .models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def configure_sqlite_engine(engine: Engine) -> Engine:
    """Enable foreign keys and SAVEPOINT support on a pysqlite engine.

    pysqlite defers ``BEGIN`` until the first DML statement, which makes a
    leading ``SAVEPOINT`` open (and its ``RELEASE`` commit) the outer
    transaction.  Driver-level transaction handling is switched off and
    SQLAlchemy emits ``BEGIN`` itself.
    """

    @sa.event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[override]
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    @sa.event.listens_for(engine, "begin")
    def _on_begin(conn):  # type: ignore[override]
        conn.exec_driver_sql("BEGIN")

    return engine


def _create_engine(settings: DatabaseSettings) -> Engine:
    engine = sa.create_engine(settings.url, **settings.engine_options())
    if settings.is_sqlite:
        configure_sqlite_engine(engine)
    logger.info("database_engine_created", dialect=engine.dialect.name)
    return engine


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""

    global _engine
    if _engine is None:
        _engine = _create_engine(get_database_settings())
    return _engine


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_engine(), autoflush=False, expire_on_commit=False, future=True
        )
    return _session_factory


def configure_session_factory(factory: Optional[sessionmaker]) -> None:
    """Override the session factory (``None`` restores the default engine)."""

    global _session_factory
    _session_factory = factory


def dialect_insert(session: Session, table: sa.Table):
    """Return an ``INSERT`` for ``table`` supporting ``ON CONFLICT`` on the bound dialect."""

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:  # pragma: no cover - only PostgreSQL and SQLite are deployed
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")
    return insert(table)


def initialise_schema(engine: Optional[Engine] = None) -> None:
    """Create all tables for the configured engine."""

    Base.metadata.create_all(engine or get_engine())


@contextmanager
def session_scope() -> Iterator[Session]:
    """Context manager yielding a session that commits on success."""

    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a transactional session."""

    with session_scope() as session:
        yield session


__all__ = [
    "Base",
    "DatabaseSettings",
    "get_database_settings",
    "get_engine",
    "get_session_factory",
    "configure_sqlite_engine",
    "configure_session_factory",
    "dialect_insert",
    "initialise_schema",
    "session_scope",
    "get_session",
]
