"""Resolve the ledger database URL and engine options from the environment.

``CLINICLEDGER_DATABASE_URL`` (or the generic ``DATABASE_URL``) selects the
server database; without either, a SQLite file is used, either at
``CLINICLEDGER_DB_PATH`` or in the per-user data directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from platformdirs import user_data_dir

from clinicledger import APP_NAME

SQLITE_FILENAME = "clinicledger.db"

# Environment variable -> create_engine keyword for server pools.
POOL_ENV_OPTIONS = (
    ("DB_POOL_SIZE", "pool_size"),
    ("DB_MAX_OVERFLOW", "max_overflow"),
    ("DB_POOL_TIMEOUT", "pool_timeout"),
)

PSYCOPG_SCHEMES = ("postgres://", "postgresql://")


def int_from_env(name: str) -> Optional[int]:
    """Read an integer knob; blank or unset means ``None``."""

    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    echo: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith("postgres")

    def _postgres_connect_args(self) -> Dict[str, object]:
        # Ledger timestamps are compared in UTC regardless of server locale.
        server_options = ["-c timezone=UTC"]
        statement_timeout = int_from_env("STATEMENT_TIMEOUT_MS")
        if statement_timeout is not None:
            server_options.append(f"-c statement_timeout={statement_timeout}")
        connect_args: Dict[str, object] = {"options": " ".join(server_options)}
        connect_timeout = int_from_env("PGCONNECT_TIMEOUT")
        if connect_timeout is not None:
            connect_args["connect_timeout"] = connect_timeout
        return connect_args

    def engine_options(self) -> Dict[str, object]:
        """Keyword arguments for :func:`sqlalchemy.create_engine`."""

        options: Dict[str, object] = {"echo": self.echo, "future": True}
        for env_name, keyword in POOL_ENV_OPTIONS:
            value = int_from_env(env_name)
            if value is not None:
                options[keyword] = value
        if self.is_sqlite:
            options["connect_args"] = {"check_same_thread": False}
        elif self.is_postgres:
            options["pool_pre_ping"] = True
            options["connect_args"] = self._postgres_connect_args()
        return options


def _with_psycopg_driver(url: str) -> str:
    for scheme in PSYCOPG_SCHEMES:
        if url.startswith(scheme):
            return "postgresql+psycopg://" + url[len(scheme):]
    return url


def _sqlite_file(override: Optional[str]) -> Path:
    if override:
        target = Path(override).expanduser()
        if target.is_dir():
            target = target / SQLITE_FILENAME
    else:
        target = Path(user_data_dir(APP_NAME, APP_NAME)) / SQLITE_FILENAME
    target.parent.mkdir(parents=True, exist_ok=True)
    return target


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
    echo = os.getenv("DB_ECHO", "").strip().lower() in {"1", "true", "yes"}
    url = os.getenv("CLINICLEDGER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return DatabaseSettings(url=_with_psycopg_driver(url), echo=echo)
    db_file = _sqlite_file(os.getenv("CLINICLEDGER_DB_PATH"))
    return DatabaseSettings(url=f"sqlite:///{db_file}", echo=echo)


__all__ = ["DatabaseSettings", "SQLITE_FILENAME", "get_database_settings", "int_from_env"]
