"""Application settings resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from clinicledger.db.config import int_from_env


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppSettings:
    """Runtime knobs for the ledger services and API."""

    log_level: str = "INFO"
    audit_to_database: bool = True
    jwt_secret: Optional[str] = None
    webhook_signing_secret: Optional[str] = None
    webhook_tolerance_seconds: int = 300
    default_min_payout_cents: int = 5000
    tax_doc_threshold_cents: int = 60000
    counter_retry_attempts: int = 3


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return settings derived from the current environment."""

    defaults = AppSettings()
    tolerance = int_from_env("WEBHOOK_TOLERANCE_SECONDS")
    min_payout = int_from_env("DEFAULT_MIN_PAYOUT_CENTS")
    tax_threshold = int_from_env("TAX_DOC_THRESHOLD_CENTS")
    retries = int_from_env("COUNTER_RETRY_ATTEMPTS")
    return AppSettings(
        log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        audit_to_database=_get_bool_env("AUDIT_TO_DATABASE", defaults.audit_to_database),
        jwt_secret=os.getenv("JWT_SECRET") or None,
        webhook_signing_secret=os.getenv("WEBHOOK_SIGNING_SECRET") or None,
        webhook_tolerance_seconds=tolerance if tolerance is not None else defaults.webhook_tolerance_seconds,
        default_min_payout_cents=min_payout if min_payout is not None else defaults.default_min_payout_cents,
        tax_doc_threshold_cents=tax_threshold if tax_threshold is not None else defaults.tax_doc_threshold_cents,
        counter_retry_attempts=max(1, retries) if retries is not None else defaults.counter_retry_attempts,
    )


__all__ = ["AppSettings", "get_settings"]
