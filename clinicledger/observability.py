"""Logging configuration and Prometheus counters for the ledger services."""

from __future__ import annotations

import logging
from typing import Optional

import structlog
from prometheus_client import Counter

from clinicledger.config import get_settings


COMMISSION_EVENTS_TOTAL = Counter(
    "clinicledger_commission_events_total",
    "Commission events recorded by ledger",
    ("ledger",),
)

COMMISSION_SKIPS_TOTAL = Counter(
    "clinicledger_commission_skips_total",
    "Billing events that produced no commission",
    ("ledger", "reason"),
)

AUDIT_ENTRIES_TOTAL = Counter(
    "clinicledger_audit_entries_total",
    "HIPAA audit entries appended to the ledger",
    ("event_type",),
)

COUNTER_ALLOCATIONS_TOTAL = Counter(
    "clinicledger_counter_allocations_total",
    "Sequential identifiers handed out per sequence",
    ("sequence",),
)

PLATFORM_FEES_TOTAL = Counter(
    "clinicledger_platform_fees_total",
    "Platform fee events recorded",
    ("fee_type", "status"),
)

_CONFIGURED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure stdlib logging and structlog for JSON output.

    Safe to call more than once; only the first call installs processors.
    """

    global _CONFIGURED
    log_level = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), format="%(message)s")
    if _CONFIGURED:
        return
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


__all__ = [
    "COMMISSION_EVENTS_TOTAL",
    "COMMISSION_SKIPS_TOTAL",
    "AUDIT_ENTRIES_TOTAL",
    "COUNTER_ALLOCATIONS_TOTAL",
    "PLATFORM_FEES_TOTAL",
    "configure_logging",
]
