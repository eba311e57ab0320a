"""Base exception types shared across the ledger services."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for domain errors raised by the ledger services."""


class NotFoundError(LedgerError):
    """Raised when a referenced record does not exist."""


class ValidationError(LedgerError):
    """Raised when configuration or input values are out of range."""


class StateTransitionError(LedgerError):
    """Raised when a record cannot move to the requested status."""


__all__ = ["LedgerError", "NotFoundError", "ValidationError", "StateTransitionError"]
