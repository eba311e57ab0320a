"""Security helpers for PHI scrubbing, logging redaction and hashing."""

from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any, Mapping, Optional

from prometheus_client import Counter

from clinicledger.errors import LedgerError


PHI_KEYS_STRIPPED_TOTAL = Counter(
    "clinicledger_phi_keys_stripped_total",
    "Metadata keys removed before persisting audit entries",
)

# Compared after lower-casing and removing underscores.
PHI_METADATA_KEYS = frozenset(
    {
        "name",
        "firstname",
        "lastname",
        "dob",
        "dateofbirth",
        "address",
        "address1",
        "address2",
        "addressline1",
        "addressline2",
        "city",
        "state",
        "zip",
        "zipcode",
        "phone",
        "email",
        "ssn",
        "content",
        "message",
        "body",
        "description",
    }
)


class WebhookSignatureError(LedgerError):
    """Raised when a billing webhook fails signature verification."""


def hash_identifier(value: Optional[str]) -> Optional[str]:
    """Return a stable SHA256 hash prefix for identifiers such as IP addresses."""

    if not value:
        return None
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return digest[:16]


def redact_email(email: Optional[str]) -> Optional[str]:
    """Return ``email`` with the local part masked (``j***@example.com``)."""

    if not email:
        return email
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _normalise_key(key: str) -> str:
    return key.lower().replace("_", "")


def sanitize_phi_metadata(value: Any) -> Any:
    """Drop PHI-bearing keys from ``value`` at every nesting level."""

    if isinstance(value, Mapping):
        cleaned = {}
        for key, sub_value in value.items():
            if _normalise_key(str(key)) in PHI_METADATA_KEYS:
                PHI_KEYS_STRIPPED_TOTAL.inc()
                continue
            cleaned[str(key)] = sanitize_phi_metadata(sub_value)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [sanitize_phi_metadata(item) for item in value]
    return value


def compute_webhook_signature(secret: str, timestamp: int, payload: bytes) -> str:
    message = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    secret: str,
    header: Optional[str],
    payload: bytes,
    *,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> int:
    """Verify a ``t=<ts>,v1=<hex>`` signature header and return the timestamp.

    Raises :class:`WebhookSignatureError` when the header is missing,
    malformed, outside the tolerance window or does not match.
    """

    if not header:
        raise WebhookSignatureError("Missing signature header")
    parts: dict[str, list[str]] = {}
    for item in header.split(","):
        key, sep, val = item.strip().partition("=")
        if sep:
            parts.setdefault(key, []).append(val)
    try:
        timestamp = int(parts["t"][0])
    except (KeyError, IndexError, ValueError) as exc:
        raise WebhookSignatureError("Malformed signature header") from exc
    signatures = parts.get("v1") or []
    if not signatures:
        raise WebhookSignatureError("No v1 signature present")
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")
    expected = compute_webhook_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Signature mismatch")
    return timestamp


__all__ = [
    "PHI_METADATA_KEYS",
    "WebhookSignatureError",
    "hash_identifier",
    "redact_email",
    "sanitize_phi_metadata",
    "compute_webhook_signature",
    "verify_webhook_signature",
]
