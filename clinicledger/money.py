"""Integer-cent arithmetic helpers.

All monetary values are integer cents and all rates are basis points
(10000 bps == 100%).  Fractional cents round half up so that a computed
commission never depends on the binary representation of a float.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

BPS_DENOMINATOR = 10000

Numeric = Union[int, float, Decimal]


def round_half_up(value: Numeric) -> int:
    """Round ``value`` to the nearest integer, halves away from zero."""

    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, bps: int) -> int:
    """Return ``bps`` basis points of ``amount_cents`` rounded to a whole cent."""

    return round_half_up(Decimal(amount_cents) * Decimal(bps) / BPS_DENOMINATOR)


def validate_bps(value: int | None, field: str) -> None:
    """Raise ``ValueError`` when ``value`` is outside 0-10000."""

    if value is None:
        return
    if value < 0 or value > BPS_DENOMINATOR:
        raise ValueError(f"{field} must be between 0 and {BPS_DENOMINATOR} basis points; got {value}")


__all__ = ["BPS_DENOMINATOR", "round_half_up", "percent_of", "validate_bps"]
