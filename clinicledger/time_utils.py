"""Utilities for working with timestamps in UTC."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def optional_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    return ensure_utc(dt)


def add_days(dt: datetime, days: int) -> datetime:
    return ensure_utc(dt) + timedelta(days=days)


def start_of_day(dt: datetime) -> datetime:
    value = ensure_utc(dt)
    return datetime.combine(value.date(), time.min, tzinfo=timezone.utc)


def start_of_week(dt: datetime) -> datetime:
    """Return midnight UTC of the Sunday starting the week containing ``dt``."""

    day = start_of_day(dt)
    # ``weekday`` counts Monday as 0 so Sunday is 6.
    offset = (day.weekday() + 1) % 7
    return day - timedelta(days=offset)


def start_of_month(dt: datetime) -> datetime:
    value = ensure_utc(dt)
    return datetime(value.year, value.month, 1, tzinfo=timezone.utc)


def start_of_year(dt: datetime) -> datetime:
    value = ensure_utc(dt)
    return datetime(value.year, 1, 1, tzinfo=timezone.utc)


def day_key(dt: datetime) -> str:
    """Return the ISO calendar date of ``dt`` in UTC."""

    return ensure_utc(dt).date().isoformat()


def as_date(dt: datetime) -> date:
    return ensure_utc(dt).date()


__all__ = [
    "utc_now",
    "ensure_utc",
    "optional_utc",
    "add_days",
    "start_of_day",
    "start_of_week",
    "start_of_month",
    "start_of_year",
    "day_key",
    "as_date",
]
