"""Datetime helpers.

SQLite drops tzinfo on round-trip while PostgreSQL keeps it, so every
comparison against a stored timestamp goes through to_utc first.
"""

from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Convert datetime to UTC.

    Args:
        dt: Datetime (timezone-aware or naive). Naive values are taken as UTC.

    Returns:
        Timezone-aware datetime in UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch(seconds: int | float | None) -> datetime | None:
    """Convert Unix epoch seconds to an aware UTC datetime; None for missing or out-of-range input."""
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_epoch(dt: datetime | None) -> int | None:
    """Convert a datetime to Unix epoch seconds, passing None through."""
    if dt is None:
        return None
    return int(to_utc(dt).timestamp())


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse a provider ISO-8601 timestamp ("2024-01-01T09:00:00Z").

    Returns:
        Aware UTC datetime, or None when the value is missing or unparseable
    """
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_utc(parsed)
