"""
roomwarden.engine.timeutil — UTC helpers
=========================================

PostgreSQL hands back aware ``timestamptz`` values, SQLite hands back
naive ones.  Everything in the engines is compared in aware UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime

SECONDS_PER_DAY = 86_400


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Number of complete days from *earlier* to *later* (floored, never negative)."""
    seconds = (as_utc(later) - as_utc(earlier)).total_seconds()
    return max(0, int(seconds // SECONDS_PER_DAY))
