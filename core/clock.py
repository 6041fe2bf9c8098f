"""
core/clock.py -- Injectable source of "now".

Every policy decision takes its current time from a Clock rather than calling
datetime.now() inline, so tests (and the CLI's --as-of report) can pin time to
a fixed instant without patching globals.

A Clock is any zero-argument callable returning a timezone-aware UTC datetime.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: the current wall-clock time in UTC."""
    return datetime.now(timezone.utc)


class FixedClock:
    """A clock frozen at a given instant. advance() moves it forward.

    Usage:
        clock = FixedClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
        policy = ExpiryPolicy(ledger, clock=clock)
        clock.advance(days=31)
    """

    def __init__(self, at: datetime) -> None:
        self._now = as_utc(at)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


def as_utc(value: datetime) -> datetime:
    """Return value as an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime to a fixed-width UTC ISO 8601 string.

    timespec="microseconds" keeps every value the same width, so string
    comparison in SQL (<=, ORDER BY) matches chronological order. Naive
    datetimes are assumed to be UTC.
    """
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 string back to an aware UTC datetime."""
    if not value:
        return None
    # Naive values are legacy rows written without an offset
    return as_utc(datetime.fromisoformat(value))
