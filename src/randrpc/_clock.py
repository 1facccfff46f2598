"""
Clock abstraction for the quota governor.

The governor never reads the wall clock itself: callers pass `now` in, and
the client facade gets it from a ClockSource. Tests use ManualClock to move
time across midnight UTC without waiting.

Example:
    >>> from datetime import UTC, datetime
    >>> from randrpc._clock import next_midnight_utc_after
    >>> next_midnight_utc_after(datetime(2024, 3, 1, 15, 30, tzinfo=UTC))
    datetime.datetime(2024, 3, 2, 0, 0, tzinfo=datetime.timezone.utc)
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from typing import override


def as_utc(t: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if t.tzinfo is None:
        return t.replace(tzinfo=UTC)
    return t.astimezone(UTC)


def next_midnight_utc_after(t: datetime) -> datetime:
    """
    Return the earliest instant strictly after `t` at 00:00:00 UTC.

    When `t` is itself exactly midnight, the following midnight is returned.

    Args:
        t: Reference instant. Naive values are interpreted as UTC.

    Returns:
        A timezone-aware UTC datetime with zero time-of-day components.
    """
    t = as_utc(t)
    midnight = t.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=1)


class ClockSource(ABC):
    """Source of the current UTC time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current instant as a timezone-aware UTC datetime."""
        pass

    def next_midnight_utc_after(self, t: datetime) -> datetime:
        """See `next_midnight_utc_after()`."""
        return next_midnight_utc_after(t)


class SystemClock(ClockSource):
    """Production clock backed by the system time."""

    @override
    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock(ClockSource):
    """
    Controllable clock for tests and simulations.

    Time only moves when `set()` or `advance()` is called.

    Example:
        >>> clock = ManualClock(datetime(2024, 3, 1, 23, 59, tzinfo=UTC))
        >>> clock.advance(minutes=2)
        >>> clock.now()
        datetime.datetime(2024, 3, 2, 0, 1, tzinfo=datetime.timezone.utc)
    """

    def __init__(self, start: datetime | None = None):
        self._now = as_utc(start) if start is not None else datetime.now(UTC)
        self._lock = threading.Lock()

    @override
    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, t: datetime) -> None:
        with self._lock:
            self._now = as_utc(t)

    def advance(self, **delta: float) -> None:
        """Move the clock forward by a `timedelta(**delta)`."""
        step = timedelta(**delta)
        assert step >= timedelta(0), "ManualClock cannot move backwards."
        with self._lock:
            self._now = self._now + step
