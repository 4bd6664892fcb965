"""Injectable time source.

Scheduling, backoff and deadline checks never call ``datetime.now()``
directly; they ask a :class:`Clock` so tests can pin time exactly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

UTC = timezone.utc


class Clock(ABC):
    """Abstract clock returning timezone-aware UTC datetimes."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)


class FixedClock(Clock):
    """Clock frozen at a given instant until advanced explicitly."""

    def __init__(self, fixed_time: datetime | None = None) -> None:
        self._now = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)
        if self._now.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")

    def now(self) -> datetime:
        return self._now

    def set_time(self, value: datetime) -> None:
        self._now = value

    def advance(self, **delta: float) -> datetime:
        """Move the clock forward by ``timedelta(**delta)`` and return it."""

        self._now = self._now + timedelta(**delta)
        return self._now


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from storage."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
