"""
Clock -- injectable wall-clock time source.

Responsibility:
    The one place services read "now": lot retirement stamps, fallback-cost
    update stamps, sale line ``costed_at`` and cost audit ``recorded_at``.

Architecture position:
    Kernel > Domain -- pure.  SystemClock is the only class here that
    touches the system time.

Audit relevance:
    Commercial dates (lot_date, sale_date) never come from a clock; they
    are supplied by the caller.  Only bookkeeping timestamps do, so a
    replay under a DeterministicClock is fully reproducible.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Source of timezone-aware UTC timestamps.

    Contract:
        Services receive a Clock via constructor injection and never call
        ``datetime.now()`` themselves.
    """

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Manually driven clock for tests and reproducible bulk replays.

    ``now()`` keeps returning the same instant until the clock is moved
    with ``advance()``, ``tick()`` or ``set_time()``.  Naive datetimes are
    taken to be UTC.
    """

    DEFAULT_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, fixed_time: datetime | None = None):
        self._current = self._as_utc(fixed_time or self.DEFAULT_START)

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        self._current = self._as_utc(time)

    def advance(self, seconds: int | float | timedelta = 1) -> None:
        step = seconds if isinstance(seconds, timedelta) else timedelta(seconds=seconds)
        if step < timedelta(0):
            raise ValueError(f"A clock cannot move backwards, got {step}")
        self._current += step

    def tick(self) -> datetime:
        """Move one second forward and return the new instant."""
        self.advance(1)
        return self._current

    @staticmethod
    def _as_utc(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
