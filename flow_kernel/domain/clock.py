"""
Clock -- injectable source of "now".

Responsibility:
    Services, the dispatcher and the worker take a Clock in their
    constructor and never call ``datetime.now()`` themselves.  Lock
    timeouts, retry backoff, task due dates and lease expiry all derive
    from it, which is what lets tests step through a two-minute lock or a
    five-attempt retry schedule without sleeping.

Architecture position:
    Kernel > Domain.  ``SystemClock`` is the only place wall-clock time
    enters the system.  The pure engines never see a clock at all.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Returns timezone-aware UTC datetimes."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Manually driven clock for tests.

    ``now()`` is frozen until ``advance()`` or ``set()`` moves it.  Several
    worker threads may read it at once; only the test thread moves it.
    """

    EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, start: datetime | None = None):
        self._now = as_utc(start) if start is not None else self.EPOCH

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 1) -> datetime:
        """Move forward by ``seconds`` and return the new time."""
        self._now += timedelta(seconds=seconds)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = as_utc(moment)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite returns naive datetimes for ``DateTime(timezone=True)`` columns;
    every value the kernel writes is UTC, so a naive value is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
