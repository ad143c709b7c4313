"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock so that domain and service code never call
    ``datetime.now()`` or ``time.sleep()`` directly.  Besides reading time,
    the clock owns waiting: confirmation polling sleeps through the clock, so
    a DeterministicClock makes timeout behaviour testable without real delays.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime`` in UTC.
        - ``timestamp()`` returns whole Unix seconds (transaction deadlines).
        - ``sleep(seconds)`` returns after at least ``seconds`` of clock time.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current UTC time."""
        ...

    @abstractmethod
    def sleep(self, seconds: float) -> None:
        """Block for ``seconds`` of clock time."""
        ...

    def timestamp(self) -> int:
        """Current time as integer Unix seconds."""
        return int(self.now().timestamp())


class SystemClock(Clock):
    """
    Production clock that returns actual system time and really sleeps.

    Non-goals:
        Not suitable for deterministic replay or testing.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until
          ``advance()``, ``sleep()`` or ``set_time()`` is called.
        - ``sleep()`` advances the clock instead of blocking.
    """

    def __init__(self, fixed_time: datetime | None = None):
        """
        Args:
            fixed_time: Starting time.  Naive values are taken as UTC.
        """
        start = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._fixed_time = start
        self._advanced = timedelta(0)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._fixed_time + self._advanced

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def set_time(self, when: datetime) -> None:
        """Set the clock to a specific time."""
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        self._fixed_time = when
        self._advanced = timedelta(0)

    def advance(self, seconds: float = 1) -> None:
        """Advance the clock by the specified seconds."""
        self._advanced += timedelta(seconds=seconds)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values; stored timestamps are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
