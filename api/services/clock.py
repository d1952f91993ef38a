"""
Clock - injectable source of "now" for sync scheduling.

The orchestrator and providers never call datetime.now() directly so that
schedules can be replayed under accelerated time or frozen in tests.
"""
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from api.utils.datetime_utils import make_aware
from config.settings import settings


class Clock(ABC):
    """Base clock. Subclasses return timezone-aware UTC datetimes."""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class AcceleratedClock(Clock):
    """
    Time that runs faster than the wall clock.

    Elapsed real time since construction is multiplied by `factor` and added
    to `base_time`. A factor of 1.0 behaves like SystemClock offset to base_time.
    """

    def __init__(self, factor: float, base_time: Optional[datetime] = None):
        if factor <= 0:
            raise ValueError(f"Acceleration factor must be positive, got {factor}")
        self.factor = factor
        self.base_time = make_aware(base_time) or datetime.now(timezone.utc)
        self._started = time.monotonic()

    def now(self) -> datetime:
        elapsed = time.monotonic() - self._started
        return self.base_time + timedelta(seconds=elapsed * self.factor)


class FixedClock(Clock):
    """A clock that only moves when told to."""

    def __init__(self, current: datetime):
        self._current = make_aware(current)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, current: datetime):
        with self._lock:
            self._current = make_aware(current)

    def advance(self, delta: timedelta):
        with self._lock:
            self._current = self._current + delta


# Singleton instance
_clock: Optional[Clock] = None


def get_clock() -> Clock:
    """Get or create the process clock from settings."""
    global _clock
    if _clock is None:
        if settings.time_acceleration != 1.0 or settings.time_base is not None:
            _clock = AcceleratedClock(settings.time_acceleration, settings.time_base)
        else:
            _clock = SystemClock()
    return _clock
