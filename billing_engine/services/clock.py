"""Clock abstraction for period, grace window and lookback computations.

Services read time through ``get_clock()``. Production uses the system
clock; tests install a ``ManualClock`` and move it explicitly.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from billing_engine.logging_config import get_logger

logger = get_logger(__name__)


class Clock(ABC):
    """Source of the current UTC time."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""

    def now_millis(self) -> int:
        return int(self.now().timestamp() * 1000)


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """Controllable clock for tests and simulations.

    Time only moves when ``advance`` or ``set_time`` is called.

    Args:
        start: Initial time (defaults to the current wall-clock time)
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._lock = threading.RLock()
        self._now = _as_utc(start) if start else datetime.now(timezone.utc)

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(
        self,
        days: int = 0,
        hours: int = 0,
        minutes: int = 0,
        seconds: float = 0,
    ) -> dict:
        """Move time forward.

        Returns:
            Dictionary with old_time and new_time

        Raises:
            ValueError: If any value is negative
        """
        if days < 0 or hours < 0 or minutes < 0 or seconds < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed")

        delta = timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)
        with self._lock:
            old_time = self._now
            self._now = old_time + delta
            new_time = self._now

        logger.info(
            "clock_advanced",
            old_time=old_time.isoformat(),
            new_time=new_time.isoformat(),
            advanced_seconds=delta.total_seconds(),
        )
        return {"old_time": old_time, "new_time": new_time}

    def set_time(self, when: datetime) -> dict:
        """Jump to a specific time.

        Raises:
            ValueError: If ``when`` is before the current time
        """
        when = _as_utc(when)
        with self._lock:
            old_time = self._now
            if when < old_time:
                raise ValueError(
                    f"cannot set time backwards, current: {old_time.isoformat()}, "
                    f"requested: {when.isoformat()}"
                )
            self._now = when

        logger.info("clock_set", old_time=old_time.isoformat(), new_time=when.isoformat())
        return {"old_time": old_time, "new_time": when}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_clock_instance: Optional[Clock] = None
_clock_lock = threading.Lock()


def get_clock() -> Clock:
    global _clock_instance
    if _clock_instance is None:
        with _clock_lock:
            if _clock_instance is None:
                _clock_instance = SystemClock()
    return _clock_instance


def set_clock(clock: Clock) -> None:
    """Install a clock process-wide (tests install a ManualClock)."""
    global _clock_instance
    with _clock_lock:
        _clock_instance = clock


def reset_clock() -> None:
    global _clock_instance
    with _clock_lock:
        _clock_instance = None
