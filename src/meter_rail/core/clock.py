"""
Clock Sources

All time math in the engine is done on integer nanoseconds. A clock only
has to promise one thing: successive readings never go backwards.
"""

from threading import Lock
from typing import Optional, Protocol
import time

NS_PER_MICROSECOND = 1_000
NS_PER_MILLISECOND = 1_000_000
NS_PER_SECOND = 1_000_000_000
NS_PER_MINUTE = 60 * NS_PER_SECOND
NS_PER_HOUR = 60 * NS_PER_MINUTE
NS_PER_DAY = 24 * NS_PER_HOUR


class Clock(Protocol):
    """Anything that can report the current time in nanoseconds."""

    def now_ns(self) -> int:
        ...


class SystemClock:
    """
    Epoch-anchored nanosecond clock.

    The wall clock is sampled once; afterwards time advances by the
    monotonic counter, so NTP adjustments cannot make elapsed time shrink.
    """

    def __init__(self):
        self._epoch_anchor = time.time_ns()
        self._monotonic_anchor = time.monotonic_ns()

    def now_ns(self) -> int:
        return self._epoch_anchor + (time.monotonic_ns() - self._monotonic_anchor)


class ManualClock:
    """
    Deterministic clock for tests and simulations.

    Time only moves when advance() or set() is called.
    """

    def __init__(self, start_ns: int = 0):
        if start_ns < 0:
            raise ValueError("start_ns must be >= 0")
        self._now = start_ns
        self._lock = Lock()

    def now_ns(self) -> int:
        return self._now

    def advance(self, ns: int = 0, seconds: Optional[float] = None) -> int:
        """Move the clock forward and return the new reading."""
        delta = ns
        if seconds is not None:
            delta += int(seconds * NS_PER_SECOND)
        if delta < 0:
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now += delta
            return self._now

    def set(self, now_ns: int) -> None:
        with self._lock:
            if now_ns < self._now:
                raise ValueError("ManualClock cannot move backwards")
            self._now = now_ns
