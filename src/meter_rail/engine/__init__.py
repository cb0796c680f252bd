"""
METER RAIL - Engine Module

Session metering orchestration:
- Tick sequence (advance, cap evaluation, auto-stop, live update)
- Lifetime spend commit on session end
- asyncio drivers for ticks and rate refreshes
"""

from .engine import MeteringEngine, TickResult
from .scheduler import PeriodicDriver, RateRefresher, TickScheduler

__all__ = [
    "MeteringEngine",
    "TickResult",
    "PeriodicDriver",
    "RateRefresher",
    "TickScheduler",
]
