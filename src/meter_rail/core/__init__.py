"""
METER RAIL - Core Module

Leaf dependencies of the metering engine:
- Nanosecond clock sources
- Error taxonomy
- Session model and store (meter_rail.core.session / meter_rail.core.store)
- Live update publisher (meter_rail.core.publisher)
"""

from .clock import Clock, ManualClock, SystemClock
from .errors import (
    CapConflict,
    InvalidConfiguration,
    InvalidStateTransition,
    MeterRailError,
    RateRefreshError,
    SessionNotActive,
    SessionNotFound,
    SettlementNotFound,
    UnknownCurrency,
    UnknownUnit,
)

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "CapConflict",
    "InvalidConfiguration",
    "InvalidStateTransition",
    "MeterRailError",
    "RateRefreshError",
    "SessionNotActive",
    "SessionNotFound",
    "SettlementNotFound",
    "UnknownCurrency",
    "UnknownUnit",
]
