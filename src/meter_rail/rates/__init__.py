"""
METER RAIL - Rates Module

Fiat exchange rates and settlement-unit prices:
- Immutable rate snapshots, swapped wholesale on refresh
- Fiat <-> settlement unit conversion
- Pluggable price feeds (static, simulated)
"""

from .feeds import RateFeed, SimulatedRateFeed, StaticRateFeed, get_feed
from .table import Conversion, RateSnapshot, RateTable, calculate_slippage

__all__ = [
    "RateFeed",
    "SimulatedRateFeed",
    "StaticRateFeed",
    "get_feed",
    "Conversion",
    "RateSnapshot",
    "RateTable",
    "calculate_slippage",
]
