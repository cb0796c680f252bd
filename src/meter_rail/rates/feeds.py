"""
Price Feeds

A feed produces the next Rate Snapshot. Real exchange/crypto APIs plug in
behind the same interface; the two shipped here need no network.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Union
import random

from ..core.errors import InvalidConfiguration

if TYPE_CHECKING:
    from .table import RateSnapshot

# Simulated drift per refresh
FIAT_VARIANCE = 0.02  # +-1%
UNIT_VARIANCE = 0.05  # +-2.5%


class RateFeed(ABC):
    """Source of rate snapshots."""

    name = "feed"

    @abstractmethod
    def fetch(self, current: "RateSnapshot") -> Union["RateSnapshot", Mapping[str, Any]]:
        """Return a new snapshot or a {"fiatRates", "unitPrices"} payload."""


class StaticRateFeed(RateFeed):
    """Re-publishes fixed prices (or the current ones when none are given)."""

    name = "static"

    def __init__(
        self,
        fiat_rates: Optional[Mapping[str, Any]] = None,
        unit_prices: Optional[Mapping[str, Any]] = None,
    ):
        self.fiat_rates = dict(fiat_rates) if fiat_rates else None
        self.unit_prices = dict(unit_prices) if unit_prices else None

    def fetch(self, current: "RateSnapshot") -> Dict[str, Any]:
        return {
            "fiatRates": self.fiat_rates or dict(current.fiat_rates),
            "unitPrices": self.unit_prices or dict(current.unit_prices),
        }


class SimulatedRateFeed(RateFeed):
    """
    Random walk around the current snapshot.

    Fiat rates drift up to +-1% per refresh, unit prices up to +-2.5%. The
    base currency is pinned at 1.
    """

    name = "simulated"

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)

    def _jitter(self, value: Decimal, variance: float) -> Decimal:
        factor = 1 + (self._random.random() - 0.5) * variance
        return value * Decimal(repr(factor))

    def fetch(self, current: "RateSnapshot") -> Dict[str, Any]:
        fiat_rates = {
            code: rate if code == current.base_currency else self._jitter(rate, FIAT_VARIANCE)
            for code, rate in current.fiat_rates.items()
        }
        unit_prices = {
            symbol: self._jitter(price, UNIT_VARIANCE)
            for symbol, price in current.unit_prices.items()
        }
        return {"fiatRates": fiat_rates, "unitPrices": unit_prices}


def get_feed(name: str, seed: Optional[int] = None) -> RateFeed:
    """Feed by configuration name."""
    if name == StaticRateFeed.name:
        return StaticRateFeed()
    if name == SimulatedRateFeed.name:
        return SimulatedRateFeed(seed=seed)
    raise InvalidConfiguration(f"Unknown rate feed: {name}")
