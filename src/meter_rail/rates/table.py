"""
Rate Table

Holds the current Rate Snapshot: fiat exchange factors relative to a base
currency, and settlement-unit prices in that base currency.

A snapshot is never edited. publish() and refresh() swap in a brand-new
object, so a calculation that grabbed the old one keeps a consistent view.
Readers take no lock; only writers serialise with each other.

Conversion:
    unit_amount = (fiat_amount / exchange_rate[fiat]) / unit_price[unit]
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from threading import Lock
from types import MappingProxyType
from typing import Any, Deque, Dict, List, Mapping, Optional, Union
import structlog

from ..billing.calculator import Amount, money_str, to_decimal
from ..core.errors import (
    InvalidConfiguration,
    RateRefreshError,
    UnknownCurrency,
    UnknownUnit,
)
from .feeds import RateFeed, StaticRateFeed

logger = structlog.get_logger()

DEFAULT_BASE_CURRENCY = "USD"
DEFAULT_FIAT_RATES = {"USD": 1.0, "EUR": 0.92, "INR": 83.5}
DEFAULT_UNIT_PRICES = {"ETH": 2500, "USDC": 1, "MATIC": 0.8}

# Snapshots retained for history()
HISTORY_LIMIT = 100


def _freeze_prices(prices: Mapping[str, Any], label: str) -> Mapping[str, Decimal]:
    if not prices:
        raise RateRefreshError(f"{label} cannot be empty")
    frozen: Dict[str, Decimal] = {}
    for code, value in prices.items():
        try:
            amount = to_decimal(value, f"{label}[{code}]")
        except InvalidConfiguration as e:
            raise RateRefreshError(str(e))
        if amount <= 0:
            raise RateRefreshError(f"{label}[{code}] must be > 0, got {value}")
        frozen[str(code).upper()] = amount
    return MappingProxyType(frozen)


@dataclass(frozen=True)
class RateSnapshot:
    """Point-in-time fiat rates and unit prices. Read-only."""
    fiat_rates: Mapping[str, Decimal]
    unit_prices: Mapping[str, Decimal]
    base_currency: str = DEFAULT_BASE_CURRENCY
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "static"

    @classmethod
    def build(
        cls,
        fiat_rates: Mapping[str, Any],
        unit_prices: Mapping[str, Any],
        base_currency: str = DEFAULT_BASE_CURRENCY,
        source: str = "static",
    ) -> "RateSnapshot":
        """
        Validate and freeze raw feed values.

        Raises:
            RateRefreshError: empty maps, non-positive or non-numeric prices,
                or a fiat map that omits the base currency
        """
        rates = _freeze_prices(fiat_rates, "fiatRates")
        prices = _freeze_prices(unit_prices, "unitPrices")
        base = base_currency.upper()
        if base not in rates:
            raise RateRefreshError(f"fiatRates must include base currency {base}")
        return cls(fiat_rates=rates, unit_prices=prices, base_currency=base, source=source)

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        base_currency: str = DEFAULT_BASE_CURRENCY,
        source: str = "push",
    ) -> "RateSnapshot":
        """Build from the feed push shape {"fiatRates": {...}, "unitPrices": {...}}."""
        try:
            fiat_rates = payload["fiatRates"]
            unit_prices = payload["unitPrices"]
        except (KeyError, TypeError):
            raise RateRefreshError("Rate payload must contain fiatRates and unitPrices")
        return cls.build(fiat_rates, unit_prices, base_currency=base_currency, source=source)

    def exchange_rate_for(self, currency: str) -> Decimal:
        rate = self.fiat_rates.get(str(currency).upper())
        if rate is None:
            raise UnknownCurrency(currency)
        return rate

    def unit_price_for(self, unit: str) -> Decimal:
        price = self.unit_prices.get(str(unit).upper())
        if price is None:
            raise UnknownUnit(unit)
        return price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_currency": self.base_currency,
            "fiatRates": {k: money_str(v) for k, v in self.fiat_rates.items()},
            "unitPrices": {k: money_str(v) for k, v in self.unit_prices.items()},
            "taken_at": self.taken_at.isoformat(),
            "source": self.source,
        }


@dataclass(frozen=True)
class Conversion:
    """Result of a fiat <-> unit conversion, pinned to the snapshot used."""
    fiat_amount: Decimal
    fiat_currency: str
    unit_amount: Decimal
    unit_symbol: str
    unit_price: Decimal
    exchange_rate: Decimal
    snapshot_taken_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fiat_amount": money_str(self.fiat_amount),
            "fiat_currency": self.fiat_currency,
            "unit_amount": money_str(self.unit_amount),
            "unit_symbol": self.unit_symbol,
            "unit_price": money_str(self.unit_price),
            "exchange_rate": money_str(self.exchange_rate),
            "snapshot_taken_at": self.snapshot_taken_at.isoformat(),
        }


class RateTable:
    """
    Latest-snapshot holder.

    The table never schedules its own refreshes. An external driver
    (see engine.scheduler.RateRefresher) calls refresh() on its cadence, or a
    price feed pushes a payload through publish().
    """

    def __init__(
        self,
        feed: Optional[RateFeed] = None,
        snapshot: Optional[RateSnapshot] = None,
        base_currency: str = DEFAULT_BASE_CURRENCY,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.base_currency = base_currency.upper()
        self.feed = feed or StaticRateFeed()
        self._snapshot = snapshot or RateSnapshot.build(
            DEFAULT_FIAT_RATES, DEFAULT_UNIT_PRICES, base_currency=self.base_currency
        )
        self._history: Deque[RateSnapshot] = deque([self._snapshot], maxlen=history_limit)
        self._write_lock = Lock()
        self.last_error: Optional[str] = None
        self.refresh_count = 0
        self.failure_count = 0

    @property
    def snapshot(self) -> RateSnapshot:
        """The current snapshot. Safe to hold across a concurrent refresh."""
        return self._snapshot

    def publish(self, update: Union[RateSnapshot, Mapping[str, Any]]) -> RateSnapshot:
        """
        Replace the whole snapshot.

        Raises:
            RateRefreshError: the payload is malformed; the old snapshot stays
        """
        if isinstance(update, RateSnapshot):
            snapshot = update
        else:
            snapshot = RateSnapshot.from_payload(update, base_currency=self.base_currency)

        with self._write_lock:
            self._snapshot = snapshot
            self._history.append(snapshot)
            self.refresh_count += 1
            self.last_error = None

        logger.info(
            "rate_snapshot_published",
            source=snapshot.source,
            currencies=len(snapshot.fiat_rates),
            units=len(snapshot.unit_prices),
        )
        return snapshot

    def refresh(self) -> bool:
        """
        Pull a new snapshot from the feed.

        A failing feed never takes the engine down: the last good snapshot
        keeps serving, the error is logged and kept in last_error.

        Returns:
            True if a new snapshot was published
        """
        current = self._snapshot
        try:
            fetched = self.feed.fetch(current)
            if not isinstance(fetched, RateSnapshot):
                fetched = RateSnapshot.from_payload(
                    fetched, base_currency=self.base_currency, source=self.feed.name
                )
            self.publish(fetched)
            return True
        except Exception as e:
            with self._write_lock:
                self.failure_count += 1
                self.last_error = str(e)
            logger.error(
                "rate_refresh_failed",
                feed=self.feed.name,
                error=str(e),
                error_type=type(e).__name__,
                serving_snapshot=current.taken_at.isoformat(),
            )
            return False

    def conversion(
        self,
        fiat_amount: Amount,
        fiat_currency: str = DEFAULT_BASE_CURRENCY,
        unit_symbol: str = "ETH",
    ) -> Conversion:
        """Convert fiat to settlement units, returning the prices used."""
        amount = to_decimal(fiat_amount, "fiat_amount")
        snapshot = self._snapshot
        rate = snapshot.exchange_rate_for(fiat_currency)
        price = snapshot.unit_price_for(unit_symbol)
        return Conversion(
            fiat_amount=amount,
            fiat_currency=str(fiat_currency).upper(),
            unit_amount=(amount / rate) / price,
            unit_symbol=str(unit_symbol).upper(),
            unit_price=price,
            exchange_rate=rate,
            snapshot_taken_at=snapshot.taken_at,
        )

    def convert(
        self,
        fiat_amount: Amount,
        fiat_currency: str = DEFAULT_BASE_CURRENCY,
        unit_symbol: str = "ETH",
    ) -> Decimal:
        """
        Fiat amount -> settlement-unit amount.

        Raises:
            UnknownCurrency: fiat_currency not in the snapshot
            UnknownUnit: unit_symbol not in the snapshot
        """
        return self.conversion(fiat_amount, fiat_currency, unit_symbol).unit_amount

    def convert_to_fiat(
        self,
        unit_amount: Amount,
        unit_symbol: str = "ETH",
        fiat_currency: str = DEFAULT_BASE_CURRENCY,
    ) -> Decimal:
        amount = to_decimal(unit_amount, "unit_amount")
        snapshot = self._snapshot
        price = snapshot.unit_price_for(unit_symbol)
        rate = snapshot.exchange_rate_for(fiat_currency)
        return amount * price * rate

    def exchange_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """How many to_currency one from_currency buys."""
        snapshot = self._snapshot
        return snapshot.exchange_rate_for(to_currency) / snapshot.exchange_rate_for(from_currency)

    def unit_price_in(self, unit_symbol: str = "ETH", fiat_currency: str = DEFAULT_BASE_CURRENCY) -> Decimal:
        snapshot = self._snapshot
        return snapshot.unit_price_for(unit_symbol) * snapshot.exchange_rate_for(fiat_currency)

    def history(self, limit: int = 10) -> List[RateSnapshot]:
        """Most recent snapshots, oldest first."""
        if limit <= 0:
            return []
        snapshots = list(self._history)
        return snapshots[-limit:]

    def status(self) -> Dict[str, Any]:
        return {
            "feed": self.feed.name,
            "taken_at": self._snapshot.taken_at.isoformat(),
            "refresh_count": self.refresh_count,
            "failure_count": self.failure_count,
            "last_error": self.last_error,
        }


def calculate_slippage(expected: Amount, actual: Amount) -> Decimal:
    """Percentage difference between an expected and an actual amount."""
    expected_value = to_decimal(expected, "expected")
    actual_value = to_decimal(actual, "actual")
    if expected_value == 0:
        raise InvalidConfiguration("expected amount cannot be zero")
    return abs(expected_value - actual_value) / abs(expected_value) * 100
