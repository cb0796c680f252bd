"""
Billing Calculator

Pure functions turning elapsed nanoseconds and a configured cost rate into
money. All intermediate math is integer: amounts are scaled by RATE_SCALE
(10^18) before they meet a nanosecond count, so multi-hour sessions never
pick up floating-point drift.

Rounding is always DOWN inside the engine (the payer is never billed for a
fraction it did not consume). Display rounding happens only in round_money().
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

from ..core.clock import (
    NS_PER_DAY,
    NS_PER_HOUR,
    NS_PER_MICROSECOND,
    NS_PER_MILLISECOND,
    NS_PER_MINUTE,
    NS_PER_SECOND,
)
from ..core.errors import InvalidConfiguration

if TYPE_CHECKING:
    from ..core.session import Session

RATE_DIGITS = 18
RATE_SCALE = 10 ** RATE_DIGITS

Amount = Union[Decimal, int, float, str]


class TimeUnit(Enum):
    """Time units a human-entered service cost can be expressed in."""
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"

    @property
    def nanoseconds(self) -> int:
        return {
            TimeUnit.MINUTE: NS_PER_MINUTE,
            TimeUnit.HOUR: NS_PER_HOUR,
            TimeUnit.DAY: NS_PER_DAY,
        }[self]

    @classmethod
    def parse(cls, value: Union["TimeUnit", str]) -> "TimeUnit":
        """Accept an enum member, its value, or the short m/h/d forms."""
        if isinstance(value, TimeUnit):
            return value
        aliases = {"m": "minute", "min": "minute", "h": "hour", "hr": "hour", "d": "day"}
        key = str(value).strip().lower()
        key = aliases.get(key, key)
        try:
            return cls(key)
        except ValueError:
            valid = [u.value for u in cls]
            raise InvalidConfiguration(f"Invalid time unit: {value}. Must be one of {valid}")


# Units accepted by to_nanoseconds()
_NS_PER_UNIT = {
    "ns": 1,
    "us": NS_PER_MICROSECOND,
    "ms": NS_PER_MILLISECOND,
    "s": NS_PER_SECOND,
    "m": NS_PER_MINUTE,
    "h": NS_PER_HOUR,
    "d": NS_PER_DAY,
}


def to_decimal(value: Amount, field_name: str = "amount") -> Decimal:
    """
    Coerce user input to Decimal.

    Floats go through str() so 0.1 stays 0.1 instead of its binary expansion.
    """
    if isinstance(value, bool):
        raise InvalidConfiguration(f"{field_name} must be a number")
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidConfiguration(f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise InvalidConfiguration(f"{field_name} must be finite")
    return result


def scale_amount(amount: Amount) -> int:
    """Amount -> integer in units of 10^-18 (truncated)."""
    value = to_decimal(amount) * RATE_SCALE
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def unscale(scaled: int) -> Decimal:
    """Inverse of scale_amount()."""
    return Decimal(scaled).scaleb(-RATE_DIGITS)


def to_nanoseconds(value: int, unit: str) -> int:
    """Convert an integer count of ns/us/ms/s/m/h/d to nanoseconds."""
    if unit not in _NS_PER_UNIT:
        raise InvalidConfiguration(f"Invalid unit: {unit}. Must be one of {list(_NS_PER_UNIT)}")
    return int(value) * _NS_PER_UNIT[unit]


def normalize_rate(service_cost: Amount, time_unit: Union[TimeUnit, str]) -> int:
    """
    Convert a "cost per minute/hour/day" into a per-nanosecond rate.

    Returns:
        Integer rate in currency units x 10^18 per nanosecond.

    Raises:
        InvalidConfiguration: Unknown time unit or non-positive cost.
    """
    unit = TimeUnit.parse(time_unit)
    cost = to_decimal(service_cost, "service_cost")
    if cost <= 0:
        raise InvalidConfiguration("Service cost must be a positive number")
    return scale_amount(cost) // unit.nanoseconds


def cost_scaled(elapsed_ns: int, cost_rate: Amount, time_unit: Union[TimeUnit, str] = TimeUnit.HOUR) -> int:
    """Cost of elapsed_ns at cost_rate per time_unit, scaled by RATE_SCALE."""
    if elapsed_ns < 0:
        raise InvalidConfiguration("elapsed duration cannot be negative")
    unit = TimeUnit.parse(time_unit)
    return scale_amount(cost_rate) * elapsed_ns // unit.nanoseconds


def cost_for(elapsed_ns: int, cost_rate_per_hour: Amount) -> Decimal:
    """
    amount = cost_rate_per_hour x (elapsed / one hour)

    Exact to 10^-18 of a currency unit; rounded down past that.
    """
    return unscale(cost_scaled(elapsed_ns, cost_rate_per_hour, TimeUnit.HOUR))


def cost_from_scaled_rate(elapsed_ns: int, rate_per_ns_scaled: int) -> Decimal:
    """Cost using a rate produced by normalize_rate()."""
    return unscale(elapsed_ns * rate_per_ns_scaled)


def max_duration_for_budget(
    budget: Amount,
    cost_rate: Amount,
    time_unit: Union[TimeUnit, str] = TimeUnit.HOUR,
) -> int:
    """Nanoseconds of service a budget buys at the given rate."""
    rate = scale_amount(cost_rate)
    if rate <= 0:
        raise InvalidConfiguration("cost rate must be positive")
    unit = TimeUnit.parse(time_unit)
    return scale_amount(budget) * unit.nanoseconds // rate


def round_money(amount: Decimal, places: int = 2) -> Decimal:
    """Presentation rounding (half-up). Never feed the result back into billing."""
    return amount.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def money_str(amount: Optional[Decimal]) -> Optional[str]:
    """Lossless string form for JSON payloads ("100", "0.25")."""
    if amount is None:
        return None
    if amount == 0:
        return "0"
    return format(amount.normalize(), "f")


@dataclass(frozen=True)
class DurationDisplay:
    """Whole hours/minutes/seconds. Sub-second precision is never shown."""
    hours: int
    minutes: int
    seconds: int
    total_seconds: int

    @property
    def formatted(self) -> str:
        return f"{self.hours}h {self.minutes}m {self.seconds}s"

    @property
    def clock(self) -> str:
        return f"{self.hours:02d}:{self.minutes:02d}:{self.seconds:02d}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hours": self.hours,
            "minutes": self.minutes,
            "seconds": self.seconds,
            "total_seconds": self.total_seconds,
            "formatted": self.formatted,
        }


def format_duration(elapsed_ns: int) -> DurationDisplay:
    total_seconds = elapsed_ns // NS_PER_SECOND
    return DurationDisplay(
        hours=total_seconds // 3600,
        minutes=(total_seconds % 3600) // 60,
        seconds=total_seconds % 60,
        total_seconds=total_seconds,
    )


@dataclass(frozen=True)
class BillingBreakdown:
    """
    Derived billing view of a session.

    cost_per_second / cost_per_minute are None while nothing has elapsed;
    they are never reported as NaN or infinity.
    """
    session_id: str
    duration: DurationDisplay
    rate: Decimal
    rate_unit: TimeUnit
    total_cost: Decimal
    currency: str
    cost_per_second: Optional[Decimal]
    cost_per_minute: Optional[Decimal]
    cost_per_hour: Decimal
    active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "duration": self.duration.to_dict(),
            "rate": money_str(self.rate),
            "rate_unit": self.rate_unit.value,
            "total_cost": money_str(self.total_cost),
            "display_cost": str(round_money(self.total_cost)),
            "currency": self.currency,
            "cost_per_second": money_str(self.cost_per_second),
            "cost_per_minute": money_str(self.cost_per_minute),
            "cost_per_hour": money_str(self.cost_per_hour),
            "active": self.active,
        }


FinalBilling = BillingBreakdown


def rate_per_hour(cost_rate: Amount, time_unit: Union[TimeUnit, str]) -> Decimal:
    unit = TimeUnit.parse(time_unit)
    return to_decimal(cost_rate) * NS_PER_HOUR / unit.nanoseconds


def billing_breakdown(session: "Session") -> BillingBreakdown:
    """Build the billing view from a session's current elapsed time."""
    elapsed = session.elapsed_ns
    total = session.accumulated_cost

    per_second: Optional[Decimal] = None
    per_minute: Optional[Decimal] = None
    if elapsed > 0:
        per_second = total * NS_PER_SECOND / elapsed
        per_minute = per_second * 60

    return BillingBreakdown(
        session_id=session.session_id,
        duration=format_duration(elapsed),
        rate=session.cost_rate,
        rate_unit=session.rate_unit,
        total_cost=total,
        currency=session.currency,
        cost_per_second=per_second,
        cost_per_minute=per_minute,
        cost_per_hour=rate_per_hour(session.cost_rate, session.rate_unit),
        active=session.is_active,
    )
