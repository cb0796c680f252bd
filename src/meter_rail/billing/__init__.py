"""
METER RAIL - Billing Module

Fixed-point cost math and spending caps:
- Nanosecond duration x rate with 10^18-scaled integers
- Rate normalisation per minute/hour/day
- Session and universal cap enforcement (meter_rail.billing.caps)
"""

from .calculator import (
    RATE_SCALE,
    BillingBreakdown,
    DurationDisplay,
    FinalBilling,
    TimeUnit,
    billing_breakdown,
    cost_for,
    cost_from_scaled_rate,
    format_duration,
    max_duration_for_budget,
    normalize_rate,
    round_money,
    to_nanoseconds,
)

__all__ = [
    "RATE_SCALE",
    "BillingBreakdown",
    "DurationDisplay",
    "FinalBilling",
    "TimeUnit",
    "billing_breakdown",
    "cost_for",
    "cost_from_scaled_rate",
    "format_duration",
    "max_duration_for_budget",
    "normalize_rate",
    "round_money",
    "to_nanoseconds",
]
