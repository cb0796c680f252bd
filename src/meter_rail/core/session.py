"""
Metering Session Model

A session is one metering period for one usage instance. Elapsed time is
kept as integer nanoseconds and only ever grows while the session is active;
once ended it is frozen.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from threading import RLock
from typing import Any, Dict, List, Optional

from ..billing.calculator import (
    BillingBreakdown,
    TimeUnit,
    cost_scaled,
    money_str,
    unscale,
)


class SessionStatus(Enum):
    """Lifecycle flag."""
    ACTIVE = "active"
    ENDED = "ended"


class BillingMode(Enum):
    """
    TIME: cost accrues against a configured rate; rate is mandatory.
    BALANCE: the payer pre-commits a session cap the service runs down.
    """
    TIME = "time"
    BALANCE = "balance"


class CapStatus(Enum):
    """Spending-cap state of a session."""
    WITHIN_LIMITS = "within_limits"
    SESSION_CAP_REACHED = "session_cap_reached"
    UNIVERSAL_CAP_REACHED = "universal_cap_reached"


@dataclass(frozen=True)
class ConsumptionEvent:
    """Audit-trail entry. Has no effect on cost."""
    timestamp_ns: int
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_ns": str(self.timestamp_ns),
            "description": self.description,
            "metadata": dict(self.metadata),
        }


@dataclass
class Session:
    """Mutable session record. Only the SessionStore writes to it."""
    session_id: str
    created_at_ns: int
    cost_rate: Decimal
    currency: str
    rate_unit: TimeUnit = TimeUnit.HOUR
    rate_per_ns_scaled: int = 0
    mode: BillingMode = BillingMode.TIME
    payer_id: Optional[str] = None
    session_cap: Optional[Decimal] = None
    elapsed_ns: int = 0
    status: SessionStatus = SessionStatus.ACTIVE
    cap_status: CapStatus = CapStatus.WITHIN_LIMITS
    ended_at_ns: Optional[int] = None
    consumption_log: List[ConsumptionEvent] = field(default_factory=list)
    final_billing: Optional[BillingBreakdown] = None

    # Serialises advance / cap evaluation / end for this session only
    lock: RLock = field(default_factory=RLock, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def accumulated_cost_scaled(self) -> int:
        return cost_scaled(self.elapsed_ns, self.cost_rate, self.rate_unit)

    @property
    def accumulated_cost(self) -> Decimal:
        return unscale(self.accumulated_cost_scaled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "payer_id": self.payer_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "cap_status": self.cap_status.value,
            "currency": self.currency,
            "cost_rate": money_str(self.cost_rate),
            "rate_unit": self.rate_unit.value,
            # Cost per nanosecond x 10^18, as a string to survive JSON
            "rate_per_ns_scaled": str(self.rate_per_ns_scaled),
            "session_cap": money_str(self.session_cap),
            "accumulated_cost": money_str(self.accumulated_cost),
            "event_count": len(self.consumption_log),
        }
