"""
METER RAIL
Nanosecond metering and settlement for pay-per-use services.

- Session metering with integer-nanosecond elapsed time
- Fixed-point cost accounting
- Session and universal spending caps
- No-overpayment settlement into settlement units
"""

__version__ = "1.0.0"

from .config import MeterConfig
from .engine import MeteringEngine, RateRefresher, TickResult, TickScheduler
from .rates import RateSnapshot, RateTable
from .settlement import SettlementCoordinator, SettlementRecord, SettlementStatus

__all__ = [
    "__version__",
    "MeterConfig",
    "MeteringEngine",
    "RateRefresher",
    "TickResult",
    "TickScheduler",
    "RateSnapshot",
    "RateTable",
    "SettlementCoordinator",
    "SettlementRecord",
    "SettlementStatus",
]
