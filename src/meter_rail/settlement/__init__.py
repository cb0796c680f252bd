"""
METER RAIL - Settlement Module

Converts accumulated session cost into settlement-unit charges:
- No-overpayment clamp
- pending -> confirmed / failed lifecycle
- Refund computation and settlement history
"""

from .coordinator import (
    FinalAmount,
    PaymentValidation,
    RefundRecord,
    SettlementCoordinator,
    SettlementRecord,
    SettlementStatus,
)

__all__ = [
    "FinalAmount",
    "PaymentValidation",
    "RefundRecord",
    "SettlementCoordinator",
    "SettlementRecord",
    "SettlementStatus",
]
