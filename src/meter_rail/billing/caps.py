"""
Spending Cap Enforcement

Two independent ceilings:
1. Session cap - accumulated cost of the current session only
2. Universal cap - payer lifetime spend plus live spend of the current session

Evaluation order: universal first. If one tick crosses both, the universal
cap is the reported reason because it stops the payer, not just the session.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional
import structlog

from ..core.errors import CapConflict
from ..core.session import CapStatus, Session
from ..core.store import SessionStore
from ..persistence.ledger import SpendLedger
from .calculator import Amount, money_str, to_decimal

logger = structlog.get_logger()


@dataclass(frozen=True)
class CapEvaluation:
    """Outcome of one cap check."""
    session_id: str
    status: CapStatus
    session_cost: Decimal
    lifetime_spend: Decimal
    combined_spend: Decimal
    session_cap: Optional[Decimal]
    universal_cap: Optional[Decimal]
    should_stop: bool
    message: str = ""

    @property
    def breached(self) -> bool:
        return self.status != CapStatus.WITHIN_LIMITS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "session_cost": money_str(self.session_cost),
            "lifetime_spend": money_str(self.lifetime_spend),
            "combined_spend": money_str(self.combined_spend),
            "session_cap": money_str(self.session_cap),
            "universal_cap": money_str(self.universal_cap),
            "should_stop": self.should_stop,
            "message": self.message,
        }


class CapEnforcer:
    """
    Evaluates sessions against their session cap and the payer's universal cap.

    auto_stop controls whether a breach tells the caller to stop metering.
    With auto_stop off the breach is still recorded on the session and
    reported on every later evaluation.
    """

    def __init__(self, store: SessionStore, ledger: SpendLedger, auto_stop: bool = True):
        self.store = store
        self.ledger = ledger
        self.auto_stop = auto_stop

    def live_spend(self, payer_id: str, exclude_session_id: Optional[str] = None) -> Decimal:
        """Uncommitted spend of a payer's active sessions."""
        total = Decimal(0)
        for session in self.store.sessions_for_payer(payer_id, active_only=True):
            if session.session_id != exclude_session_id:
                total += session.accumulated_cost
        return total

    def remaining_universal(self, payer_id: str) -> Optional[Decimal]:
        """Universal allowance left after committed and live spend; None if uncapped."""
        account = self.ledger.account(payer_id)
        if account.universal_cap is None:
            return None
        committed = account.lifetime_spend + self.live_spend(payer_id)
        return account.universal_cap - committed

    def validate_start(self, payer_id: Optional[str], session_cap: Optional[Amount]) -> None:
        """
        Pre-flight check before a session is created.

        Raises:
            CapConflict: universal cap exhausted, or session cap larger than
                what is left of it
        """
        if payer_id is None:
            return

        remaining = self.remaining_universal(payer_id)
        if remaining is None:
            return

        if remaining <= 0:
            logger.warning("session_start_rejected", payer_id=payer_id, reason="universal_cap_exhausted")
            raise CapConflict("Universal spending cap reached: no new sessions allowed")

        if session_cap is None:
            return

        cap = to_decimal(session_cap, "session_cap")
        if cap > remaining:
            logger.warning(
                "session_start_rejected",
                payer_id=payer_id,
                reason="session_cap_exceeds_universal_remaining",
                session_cap=str(cap),
                remaining=str(remaining),
            )
            raise CapConflict(
                f"Session cap {cap} exceeds remaining universal cap {remaining}"
            )

    def evaluate(self, session: Session) -> CapEvaluation:
        """
        Check one session. Caller must hold session.lock so the cost read
        here is the one produced by the preceding advance.
        """
        session_cost = session.accumulated_cost
        lifetime = Decimal(0)
        universal_cap: Optional[Decimal] = None
        combined = session_cost

        if session.payer_id is not None:
            account = self.ledger.account(session.payer_id)
            lifetime = account.lifetime_spend
            universal_cap = account.universal_cap
            combined = lifetime + self.live_spend(session.payer_id, exclude_session_id=session.session_id) + session_cost

        status = session.cap_status
        message = ""

        if universal_cap is not None and combined >= universal_cap:
            status = CapStatus.UNIVERSAL_CAP_REACHED
            message = f"Universal spending cap of {universal_cap} reached (total {combined})"
        elif session.session_cap is not None and session_cost >= session.session_cap:
            if status != CapStatus.UNIVERSAL_CAP_REACHED:
                status = CapStatus.SESSION_CAP_REACHED
            message = f"Session spending cap of {session.session_cap} reached (spent {session_cost})"
        elif status != CapStatus.WITHIN_LIMITS:
            message = f"Cap previously reached: {status.value}"

        if status != session.cap_status:
            logger.warning(
                "spending_cap_reached",
                session_id=session.session_id,
                payer_id=session.payer_id,
                status=status.value,
                session_cost=str(session_cost),
                combined_spend=str(combined),
            )
            session.cap_status = status

        breached = status != CapStatus.WITHIN_LIMITS
        return CapEvaluation(
            session_id=session.session_id,
            status=status,
            session_cost=session_cost,
            lifetime_spend=lifetime,
            combined_spend=combined,
            session_cap=session.session_cap,
            universal_cap=universal_cap,
            should_stop=breached and self.auto_stop,
            message=message,
        )
