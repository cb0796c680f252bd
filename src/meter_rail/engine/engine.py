"""
Metering Engine

Wires the collaborators together and owns the per-tick sequence:

    advance -> evaluate caps -> (auto-stop) -> publish live update

All three steps run under the session's lock, so the cap check always sees
the elapsed time produced by the advance just before it, and an end() racing
with a tick freezes the larger of the two readings. For sessions with a
payer, evaluation also holds the payer lock that end() holds while it
moves a session from live spend into the ledger.

Lifetime spend is committed to the ledger exactly once, when a session ends.
Until then a session's cost counts as live spend for the universal cap.
"""

from contextlib import nullcontext
from dataclasses import dataclass
from decimal import Decimal
from threading import Lock, RLock
from typing import Any, Dict, List, Optional, Set, Union
import structlog

from ..billing.calculator import (
    Amount,
    BillingBreakdown,
    TimeUnit,
    billing_breakdown,
    money_str,
)
from ..billing.caps import CapEnforcer, CapEvaluation
from ..config import MeterConfig
from ..core.clock import Clock, SystemClock
from ..core.errors import InvalidConfiguration, SessionNotFound
from ..core.publisher import LiveUpdate, UpdatePublisher
from ..core.session import BillingMode, Session
from ..core.store import DEFAULT_CURRENCY, SessionStore
from ..persistence.database import Database
from ..persistence.ledger import InMemorySpendLedger, SpendLedger, SqliteSpendLedger
from ..rates.feeds import get_feed
from ..rates.table import RateTable
from ..settlement.coordinator import SettlementCoordinator

logger = structlog.get_logger()


@dataclass(frozen=True)
class TickResult:
    """Outcome of one tick on one session."""
    session_id: str
    breakdown: BillingBreakdown
    evaluation: CapEvaluation
    stopped: bool = False

    def to_live_update(self) -> LiveUpdate:
        return LiveUpdate(
            session_id=self.session_id,
            elapsed=self.breakdown.duration.clock,
            accumulated_cost=self.breakdown.total_cost,
            currency=self.breakdown.currency,
            cap_status=self.evaluation.status.value,
            active=not self.stopped,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "billing": self.breakdown.to_dict(),
            "caps": self.evaluation.to_dict(),
            "stopped": self.stopped,
        }


class MeteringEngine:
    """
    Session metering with dual spending caps and settlement.

    Usage:
        engine = MeteringEngine(clock=ManualClock())
        session = engine.start_session(3600, "USD", payer_id="0xabc", session_cap=25)
        result = engine.tick(session.session_id)
        final = engine.stop_session(session.session_id)
        record = engine.settlements.initiate(session.session_id, final.total_cost, "0xabc")
    """

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        ledger: Optional[SpendLedger] = None,
        rates: Optional[RateTable] = None,
        publisher: Optional[UpdatePublisher] = None,
        clock: Optional[Clock] = None,
        auto_stop: bool = True,
        unit_symbol: str = "ETH",
        history_limit: int = 20,
    ):
        if store is None:
            store = SessionStore(clock=clock or SystemClock())
        self.store = store
        self.clock = store.clock
        self.ledger = ledger or InMemorySpendLedger()
        self.rates = rates or RateTable()
        self.publisher = publisher or UpdatePublisher()
        self.enforcer = CapEnforcer(self.store, self.ledger, auto_stop=auto_stop)
        self.settlements = SettlementCoordinator(
            self.store,
            self.rates,
            clock=self.clock,
            unit_symbol=unit_symbol,
            history_limit=history_limit,
            publisher=self.publisher,
        )

        self._payer_locks: Dict[str, RLock] = {}
        self._payer_locks_guard = Lock()
        self._committed: Set[str] = set()

    @classmethod
    def from_config(cls, config: MeterConfig, clock: Optional[Clock] = None) -> "MeteringEngine":
        """Build an engine from MeterConfig (SQLite ledger when DATABASE_URL is set)."""
        if config.database_url:
            ledger: SpendLedger = SqliteSpendLedger(Database(config.database_url))
        else:
            ledger = InMemorySpendLedger()
        rates = RateTable(feed=get_feed(config.rate_feed), base_currency=config.base_currency)
        return cls(
            store=SessionStore(clock=clock or SystemClock()),
            ledger=ledger,
            rates=rates,
            auto_stop=config.auto_stop,
            unit_symbol=config.settlement_unit,
            history_limit=config.history_limit,
        )

    @property
    def auto_stop(self) -> bool:
        return self.enforcer.auto_stop

    def _payer_lock(self, payer_id: str) -> RLock:
        with self._payer_locks_guard:
            lock = self._payer_locks.get(payer_id)
            if lock is None:
                lock = self._payer_locks[payer_id] = RLock()
            return lock

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        cost_rate: Optional[Amount] = None,
        currency: str = DEFAULT_CURRENCY,
        *,
        rate_unit: Union[TimeUnit, str] = TimeUnit.HOUR,
        mode: Union[BillingMode, str] = BillingMode.TIME,
        payer_id: Optional[str] = None,
        session_cap: Optional[Amount] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """
        Validate caps, then create the session.

        The cap check and the creation happen under the payer's lock, so two
        sessions starting at once cannot both claim the same allowance.

        Raises:
            CapConflict: Session cap does not fit the remaining universal cap
            InvalidConfiguration: Bad rate, mode, currency or cap
        """
        kwargs = dict(
            rate_unit=rate_unit,
            mode=mode,
            payer_id=payer_id,
            session_cap=session_cap,
            session_id=session_id,
        )
        if payer_id is None:
            return self.store.create_session(cost_rate, currency, **kwargs)

        if not str(payer_id).strip():
            raise InvalidConfiguration("payer_id cannot be empty")

        with self._payer_lock(payer_id):
            self.enforcer.validate_start(payer_id, session_cap)
            return self.store.create_session(cost_rate, currency, **kwargs)

    def tick(self, session_id: str) -> TickResult:
        """
        Advance one session, evaluate its caps, stop it if a cap is reached
        and auto-stop is on, then publish a live update.

        Raises:
            SessionNotFound: Unknown session
            SessionNotActive: Session already ended
        """
        session = self.store.get(session_id)
        payer_lock = self._payer_lock(session.payer_id) if session.payer_id is not None else nullcontext()
        with session.lock:
            self.store.advance(session_id)
            # A sibling ending under this lock is either live or committed, never neither
            with payer_lock:
                evaluation = self.enforcer.evaluate(session)
                stopped = False
                if evaluation.should_stop:
                    breakdown = self._finish(session)
                    stopped = True
                    logger.warning(
                        "session_auto_stopped",
                        session_id=session_id,
                        reason=evaluation.status.value,
                        total_cost=str(breakdown.total_cost),
                    )
                else:
                    breakdown = billing_breakdown(session)

        result = TickResult(
            session_id=session_id,
            breakdown=breakdown,
            evaluation=evaluation,
            stopped=stopped,
        )
        self.publisher.publish(result.to_live_update())
        return result

    def tick_all(self) -> List[TickResult]:
        """Tick every active session. Sessions are independent of each other."""
        results = []
        for session in self.store.active_sessions():
            try:
                results.append(self.tick(session.session_id))
            except SessionNotFound:
                # Ended or removed after the listing
                continue
        return results

    def stop_session(self, session_id: str) -> BillingBreakdown:
        """
        End a session and commit its cost to the payer's lifetime spend.

        Idempotent: a second call returns the same frozen billing and
        commits nothing.

        Raises:
            SessionNotFound: Unknown session
        """
        session = self.store.get(session_id)
        with session.lock:
            return self._finish(session)

    def _finish(self, session: Session) -> BillingBreakdown:
        if session.payer_id is None:
            return self.store.end(session.session_id)

        with self._payer_lock(session.payer_id):
            final = self.store.end(session.session_id)
            if session.session_id not in self._committed:
                self._committed.add(session.session_id)
                if final.total_cost > 0:
                    self.ledger.add_spend(session.payer_id, final.total_cost, reference=session.session_id)
        return final

    def log_event(self, session_id: str, description: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        return self.store.log_event(session_id, description, metadata)

    def breakdown(self, session_id: str) -> BillingBreakdown:
        return self.store.breakdown(session_id)

    def remove_session(self, session_id: str) -> Session:
        """
        Drop a session record. An active session is ended (and billed) first.
        """
        session = self.store.get(session_id)
        if session.is_active:
            self.stop_session(session_id)
        removed = self.store.remove(session_id)
        self._committed.discard(session_id)
        return removed

    # ------------------------------------------------------------------
    # Payer caps
    # ------------------------------------------------------------------

    def set_universal_cap(self, payer_id: str, cap: Optional[Amount]) -> Dict[str, Any]:
        with self._payer_lock(payer_id):
            self.ledger.set_universal_cap(payer_id, cap)
        return self.payer_status(payer_id)

    def reset_payer(self, payer_id: str) -> Dict[str, Any]:
        """Clear lifetime spend and universal cap (active sessions keep running)."""
        with self._payer_lock(payer_id):
            self.ledger.reset(payer_id)
        return self.payer_status(payer_id)

    def payer_status(self, payer_id: str) -> Dict[str, Any]:
        account = self.ledger.account(payer_id)
        live = self.enforcer.live_spend(payer_id)
        remaining: Optional[Decimal] = None
        if account.universal_cap is not None:
            remaining = max(Decimal(0), account.universal_cap - account.lifetime_spend - live)
        return {
            "payer_id": payer_id,
            "lifetime_spend": money_str(account.lifetime_spend),
            "live_spend": money_str(live),
            "universal_cap": money_str(account.universal_cap),
            "remaining": money_str(remaining),
            "active_sessions": len(self.store.sessions_for_payer(payer_id, active_only=True)),
        }
