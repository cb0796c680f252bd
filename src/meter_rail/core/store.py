"""
Session Store

Owns every metering session and is the only component that mutates one.
Sessions live in an id-indexed map; nothing here schedules itself. An
external driver calls advance() on its own cadence.

Locking:
- a store-level lock guards the id map (create/remove/lookup)
- each session carries its own lock so advance, cap evaluation and end on
  one session are strictly ordered while different sessions proceed freely
"""

from decimal import Decimal
from threading import Lock
from typing import Any, Dict, List, Optional, Union
import uuid

import structlog

from ..billing.calculator import (
    Amount,
    BillingBreakdown,
    TimeUnit,
    billing_breakdown,
    normalize_rate,
    to_decimal,
)
from .clock import Clock, SystemClock
from .errors import InvalidConfiguration, SessionNotActive, SessionNotFound
from .session import BillingMode, ConsumptionEvent, Session, SessionStatus

logger = structlog.get_logger()

DEFAULT_CURRENCY = "USD"


def generate_session_id() -> str:
    return f"SESS-{uuid.uuid4().hex[:20].upper()}"


class SessionStore:
    """
    Indexed collection of sessions.

    Usage:
        store = SessionStore(clock=ManualClock())
        session = store.create_session(Decimal("3600"), "USD")
        store.advance(session.session_id)
        final = store.end(session.session_id)
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._sessions: Dict[str, Session] = {}
        self._lock = Lock()

    def create_session(
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
        Create an active session.

        Args:
            cost_rate: Cost per rate_unit (per hour by default)
            currency: Fiat currency code of the session
            rate_unit: minute, hour or day
            mode: TIME requires a positive rate; BALANCE requires a session cap
            payer_id: Opaque payer identifier (used for universal caps)
            session_cap: Per-session spending ceiling, None for no limit
            session_id: Caller-supplied id; generated when omitted

        Raises:
            InvalidConfiguration: Rejected before any state changes
        """
        try:
            mode = BillingMode(mode) if not isinstance(mode, BillingMode) else mode
        except ValueError:
            raise InvalidConfiguration(f"Invalid billing mode: {mode}")
        unit = TimeUnit.parse(rate_unit)

        if not currency or not str(currency).strip():
            raise InvalidConfiguration("currency is required")
        currency = str(currency).strip().upper()

        if payer_id is not None and not str(payer_id).strip():
            raise InvalidConfiguration("payer_id cannot be empty")

        rate = Decimal(0)
        if cost_rate is not None:
            rate = to_decimal(cost_rate, "cost_rate")

        if mode == BillingMode.TIME:
            if cost_rate is None or rate <= 0:
                raise InvalidConfiguration("Rate per hour required for time-based mode")
        elif rate < 0:
            raise InvalidConfiguration("cost_rate cannot be negative")

        cap: Optional[Decimal] = None
        if session_cap is not None:
            cap = to_decimal(session_cap, "session_cap")
            if cap <= 0:
                raise InvalidConfiguration("session_cap must be > 0")
        if mode == BillingMode.BALANCE and cap is None:
            raise InvalidConfiguration("Session spending limit required for balance mode")

        rate_per_ns = normalize_rate(rate, unit) if rate > 0 else 0

        with self._lock:
            sid = session_id or generate_session_id()
            if sid in self._sessions:
                raise InvalidConfiguration(f"Session id already in use: {sid}")

            session = Session(
                session_id=sid,
                created_at_ns=self.clock.now_ns(),
                cost_rate=rate,
                currency=currency,
                rate_unit=unit,
                rate_per_ns_scaled=rate_per_ns,
                mode=mode,
                payer_id=payer_id,
                session_cap=cap,
            )
            self._sessions[sid] = session

        logger.info(
            "session_created",
            session_id=sid,
            payer_id=payer_id,
            mode=mode.value,
            rate=str(rate),
            rate_unit=unit.value,
            currency=currency,
        )
        return session

    def get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def advance(self, session_id: str) -> Session:
        """
        Recompute elapsed time as now - created.

        Elapsed time never decreases, so calling twice at the same instant
        gives the same result.

        Raises:
            SessionNotFound: Unknown session
            SessionNotActive: Session already ended
        """
        session = self.get(session_id)
        with session.lock:
            if not session.is_active:
                raise SessionNotActive(session_id)
            self._advance_locked(session)
        return session

    def _advance_locked(self, session: Session) -> int:
        elapsed = self.clock.now_ns() - session.created_at_ns
        if elapsed > session.elapsed_ns:
            session.elapsed_ns = elapsed
        return session.elapsed_ns

    def log_event(
        self,
        session_id: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Append to the consumption log.

        Audit-trail semantics: an unknown session is a silent no-op.
        Returns True when the event was recorded.
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            logger.debug("consumption_log_skipped", session_id=session_id)
            return False

        event = ConsumptionEvent(
            timestamp_ns=self.clock.now_ns(),
            description=description,
            metadata=dict(metadata or {}),
        )
        with session.lock:
            session.consumption_log.append(event)
        return True

    def consumption_log(self, session_id: str) -> List[ConsumptionEvent]:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return []
        with session.lock:
            return list(session.consumption_log)

    def end(self, session_id: str) -> BillingBreakdown:
        """
        Final advance, freeze elapsed time, mark ended.

        Ending an ended session returns the same frozen snapshot.

        Raises:
            SessionNotFound: Unknown session
        """
        session = self.get(session_id)
        with session.lock:
            if session.final_billing is not None:
                return session.final_billing

            self._advance_locked(session)
            session.status = SessionStatus.ENDED
            session.ended_at_ns = session.created_at_ns + session.elapsed_ns
            session.final_billing = billing_breakdown(session)

        logger.info(
            "session_ended",
            session_id=session_id,
            elapsed_seconds=session.final_billing.duration.total_seconds,
            total_cost=str(session.final_billing.total_cost),
            cap_status=session.cap_status.value,
        )
        return session.final_billing

    def breakdown(self, session_id: str) -> BillingBreakdown:
        """Billing view without advancing time."""
        session = self.get(session_id)
        with session.lock:
            if session.final_billing is not None:
                return session.final_billing
            return billing_breakdown(session)

    def remove(self, session_id: str) -> Session:
        """Explicitly destroy a session record."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFound(session_id)
        logger.info("session_removed", session_id=session_id, status=session.status.value)
        return session

    def active_sessions(self) -> List[Session]:
        with self._lock:
            return [s for s in self._sessions.values() if s.is_active]

    def sessions_for_payer(self, payer_id: str, active_only: bool = False) -> List[Session]:
        with self._lock:
            sessions = [s for s in self._sessions.values() if s.payer_id == payer_id]
        if active_only:
            sessions = [s for s in sessions if s.is_active]
        return sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
