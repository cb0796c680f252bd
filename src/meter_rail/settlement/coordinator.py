"""
Settlement Coordinator

Turns a session's accumulated fiat cost into a charge denominated in
settlement units and records the outcome.

NO OVERPAYMENT: a requested amount above the session's accumulated cost is
clamped down to it. The clamp is a logged correction, not an error; the
record keeps both requested_amount and charged_amount so it stays visible.

Lifecycle of a record:
    pending -> confirmed   (confirm, with an external tx reference)
    pending -> failed      (fail)
Records are never deleted.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional
import uuid
import structlog

from ..billing.calculator import Amount, money_str, to_decimal
from ..core.clock import Clock
from ..core.errors import (
    InvalidConfiguration,
    InvalidStateTransition,
    SettlementNotFound,
)
from ..core.publisher import SettlementNotification, UpdatePublisher
from ..core.store import SessionStore
from ..rates.table import RateTable

logger = structlog.get_logger()

DEFAULT_UNIT_SYMBOL = "ETH"
DEFAULT_HISTORY_LIMIT = 20


class SettlementStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


def generate_settlement_id() -> str:
    return f"SETTLE-{uuid.uuid4().hex[:20].upper()}"


@dataclass
class SettlementRecord:
    """One settlement attempt. Only the coordinator mutates it."""
    settlement_id: str
    session_id: str
    requested_amount: Decimal
    charged_amount: Decimal
    cost_at_settlement: Decimal
    currency: str
    unit_amount: Decimal
    unit_symbol: str
    unit_price: Decimal
    exchange_rate: Decimal
    destination: str
    created_at_ns: int
    status: SettlementStatus = SettlementStatus.PENDING
    external_tx_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    updated_at_ns: Optional[int] = None

    @property
    def clamped(self) -> bool:
        return self.charged_amount < self.requested_amount

    @property
    def warning(self) -> Optional[str]:
        if not self.clamped:
            return None
        return (
            f"Requested amount {money_str(self.requested_amount)} exceeds actual cost "
            f"{money_str(self.cost_at_settlement)}; charged {money_str(self.charged_amount)}"
        )

    def to_notification(self) -> SettlementNotification:
        return SettlementNotification(
            settlement_id=self.settlement_id,
            session_id=self.session_id,
            charged_amount=self.charged_amount,
            unit_amount=self.unit_amount,
            unit_symbol=self.unit_symbol,
            status=self.status.value,
            external_tx_ref=self.external_tx_ref,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settlement_id": self.settlement_id,
            "session_id": self.session_id,
            "status": self.status.value,
            "requested_amount": money_str(self.requested_amount),
            "charged_amount": money_str(self.charged_amount),
            "cost_at_settlement": money_str(self.cost_at_settlement),
            "clamped": self.clamped,
            "warning": self.warning,
            "currency": self.currency,
            "unit_amount": money_str(self.unit_amount),
            "unit_symbol": self.unit_symbol,
            "unit_price": money_str(self.unit_price),
            "exchange_rate": money_str(self.exchange_rate),
            "destination": self.destination,
            "external_tx_ref": self.external_tx_ref,
            "failure_reason": self.failure_reason,
            "created_at_ns": str(self.created_at_ns),
        }


@dataclass(frozen=True)
class RefundRecord:
    """Amount paid above the cost recorded at settlement time."""
    settlement_id: str
    refund_amount: Decimal
    original_amount: Decimal
    actual_cost: Decimal
    currency: str
    created_at_ns: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "settlement_id": self.settlement_id,
            "refund_amount": money_str(self.refund_amount),
            "original_amount": money_str(self.original_amount),
            "actual_cost": money_str(self.actual_cost),
            "currency": self.currency,
            "created_at_ns": str(self.created_at_ns),
        }


@dataclass(frozen=True)
class PaymentValidation:
    """
    Outcome of validate(). Always valid for a non-negative amount; an
    amount above actual cost only carries a warning.
    """
    valid: bool
    requested_amount: Decimal
    actual_cost: Decimal
    warning: Optional[str] = None
    excess_amount: Optional[Decimal] = None

    @property
    def clamped_hint(self) -> Optional[Decimal]:
        """What initiate() would charge when the request is too high."""
        return self.actual_cost if self.warning else None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"valid": self.valid}
        if self.warning:
            result.update({
                "warning": self.warning,
                "actual_cost": money_str(self.actual_cost),
                "excess_amount": money_str(self.excess_amount),
                "clamped_hint": money_str(self.clamped_hint),
            })
        return result


@dataclass(frozen=True)
class FinalAmount:
    """Amount due when the payer authorised at most max_allowed."""
    total_used: Decimal
    max_allowed: Decimal
    final_amount: Decimal
    surplus: Decimal
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_used": money_str(self.total_used),
            "max_allowed": money_str(self.max_allowed),
            "final_amount": money_str(self.final_amount),
            "surplus": money_str(self.surplus),
            "currency": self.currency,
        }


class SettlementCoordinator:
    """
    Validates, clamps, converts and records settlements.

    The cost a settlement is checked against is the session's accumulated
    cost as of its latest advance (or its frozen final cost once ended).
    That figure never exceeds real consumption.
    """

    def __init__(
        self,
        store: SessionStore,
        rates: RateTable,
        clock: Optional[Clock] = None,
        unit_symbol: str = DEFAULT_UNIT_SYMBOL,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        publisher: Optional[UpdatePublisher] = None,
    ):
        self.store = store
        self.rates = rates
        self.clock = clock or store.clock
        self.unit_symbol = unit_symbol.upper()
        self.history_limit = history_limit
        self.publisher = publisher
        self._settlements: Dict[str, SettlementRecord] = {}
        self._lock = Lock()

    def _actual_cost(self, session_id: str) -> Decimal:
        return self.store.breakdown(session_id).total_cost

    @staticmethod
    def _requested(amount: Amount) -> Decimal:
        value = to_decimal(amount, "requested_amount")
        if value < 0:
            raise InvalidConfiguration("Settlement amount cannot be negative")
        return value

    def validate(self, session_id: str, requested_amount: Amount) -> PaymentValidation:
        """
        Check a payment amount against actual usage.

        Raises:
            SessionNotFound: Unknown session
            InvalidConfiguration: Negative amount
        """
        requested = self._requested(requested_amount)
        actual = self._actual_cost(session_id)

        if requested > actual:
            return PaymentValidation(
                valid=True,
                requested_amount=requested,
                actual_cost=actual,
                warning="Payment exceeds actual usage. Excess will not be charged.",
                excess_amount=requested - actual,
            )
        return PaymentValidation(valid=True, requested_amount=requested, actual_cost=actual)

    def initiate(
        self,
        session_id: str,
        requested_amount: Amount,
        destination: str,
        currency: Optional[str] = None,
    ) -> SettlementRecord:
        """
        Create a pending settlement.

        The charged amount is min(requested, accumulated cost), converted to
        settlement units with the current rate snapshot.

        Raises:
            SessionNotFound: Unknown session
            InvalidConfiguration: Negative amount, empty destination, or a
                currency other than the session's
            UnknownCurrency / UnknownUnit: Not in the rate snapshot
        """
        requested = self._requested(requested_amount)
        if not destination or not str(destination).strip():
            raise InvalidConfiguration("destination is required")

        session = self.store.get(session_id)
        session_currency = session.currency
        if currency is not None and str(currency).strip().upper() != session_currency:
            raise InvalidConfiguration(
                f"Settlement currency {currency} does not match session currency {session_currency}"
            )

        actual = self._actual_cost(session_id)
        charged = requested
        if requested > actual:
            charged = actual
            logger.warning(
                "settlement_amount_clamped",
                session_id=session_id,
                requested=str(requested),
                charged=str(charged),
                actual_cost=str(actual),
            )

        conversion = self.rates.conversion(charged, session_currency, self.unit_symbol)

        record = SettlementRecord(
            settlement_id=generate_settlement_id(),
            session_id=session_id,
            requested_amount=requested,
            charged_amount=charged,
            cost_at_settlement=actual,
            currency=session_currency,
            unit_amount=conversion.unit_amount,
            unit_symbol=conversion.unit_symbol,
            unit_price=conversion.unit_price,
            exchange_rate=conversion.exchange_rate,
            destination=str(destination),
            created_at_ns=self.clock.now_ns(),
        )
        with self._lock:
            self._settlements[record.settlement_id] = record

        logger.info(
            "settlement_initiated",
            settlement_id=record.settlement_id,
            session_id=session_id,
            charged=str(charged),
            unit_amount=str(record.unit_amount),
            unit_symbol=record.unit_symbol,
        )
        self._notify(record)
        return record

    def get(self, settlement_id: str) -> SettlementRecord:
        with self._lock:
            record = self._settlements.get(settlement_id)
        if record is None:
            raise SettlementNotFound(settlement_id)
        return record

    def _transition(self, settlement_id: str, target: SettlementStatus, **changes: Any) -> SettlementRecord:
        with self._lock:
            record = self._settlements.get(settlement_id)
            if record is None:
                raise SettlementNotFound(settlement_id)
            if record.status != SettlementStatus.PENDING:
                raise InvalidStateTransition(
                    f"Cannot move settlement {settlement_id} from {record.status.value} to {target.value}"
                )
            record.status = target
            for name, value in changes.items():
                setattr(record, name, value)
            record.updated_at_ns = self.clock.now_ns()
        return record

    def confirm(self, settlement_id: str, external_tx_ref: str) -> SettlementRecord:
        """
        pending -> confirmed.

        Raises:
            SettlementNotFound: Unknown settlement
            InvalidStateTransition: Not pending
        """
        if not external_tx_ref or not str(external_tx_ref).strip():
            raise InvalidConfiguration("external_tx_ref is required")
        record = self._transition(settlement_id, SettlementStatus.CONFIRMED, external_tx_ref=str(external_tx_ref))
        logger.info("settlement_confirmed", settlement_id=settlement_id, external_tx_ref=record.external_tx_ref)
        self._notify(record)
        return record

    def fail(self, settlement_id: str, reason: str = "") -> SettlementRecord:
        """pending -> failed."""
        record = self._transition(settlement_id, SettlementStatus.FAILED, failure_reason=reason or None)
        logger.warning("settlement_failed", settlement_id=settlement_id, reason=reason)
        self._notify(record)
        return record

    def refund(self, settlement_id: str) -> Optional[RefundRecord]:
        """
        Refund owed on a settlement, if any.

        Compares what was charged with the cost recorded on the record at
        settlement time. That cost is never recomputed, so later activity
        on the session cannot change the answer. Returns None when nothing
        is owed, including for failed settlements where nothing was paid.

        initiate() clamps the charge to the cost, so a record it creates
        never owes anything on its own. A refund only appears once
        cost_at_settlement has been corrected downward after the fact.

        Raises:
            SettlementNotFound: Unknown settlement
        """
        record = self.get(settlement_id)
        if record.status == SettlementStatus.FAILED:
            return None

        overpaid = record.charged_amount - record.cost_at_settlement
        if overpaid <= 0:
            return None

        refund = RefundRecord(
            settlement_id=settlement_id,
            refund_amount=overpaid,
            original_amount=record.charged_amount,
            actual_cost=record.cost_at_settlement,
            currency=record.currency,
            created_at_ns=self.clock.now_ns(),
        )
        logger.warning("settlement_refund_due", settlement_id=settlement_id, refund=str(overpaid))
        return refund

    def history(self, limit: Optional[int] = None) -> List[SettlementRecord]:
        """Most recent settlements, most-recent-last."""
        limit = self.history_limit if limit is None else limit
        if limit <= 0:
            return []
        with self._lock:
            records = list(self._settlements.values())
        return records[-limit:]

    def for_session(self, session_id: str) -> List[SettlementRecord]:
        with self._lock:
            return [r for r in self._settlements.values() if r.session_id == session_id]

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            records = list(self._settlements.values())

        counts = {status.value: 0 for status in SettlementStatus}
        for record in records:
            counts[record.status.value] += 1

        total_charged = sum((r.charged_amount for r in records if r.status != SettlementStatus.FAILED), Decimal(0))
        return {
            "total_settlements": len(records),
            "total_charged": money_str(total_charged),
            "confirmed_count": counts["confirmed"],
            "pending_count": counts["pending"],
            "failed_count": counts["failed"],
        }

    def calculate_final_amount(self, session_id: str, max_amount: Amount) -> FinalAmount:
        """The payer pays what they used, capped by what they authorised."""
        max_allowed = to_decimal(max_amount, "max_amount")
        if max_allowed < 0:
            raise InvalidConfiguration("max_amount cannot be negative")
        breakdown = self.store.breakdown(session_id)
        used = breakdown.total_cost
        final = min(used, max_allowed)
        return FinalAmount(
            total_used=used,
            max_allowed=max_allowed,
            final_amount=final,
            surplus=max(Decimal(0), max_allowed - final),
            currency=breakdown.currency,
        )

    def _notify(self, record: SettlementRecord) -> None:
        if self.publisher is not None:
            self.publisher.publish(record.to_notification())
