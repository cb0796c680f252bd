"""
Live Update Publisher

Outbound messages for observers (websocket clients, device bridges):
- LiveUpdate: one per session tick
- SettlementNotification: on every settlement status change

The transport is not ours. Subscribers are plain callables; a subscriber
that raises is logged and skipped so one bad observer cannot stall metering.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Union
import structlog

from ..billing.calculator import money_str

logger = structlog.get_logger()


@dataclass(frozen=True)
class LiveUpdate:
    """Per-tick view of a session. Elapsed time is whole H:M:S only."""
    session_id: str
    elapsed: str
    accumulated_cost: Decimal
    currency: str
    cap_status: str
    active: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    type = "live_update"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "session_id": self.session_id,
            "elapsed": self.elapsed,
            "accumulated_cost": money_str(self.accumulated_cost),
            "currency": self.currency,
            "cap_status": self.cap_status,
            "active": self.active,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SettlementNotification:
    """Settlement status change."""
    settlement_id: str
    session_id: str
    charged_amount: Decimal
    unit_amount: Decimal
    unit_symbol: str
    status: str
    external_tx_ref: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    type = "settlement"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "settlement_id": self.settlement_id,
            "session_id": self.session_id,
            "charged_amount": money_str(self.charged_amount),
            "unit_amount": money_str(self.unit_amount),
            "unit_symbol": self.unit_symbol,
            "status": self.status,
            "external_tx_ref": self.external_tx_ref,
            "timestamp": self.timestamp.isoformat(),
        }


Message = Union[LiveUpdate, SettlementNotification]
Subscriber = Callable[[Message], None]


class UpdatePublisher:
    """
    Fan-out to subscribers with a bounded backlog of recent messages.

    Usage:
        publisher = UpdatePublisher()
        unsubscribe = publisher.subscribe(lambda msg: print(msg.to_dict()))
        publisher.publish(update)
        unsubscribe()
    """

    def __init__(self, backlog_size: int = 256):
        self._subscribers: List[Subscriber] = []
        self._backlog: Deque[Message] = deque(maxlen=backlog_size)
        self._lock = Lock()
        self.delivery_errors = 0

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message: Message) -> int:
        """Deliver to every subscriber. Returns the number of successful deliveries."""
        with self._lock:
            self._backlog.append(message)
            subscribers = list(self._subscribers)

        delivered = 0
        for callback in subscribers:
            try:
                callback(message)
                delivered += 1
            except Exception as e:
                self.delivery_errors += 1
                logger.error(
                    "subscriber_delivery_failed",
                    message_type=message.type,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return delivered

    def recent(self, limit: int = 20, message_type: Optional[str] = None) -> List[Message]:
        """Latest messages, oldest first."""
        with self._lock:
            messages = list(self._backlog)
        if message_type:
            messages = [m for m in messages if m.type == message_type]
        return messages[-limit:] if limit > 0 else []
