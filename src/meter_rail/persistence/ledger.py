"""
Lifetime Spend Ledger

Payer-scoped running totals that survive across sessions (and, for the
SQLite ledger, across restarts). Feeds the universal spending cap.

Every mutation is an atomic read-modify-write: two sessions committing
spend for the same payer at once both land in the total.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Any, Dict, Optional
import structlog

from ..billing.calculator import Amount, money_str, to_decimal
from ..core.errors import InvalidConfiguration
from .database import Database, get_database

logger = structlog.get_logger()


@dataclass
class PayerAccount:
    """Snapshot of one payer's ledger row."""
    payer_id: str
    lifetime_spend: Decimal
    universal_cap: Optional[Decimal]

    @property
    def remaining(self) -> Optional[Decimal]:
        """Unconsumed universal allowance, None when no cap is set."""
        if self.universal_cap is None:
            return None
        return max(Decimal(0), self.universal_cap - self.lifetime_spend)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payer_id": self.payer_id,
            "lifetime_spend": money_str(self.lifetime_spend),
            "universal_cap": money_str(self.universal_cap),
            "remaining": money_str(self.remaining),
        }


def _validate_payer(payer_id: str) -> str:
    if not payer_id or not str(payer_id).strip():
        raise InvalidConfiguration("payer_id is required")
    return str(payer_id)


def _validate_cap(cap: Optional[Amount]) -> Optional[Decimal]:
    if cap is None:
        return None
    value = to_decimal(cap, "universal_cap")
    if value <= 0:
        raise InvalidConfiguration("universal_cap must be > 0")
    return value


class SpendLedger(ABC):
    """Accessor interface for persisted per-payer spend and caps."""

    @abstractmethod
    def account(self, payer_id: str) -> PayerAccount:
        """Current spend and cap for a payer (zero / None when unknown)."""

    @abstractmethod
    def add_spend(self, payer_id: str, delta: Amount, reference: Optional[str] = None) -> Decimal:
        """Atomically add to lifetime spend, returning the new total."""

    @abstractmethod
    def set_universal_cap(self, payer_id: str, cap: Optional[Amount]) -> PayerAccount:
        """Set or clear (None) the universal cap."""

    @abstractmethod
    def reset(self, payer_id: str) -> None:
        """Clear spend history and universal cap for a payer."""

    def lifetime_spend(self, payer_id: str) -> Decimal:
        return self.account(payer_id).lifetime_spend

    def universal_cap(self, payer_id: str) -> Optional[Decimal]:
        return self.account(payer_id).universal_cap


class InMemorySpendLedger(SpendLedger):
    """Process-local ledger guarded by a single lock."""

    def __init__(self):
        self._spend: Dict[str, Decimal] = {}
        self._caps: Dict[str, Decimal] = {}
        self._lock = Lock()

    def account(self, payer_id: str) -> PayerAccount:
        with self._lock:
            return PayerAccount(
                payer_id=payer_id,
                lifetime_spend=self._spend.get(payer_id, Decimal(0)),
                universal_cap=self._caps.get(payer_id),
            )

    def add_spend(self, payer_id: str, delta: Amount, reference: Optional[str] = None) -> Decimal:
        payer_id = _validate_payer(payer_id)
        amount = to_decimal(delta, "delta")
        if amount < 0:
            raise InvalidConfiguration("spend delta cannot be negative")

        with self._lock:
            total = self._spend.get(payer_id, Decimal(0)) + amount
            self._spend[payer_id] = total

        logger.info("lifetime_spend_added", payer_id=payer_id, delta=str(amount), total=str(total), reference=reference)
        return total

    def set_universal_cap(self, payer_id: str, cap: Optional[Amount]) -> PayerAccount:
        payer_id = _validate_payer(payer_id)
        value = _validate_cap(cap)
        with self._lock:
            if value is None:
                self._caps.pop(payer_id, None)
            else:
                self._caps[payer_id] = value
        logger.info("universal_cap_set", payer_id=payer_id, cap=str(value) if value is not None else None)
        return self.account(payer_id)

    def reset(self, payer_id: str) -> None:
        with self._lock:
            self._spend.pop(payer_id, None)
            self._caps.pop(payer_id, None)
        logger.warning("payer_ledger_reset", payer_id=payer_id)


class SqliteSpendLedger(SpendLedger):
    """
    Ledger persisted through the Database helper.

    Amounts are stored as decimal strings; add_spend runs inside a
    BEGIN IMMEDIATE transaction so concurrent writers serialise.
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.db.initialize()
        self._lock = Lock()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def account(self, payer_id: str) -> PayerAccount:
        rows = self.db.execute(
            "SELECT lifetime_spend, universal_cap FROM payer_ledger WHERE payer_id = ?",
            (payer_id,)
        )
        if not rows:
            return PayerAccount(payer_id=payer_id, lifetime_spend=Decimal(0), universal_cap=None)
        row = rows[0]
        cap = row.get("universal_cap")
        return PayerAccount(
            payer_id=payer_id,
            lifetime_spend=Decimal(row["lifetime_spend"]),
            universal_cap=Decimal(cap) if cap is not None else None,
        )

    def _ensure_row(self, conn: Any, payer_id: str) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO payer_ledger (payer_id, lifetime_spend, universal_cap, updated_at) VALUES (?, '0', NULL, ?)",
            (payer_id, self._now())
        )

    def add_spend(self, payer_id: str, delta: Amount, reference: Optional[str] = None) -> Decimal:
        payer_id = _validate_payer(payer_id)
        amount = to_decimal(delta, "delta")
        if amount < 0:
            raise InvalidConfiguration("spend delta cannot be negative")

        with self._lock, self.db.connection(immediate=True) as conn:
            self._ensure_row(conn, payer_id)
            row = conn.execute(
                "SELECT lifetime_spend FROM payer_ledger WHERE payer_id = ?",
                (payer_id,)
            ).fetchone()
            total = Decimal(row["lifetime_spend"]) + amount
            now = self._now()
            conn.execute(
                "UPDATE payer_ledger SET lifetime_spend = ?, updated_at = ? WHERE payer_id = ?",
                (str(total), now, payer_id)
            )
            conn.execute(
                "INSERT INTO spend_entries (payer_id, amount, reference, created_at) VALUES (?, ?, ?, ?)",
                (payer_id, str(amount), reference, now)
            )

        logger.info("lifetime_spend_added", payer_id=payer_id, delta=str(amount), total=str(total), reference=reference)
        return total

    def set_universal_cap(self, payer_id: str, cap: Optional[Amount]) -> PayerAccount:
        payer_id = _validate_payer(payer_id)
        value = _validate_cap(cap)
        with self._lock, self.db.connection(immediate=True) as conn:
            self._ensure_row(conn, payer_id)
            conn.execute(
                "UPDATE payer_ledger SET universal_cap = ?, updated_at = ? WHERE payer_id = ?",
                (str(value) if value is not None else None, self._now(), payer_id)
            )
        logger.info("universal_cap_set", payer_id=payer_id, cap=str(value) if value is not None else None)
        return self.account(payer_id)

    def reset(self, payer_id: str) -> None:
        with self._lock, self.db.connection(immediate=True) as conn:
            conn.execute("DELETE FROM spend_entries WHERE payer_id = ?", (payer_id,))
            conn.execute("DELETE FROM payer_ledger WHERE payer_id = ?", (payer_id,))
        logger.warning("payer_ledger_reset", payer_id=payer_id)

    def entry_count(self, payer_id: str) -> int:
        rows = self.db.execute(
            "SELECT COUNT(*) AS n FROM spend_entries WHERE payer_id = ?",
            (payer_id,)
        )
        return rows[0]["n"] if rows else 0
