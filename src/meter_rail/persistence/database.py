"""
Database Connection Layer

SQLite storage for the only state that outlives a process: per-payer
lifetime spend and universal spending caps. Active sessions are ephemeral
and never written here.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Lifetime spend and universal cap per payer (amounts are decimal strings)
CREATE TABLE IF NOT EXISTS payer_ledger (
    payer_id TEXT PRIMARY KEY,
    lifetime_spend TEXT NOT NULL DEFAULT '0',
    universal_cap TEXT,
    updated_at TEXT NOT NULL
);

-- Append-only record of every committed session spend
CREATE TABLE IF NOT EXISTS spend_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    payer_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    reference TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY (payer_id) REFERENCES payer_ledger(payer_id)
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_spend_entries_payer ON spend_entries(payer_id);
"""


class Database:
    """
    SQLite connection manager.

    Usage:
        db = Database("sqlite:///meter_rail.db")
        with db.connection() as conn:
            conn.execute("SELECT * FROM payer_ledger")
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///meter_rail.db"
        )
        if not self.database_url.startswith("sqlite:///"):
            raise ValueError(f"Unsupported database URL: {self.database_url}")
        self._local = threading.local()
        self._initialized = False
        self._init_lock = threading.Lock()

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @property
    def path(self) -> str:
        return self.database_url[len("sqlite:///"):]

    def _connect(self) -> sqlite3.Connection:
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            conn = sqlite3.connect(
                self.path,
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,  # explicit BEGIN/COMMIT below
            )
            conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return self._local.conn

    @contextmanager
    def connection(self, immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """
        Transactional connection (thread-local).

        immediate=True takes the write lock up front, which makes a
        read-modify-write inside the block atomic across processes.
        """
        conn = self._connect()
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._init_lock:
            if self._initialized:
                return

            conn = self._connect()
            conn.executescript(SCHEMA_SQL)

            now = datetime.now(timezone.utc).isoformat()
            with self.connection() as tx:
                tx.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", path=self.path, schema_version=SCHEMA_VERSION)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def close(self) -> None:
        """Close this thread's connection."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
