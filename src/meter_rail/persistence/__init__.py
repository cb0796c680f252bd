"""
METER RAIL - Persistence Module

The only state that survives a restart: per-payer lifetime spend and
universal spending caps.
"""

from .database import Database, get_database
from .ledger import InMemorySpendLedger, PayerAccount, SpendLedger, SqliteSpendLedger

__all__ = [
    "Database",
    "get_database",
    "InMemorySpendLedger",
    "PayerAccount",
    "SpendLedger",
    "SqliteSpendLedger",
]
