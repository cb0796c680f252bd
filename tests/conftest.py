"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import tempfile

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["METER_TICK_INTERVAL_MS"] = "0"
os.environ["METER_RATE_REFRESH_SECONDS"] = "0"
os.environ.pop("DATABASE_URL", None)

from meter_rail.core.clock import ManualClock, NS_PER_SECOND
from meter_rail.core.publisher import UpdatePublisher
from meter_rail.core.store import SessionStore
from meter_rail.engine.engine import MeteringEngine
from meter_rail.persistence.ledger import InMemorySpendLedger
from meter_rail.rates.table import RateTable
from meter_rail.settlement.coordinator import SettlementCoordinator

# Arbitrary non-zero epoch so timestamps look like real ones
START_NS = 1_700_000_000 * NS_PER_SECOND


@pytest.fixture
def clock():
    """Deterministic clock; tests move time explicitly."""
    return ManualClock(start_ns=START_NS)


@pytest.fixture
def store(clock):
    return SessionStore(clock=clock)


@pytest.fixture
def ledger():
    return InMemorySpendLedger()


@pytest.fixture
def rates():
    """Rate table with the default snapshot (USD 1, EUR 0.92, ETH 2500...)."""
    return RateTable()


@pytest.fixture
def publisher():
    return UpdatePublisher()


@pytest.fixture
def coordinator(store, rates, publisher):
    return SettlementCoordinator(store, rates, publisher=publisher)


@pytest.fixture
def engine(store, ledger, rates, publisher):
    return MeteringEngine(store=store, ledger=ledger, rates=rates, publisher=publisher)


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup (WAL mode leaves side files)
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass
