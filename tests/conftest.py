"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timezone

import pytest

from riskgate.config.config import LedgerConfig
from riskgate.execution.conditional_orders import ConditionalOrderLedger
from riskgate.storage.db import Database
from tests.helpers.memory_stores import (
    FakeMarketStateProvider,
    FakeVenue,
    InMemoryClosedEventStore,
    InMemoryConditionalOrderStore,
    InMemoryInconsistencyRecorder,
)

NOW = datetime(2025, 11, 21, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


class FrozenClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def event_store():
    return InMemoryClosedEventStore()


@pytest.fixture
def order_store():
    return InMemoryConditionalOrderStore()


@pytest.fixture
def recorder():
    return InMemoryInconsistencyRecorder()


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def market():
    return FakeMarketStateProvider()


@pytest.fixture
def ledger(order_store, venue, event_store, recorder, clock):
    """Ledger over in-memory stores; venue retries without sleeping."""
    return ConditionalOrderLedger(
        order_store,
        venue,
        close_event_store=event_store,
        recorder=recorder,
        config=LedgerConfig(venue_max_retries=1, venue_retry_base_delay=0.0, venue_retry_max_backoff=0.0),
        clock=clock,
    )


@pytest.fixture
def sqlite_db():
    """Fresh in-memory SQLite database with the schema created."""
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.drop_all()
    db.dispose()
