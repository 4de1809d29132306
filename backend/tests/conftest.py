"""
Test Configuration — Fixtures for the ledger, alert stores and async DB.

Every ledger runs on a FixedClock so windows (flow rate, loss periods,
daily spikes) are deterministic. SQL tests get a fresh in-memory SQLite
database per test; StaticPool keeps every session on the same connection.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from alerts.store import InMemoryAlertStore
from alerts.variance import VarianceDetector
from db.session import create_schema, create_session_factory
from ledger.repository import InMemoryLedgerRepository
from ledger.service import StockLedger

TEST_DATABASE_URL = "sqlite+aiosqlite://"

NOW = datetime(2024, 6, 15, 12, 0, 0)

STORE_ID = "store-nord"
OTHER_STORE_ID = "store-sud"
SALMON = "salmon-fillet"
COD = "cod-loin"
SHRIMP = "shrimp-raw"


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """NotificationSender that keeps every call; `fail=True` makes it raise."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send(self, alert_kind, subject_label, store_label, details):
        if self.fail:
            raise RuntimeError("notification transport down")
        self.sent.append((alert_kind, subject_label, store_label, details))


def days_ago(days: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=days)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def repository():
    return InMemoryLedgerRepository()


@pytest.fixture
def ledger(repository, clock):
    return StockLedger(repository, clock=clock)


@pytest.fixture
def alert_store():
    return InMemoryAlertStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def detector(ledger, alert_store, notifier):
    return VarianceDetector(ledger, alert_store, notifier)


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with every table created."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool, echo=False)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture
async def seeded_db(session_factory):
    """Two stores and three products."""
    from db.models import Product, Store

    async with session_factory() as session, session.begin():
        session.add_all(
            [
                Store(store_id=STORE_ID, name="Marché Nord", city="Lille"),
                Store(store_id=OTHER_STORE_ID, name="Marché Sud", city="Marseille"),
                Product(product_id=SALMON, name="Salmon fillet", category="fish"),
                Product(product_id=COD, name="Cod loin", category="fish"),
                Product(product_id=SHRIMP, name="Raw shrimp", category="shellfish"),
            ]
        )
    return session_factory
