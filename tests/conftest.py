"""Shared fixtures: a throwaway SQLite orders DB and upstream fakes."""

import asyncio
import os
import tempfile
from decimal import Decimal

# Settings are read at import time, so the environment must be ready first.
_DB_DIR = tempfile.mkdtemp(prefix="getfame-tests-")
os.environ["POSTGRES_DSN"] = f"sqlite+pysqlite:///{_DB_DIR}/orders.db"
os.environ["API_KEY"] = "test-key"
os.environ["OTEL_ENABLED"] = "false"
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import pytest  # noqa: E402

from getfame.common.db import Base, SessionLocal, engine  # noqa: E402
from getfame.common.inbox import InboxEvent  # noqa: E402,F401
from getfame.services.catalog.service import Service  # noqa: E402
from getfame.services.notification.models import NotificationLog  # noqa: E402,F401
from getfame.services.orders.models import Order  # noqa: E402,F401
from getfame.services.orders.schemas import OrderDraft  # noqa: E402
from getfame.services.orders.store import OrderStore  # noqa: E402
from getfame.services.payments.base import CRYPTO  # noqa: E402


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def store():
    return OrderStore(SessionLocal)


@pytest.fixture
def service():
    """Service from the O1 scenario: min 100, max 100000, $2.50 per 1000."""

    return Service(
        id=5951,
        name="Instagram Followers",
        platform="instagram",
        type="followers",
        min_quantity=100,
        max_quantity=100_000,
        public_rate=Decimal("2.50"),
        source_rate=Decimal("1.00"),
    )


@pytest.fixture
def draft():
    return OrderDraft(
        service_id=5951,
        link="https://instagram.com/getfame",
        quantity=5000,
        email="buyer@example.com",
    )


@pytest.fixture
def pending_order(store, service, draft):
    """O1: a pending crypto order whose invoice id is `inv-1`."""

    order = store.create(draft, service, CRYPTO)
    return store.attach_provider_ref(order.order_id, "inv-1")


class FakeProvisioning:
    """Records calls; each `add_order` pops the next scripted outcome."""

    def __init__(self, outcomes=None, delay: float = 0.0, lookup=None) -> None:
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.lookup = lookup
        self.add_calls: list[str] = []
        self.lookup_calls: list[str] = []

    async def add_order(self, service_id: int, link: str, quantity: int, reference: str) -> str:
        self.add_calls.append(reference)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else f"up-{len(self.add_calls)}"
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def find_by_reference(self, reference: str):
        self.lookup_calls.append(reference)
        if isinstance(self.lookup, Exception):
            raise self.lookup
        return self.lookup


@pytest.fixture
def fake_provisioning():
    return FakeProvisioning


@pytest.fixture
def sleeps():
    """Stand-in for asyncio.sleep that records requested delays."""

    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
