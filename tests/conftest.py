from datetime import datetime, timedelta

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing import models  # noqa: F401  (registers the tables)
from billing.database import Base
from billing.events import JobDispatcher, Notifier
from billing.gateway import GatewayClient
from billing.invoices import InvoiceLedger
from billing.models import utcnow


class InMemoryDispatcher(JobDispatcher):

    def __init__(self):
        self.events = []

    def dispatch(self, routing_key, event):
        self.events.append((routing_key, event))

    def notifications(self, owner_id=None):
        found = [e["payload"] for key, e in self.events if key.startswith("notification.events.")]
        if owner_id is not None:
            found = [p for p in found if p["ownerId"] == owner_id]
        return found

    def routed(self, routing_key):
        return [e for key, e in self.events if key == routing_key]


class BrokenDispatcher(JobDispatcher):

    def dispatch(self, routing_key, event):
        raise ConnectionError("broker down")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def dispatcher():
    return InMemoryDispatcher()


@pytest.fixture
def notifier(dispatcher):
    return Notifier(dispatcher)


@pytest.fixture
def ledger(db, notifier):
    return InvoiceLedger(db, notifier)


@pytest.fixture
def make_invoice(ledger):
    counter = {"n": 0}

    def _make(owner_id="student-1", category="ctm_membership", amount=70000, due_in_days=30,
              institution_id="school-1", period=None):
        counter["n"] += 1
        return ledger.create_invoice(
            owner_id=owner_id,
            category=category,
            amount=amount,
            due_date=utcnow() + timedelta(days=due_in_days),
            description="Premier CTM Membership - Monthly Fee",
            period=period or f"2026-01-{counter['n']:02d}",
            institution_id=institution_id,
        )
    return _make


@pytest.fixture
def gateway_requests():
    return []


@pytest.fixture
def gateway_factory(gateway_requests):
    """Build a GatewayClient answering through ``handler(request) -> httpx.Response``."""
    def _build(handler):
        def _record(request):
            gateway_requests.append(request)
            return handler(request)
        return GatewayClient(base_url="https://gateway.test/api", api_key="test-key",
                             callback_url="https://billing.test/payments/callback",
                             transport=httpx.MockTransport(_record))
    return _build


@pytest.fixture
def accepting_gateway(gateway_factory):
    return gateway_factory(lambda request: httpx.Response(
        200, json={"status": "accepted", "redirectUrl": "https://gateway.test/pay/abc",
                   "providerReference": "PRV-1"}))


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 2, 9, 0, 0)
