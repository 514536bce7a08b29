"""
Shared fixtures for the estimate engine tests.

Every test gets its own SQLite file, a clock that only moves when told to and
sequential ids, so revision ordering and numbering are reproducible.
"""
import os

# Must be set before ezboss.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./var/test-unused.db")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("RATE_LIMIT", "100000/minute")
os.environ.setdefault("PUBLIC_BASE_URL", "https://app.ezboss.test")
os.environ.setdefault("JWT_SECRET", "test-secret")

from datetime import datetime, timezone

import pytest
import pytz
from sqlalchemy.orm import sessionmaker

from ezboss.db import Base, build_engine
from ezboss.exceptions import ExternalDependencyError
from ezboss.models import models  # noqa: F401
from ezboss.schemas.auth import Actor
from ezboss.schemas.updates import AddLineItem, ClientDecision, EstimateCreate
from ezboss.services.clock import DeterministicClock, SequentialIdGenerator
from ezboss.services.email import EmailDispatcher
from ezboss.services.estimates import EstimateService
from ezboss.services.purchase_orders import PurchaseOrderService
from ezboss.storage.sql_provider import SqlEstimateStore


class FakeEmailDispatcher(EmailDispatcher):
    def __init__(self):
        self.sent = []
        self.notifications = []
        self.fail_sends = False
        self.fail_notifications = False

    def send(self, estimate, recipient_email, recipient_name=None, subject=None, message=None, cc_emails=None):
        if self.fail_sends:
            raise ExternalDependencyError("email", "mail server unavailable")
        self.sent.append({
            "estimate_id": estimate.id,
            "token": estimate.email_token,
            "to": recipient_email,
            "name": recipient_name,
            "subject": subject,
            "cc": list(cc_emails or []),
        })

    def notify_contractor(self, contractor_email, event, estimate, info=None):
        if self.fail_notifications:
            raise ExternalDependencyError("email", "mail server unavailable")
        self.notifications.append((contractor_email, event, estimate.id, info))


class FakePurchaseOrderService(PurchaseOrderService):
    def __init__(self):
        self.orders = []
        self.fail = False

    def create_purchase_order(self, estimate, line_items):
        if self.fail:
            raise ExternalDependencyError("purchase_orders", "procurement system down")
        purchase_order_id = f"po_{len(self.orders) + 1}"
        self.orders.append((purchase_order_id, estimate.id, [li.id for li in line_items]))
        return purchase_order_id


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'estimates.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SqlEstimateStore(session_factory)


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2025, 1, 15, 17, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def ids():
    return SequentialIdGenerator()


@pytest.fixture
def dispatcher():
    return FakeEmailDispatcher()


@pytest.fixture
def po_service():
    return FakePurchaseOrderService()


@pytest.fixture
def service(store, clock, ids, po_service, dispatcher):
    return EstimateService(store, clock, ids, purchase_orders=po_service, notifier=dispatcher, tz=pytz.utc)


@pytest.fixture
def actor():
    return Actor(id="user_1", name="Pat Contractor", email="pat@contractor.test", permissions=["estimates:read", "estimates:write"])


@pytest.fixture
def scenario_a(service, actor):
    """Two rows, 10% discount, 8% tax: subtotal 250, total 243."""
    return service.create_estimate(
        EstimateCreate(
            customer_name="Jordan Rivers",
            customer_email="jordan@example.com",
            line_items=[
                AddLineItem(description="Deck boards", quantity=2, unit_price=100),
                AddLineItem(description="Fasteners", quantity=1, unit_price=50),
            ],
            discount=10,
            discount_type="percentage",
            tax_rate=8,
        ),
        actor,
    )


@pytest.fixture
def accepted_estimate(service, scenario_a, actor):
    token = service.prepare_estimate_for_sending(scenario_a.id, actor.email, actor)
    service.record_sent(scenario_a.id, "jordan@example.com", actor)
    service.record_viewed(token, "10.0.0.1", "pytest")
    return service.record_client_decision(token, ClientDecision(decision="accepted", client_name="Jordan Rivers"))
