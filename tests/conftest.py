import os

# Settings are read from the environment on first use; pin a test profile
# before anything imports the application.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_ENV"] = "test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_secret"
os.environ["STRIPE_PUBLISHABLE_KEY"] = "pk_test_public"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["JWT_SECRET"] = "jwt_test_secret"
os.environ.pop("SKIP_WEBHOOK_VERIFICATION", None)

import dataclasses
import itertools
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from payment_reconciler import auth
from payment_reconciler.config import Settings, get_settings
from payment_reconciler.database import create_db_engine, create_session_factory, get_db, init_db
from payment_reconciler.dependencies import get_gateway
from payment_reconciler.exceptions import GatewayUnavailable
from payment_reconciler.gateway import GatewayOrder, GatewayRefund
from payment_reconciler.main import app as fastapi_app
from payment_reconciler.models import Payment, PaymentStatus
from payment_reconciler.reconciliation import ReconciliationEngine
from payment_reconciler.repository import OrderRepository


class FakeGateway:
    """In-memory gateway double that records every call."""

    key_id = "pk_test_public"

    def __init__(self):
        self.orders = []
        self.refunds = []
        self.order_ids = iter(f"order_fake_{n}" for n in itertools.count(1))
        self.refund_ids = iter(f"rfnd_{n}" for n in itertools.count(1))
        self.fail_with = None

    def create_order(self, amount, currency, receipt, notes):
        if self.fail_with is not None:
            raise self.fail_with
        order = GatewayOrder(next(self.order_ids), amount, currency)
        self.orders.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": dict(notes)})
        return order

    def refund(self, gateway_payment_id, amount, notes, idempotency_key):
        if self.fail_with is not None:
            raise self.fail_with
        self.refunds.append({
            "gateway_payment_id": gateway_payment_id,
            "amount": amount,
            "notes": dict(notes),
            "idempotency_key": idempotency_key,
        })
        return GatewayRefund(next(self.refund_ids), amount, "processed")


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def db_engine(tmp_path):
    engine = create_db_engine(Settings(database_url=f"sqlite:///{tmp_path / 'payments.db'}"))
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def repository(db):
    return OrderRepository(db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def transitions():
    return []


@pytest.fixture
def reconciler(repository, gateway, transitions):
    return ReconciliationEngine(
        repository,
        gateway=gateway,
        on_transition=lambda payment, previous: transitions.append((previous, payment.status)),
    )


@pytest.fixture
def make_payment(repository):
    counter = itertools.count(1)

    def _make(status=PaymentStatus.CREATED, gateway_order_id=None, gateway_payment_id=None,
              amount="500.00", currency="INR"):
        n = next(counter)
        return repository.create(Payment(
            order_id=f"order_local_{n}",
            gateway_order_id=gateway_order_id or f"order_gw_{n}",
            gateway_payment_id=gateway_payment_id,
            amount=Decimal(amount),
            currency=currency,
            status=PaymentStatus(status).value,
            notes={},
            student_id="42",
            event_id="evt-1",
            registration_id="7",
        ))

    return _make


@pytest.fixture
def client(session_factory, gateway):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = _get_db
    fastapi_app.dependency_overrides[get_gateway] = lambda: gateway
    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[auth.verify_token] = lambda: True

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def unavailable_gateway(gateway):
    gateway.fail_with = GatewayUnavailable("Payment gateway unavailable")
    return gateway


@pytest.fixture
def use_settings():
    """Serve the app with the test settings plus ``overrides``."""
    def _use(**overrides):
        fastapi_app.dependency_overrides[get_settings] = lambda: dataclasses.replace(get_settings(), **overrides)
    return _use
