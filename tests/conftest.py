import os

# Settings are read at import time, so the test environment goes first
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_booking.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CASHFREE_CLIENT_SECRET", "test-webhook-secret")

import datetime
import hmac
from unittest.mock import AsyncMock

# Imports for testing tools
import pytest
from fastapi.testclient import TestClient
from jose import jwt

# Import your application code
from booking_service import crud
from booking_service.config import settings
from booking_service.database import Base, SessionLocal, engine
from booking_service.dependencies import create_booking_limiter, get_gateway, read_bookings_limiter
from booking_service.exceptions import OrderNotFound
from booking_service.gateway import OrderSession, OrderStatusReport, PaymentGateway, sign_webhook_payload
from booking_service.main import app
from booking_service.models import utcnow


class FakeGateway(PaymentGateway):
    """In-memory stand-in for Cashfree."""

    def __init__(self, secret: str = "test-webhook-secret"):
        self.secret = secret
        self.created = []
        self.statuses = {}
        self.payment_methods = {}
        self.create_error = None
        self.verify_error = None

    def create_order(self, order_id, amount, currency, customer, callback_urls):
        if self.create_error is not None:
            raise self.create_error
        self.created.append({
            "order_id": order_id,
            "amount": amount,
            "currency": currency,
            "customer": customer,
            "callback_urls": callback_urls,
        })
        self.statuses[order_id] = "ACTIVE"
        return OrderSession(session_id=f"session_{order_id}", initial_status="ACTIVE")

    def verify_order(self, order_id):
        if self.verify_error is not None:
            raise self.verify_error
        if order_id not in self.statuses:
            raise OrderNotFound(f"Cashfree has no order {order_id}")
        return OrderStatusReport(
            gateway_status=self.statuses[order_id],
            payment_method=self.payment_methods.get(order_id),
        )

    def verify_webhook_signature(self, raw_payload, signature_header, timestamp=""):
        expected = self.sign(raw_payload, timestamp)
        return hmac.compare_digest(expected.encode(), (signature_header or "").encode())

    def sign(self, raw_payload: bytes, timestamp: str = "") -> str:
        return sign_webhook_payload(self.secret, raw_payload, timestamp)


# --- Database Management Fixtures ---
@pytest.fixture(scope="function", autouse=True)
def setup_db():
    """Creates and drops all tables around every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session():
    """Provides a database session for direct store / engine tests."""
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def future_slot():
    return (utcnow() + datetime.timedelta(hours=1)).replace(microsecond=0)


@pytest.fixture
def customer():
    return {"name": "Asha Rao", "email": "asha@example.com", "phone": "9876543210"}


@pytest.fixture
def make_booking(db_session, future_slot, customer):
    """Inserts a committed booking + PENDING order directly through the store."""
    def _make(user_id: str = "u1", slot=None):
        booking, order = crud.create_booking_with_order(
            db_session,
            user_id=user_id,
            slot=slot or future_slot,
            customer=customer,
            amount=settings.CONSULTATION_FEE,
            currency=settings.CONSULTATION_CURRENCY,
        )
        db_session.commit()
        return booking, order
    return _make


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Mocks the background tasks (outbox relay and meeting consumer) started by the app lifespan.
    """
    mocker.patch("booking_service.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("booking_service.main.consume_booking_events", new_callable=AsyncMock)


def create_test_token(user_id: str = "u1", role: str = "user") -> str:
    payload = {"sub": user_id, "role": role}
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


@pytest.fixture
def auth_headers():
    """Authorization headers for the default test user (u1)."""
    return {"Authorization": create_test_token()}


@pytest.fixture
def admin_headers():
    return {"Authorization": create_test_token(user_id="admin-1", role="admin")}


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(gateway):
    """Provides a TestClient wired to the fake gateway, without Redis rate limiting."""
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[create_booking_limiter] = lambda: None
    app.dependency_overrides[read_bookings_limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    # Clean up overrides
    app.dependency_overrides.clear()


@pytest.fixture
def make_token():
    return create_test_token
