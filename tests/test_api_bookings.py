# Import testing tools
import json
import datetime

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from booking_service import models
from booking_service.exceptions import GatewayRejected, GatewayUnavailable


def booking_payload(slot: datetime.datetime, customer: dict) -> dict:
    return {"slot": slot.isoformat(), "customer": customer}


# --- Test Cases ---

def test_create_booking_success(client: TestClient, auth_headers, future_slot, customer, gateway, db_session: Session):
    """Creating a booking returns the pending booking and the payment session."""
    response = client.post("/bookings/", json=booking_payload(future_slot, customer), headers=auth_headers)

    # --- Assertions for the API Response ---
    assert response.status_code == 201
    data = response.json()
    booking = data["booking"]
    session = data["payment_session"]
    assert booking["user_id"] == "u1"  # User ID from the test token
    assert booking["status"] == "pending"
    assert booking["payment_status"] == "pending"
    assert booking["slot"] == future_slot.isoformat()
    assert booking["order_id"] == session["order_id"]
    assert session["payment_session_id"] == f"session_{session['order_id']}"
    assert session["order_status"] == "PENDING"

    # --- Both records are stored, and nothing is published yet ---
    order = db_session.query(models.PaymentOrder).first()
    assert order.order_id == session["order_id"]
    assert order.session_id == session["payment_session_id"]
    assert db_session.query(models.OutboxEvent).count() == 0
    assert len(gateway.created) == 1


def test_create_booking_in_the_past(client: TestClient, auth_headers, customer):
    past = models.utcnow() - datetime.timedelta(hours=1)
    response = client.post("/bookings/", json=booking_payload(past, customer), headers=auth_headers)

    assert response.status_code == 400
    assert "future" in response.json()["detail"]


def test_create_booking_invalid_customer(client: TestClient, auth_headers, future_slot, customer):
    bad_customer = {**customer, "email": "not-an-email"}
    response = client.post("/bookings/", json=booking_payload(future_slot, bad_customer), headers=auth_headers)
    assert response.status_code == 422


def test_create_booking_conflict(client: TestClient, auth_headers, future_slot, customer, make_booking):
    """A second open booking for the same user and slot is rejected."""
    booking, _ = make_booking(user_id="u1", slot=future_slot)

    response = client.post("/bookings/", json=booking_payload(future_slot, customer), headers=auth_headers)

    assert response.status_code == 409
    body = response.json()
    assert body["details"]["booking_id"] == booking.id
    assert body["details"]["slot"] == future_slot.isoformat()
    assert "retryable" not in body


def test_create_booking_gateway_unavailable(client: TestClient, auth_headers, future_slot, customer, gateway, db_session: Session):
    gateway.create_error = GatewayUnavailable("Cashfree timed out on POST /orders")

    response = client.post("/bookings/", json=booking_payload(future_slot, customer), headers=auth_headers)

    assert response.status_code == 503
    assert response.json()["retryable"] is True
    assert db_session.query(models.Booking).count() == 0
    assert db_session.query(models.PaymentOrder).count() == 0


def test_create_booking_gateway_rejected(client: TestClient, auth_headers, future_slot, customer, gateway, db_session: Session):
    gateway.create_error = GatewayRejected("Failed to create order: invalid phone")

    response = client.post("/bookings/", json=booking_payload(future_slot, customer), headers=auth_headers)

    assert response.status_code == 502
    assert "invalid phone" in response.json()["detail"]
    assert response.json()["retryable"] is False
    assert db_session.query(models.Booking).count() == 0


def test_create_booking_no_auth(client: TestClient, future_slot, customer):
    """Test creating a booking without providing an auth token."""
    response = client.post("/bookings/", json=booking_payload(future_slot, customer))
    # FastAPI answers 403 or 401 for a missing API key header depending on version
    assert response.status_code in (401, 403)


def test_create_booking_bad_token(client: TestClient, future_slot, customer):
    response = client.post(
        "/bookings/",
        json=booking_payload(future_slot, customer),
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert response.status_code == 401


def test_read_user_bookings(client: TestClient, auth_headers, make_booking, future_slot):
    """Test retrieving bookings only for the authenticated user."""
    # 1. Two bookings for u1 (the user in our default test token)
    make_booking(user_id="u1", slot=future_slot)
    make_booking(user_id="u1", slot=future_slot + datetime.timedelta(hours=1))
    # 2. A booking for a different user
    make_booking(user_id="u2", slot=future_slot)

    # 3. Make a GET request
    response = client.get("/bookings/", headers=auth_headers)

    # Assertions
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert len(data["bookings"]) == 2
    assert {b["user_id"] for b in data["bookings"]} == {"u1"}


def test_read_single_booking(client: TestClient, auth_headers, make_booking):
    booking, order = make_booking(user_id="u1")

    response = client.get(f"/bookings/{booking.id}", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["order_id"] == order.order_id


def test_other_users_booking_is_not_found(client: TestClient, make_token, make_booking):
    booking, _ = make_booking(user_id="u1")

    response = client.get(f"/bookings/{booking.id}", headers={"Authorization": make_token("u2")})

    assert response.status_code == 404


def test_admin_can_read_any_booking(client: TestClient, admin_headers, make_booking):
    booking, _ = make_booking(user_id="u1")

    response = client.get(f"/bookings/{booking.id}", headers=admin_headers)

    assert response.status_code == 200


def test_booking_created_then_paid_over_http(client: TestClient, auth_headers, future_slot, customer, gateway, db_session: Session):
    """End to end: create, pay through the webhook, then see the confirmed booking."""
    created = client.post("/bookings/", json=booking_payload(future_slot, customer), headers=auth_headers).json()
    order_id = created["payment_session"]["order_id"]

    body = json.dumps({"data": {"order": {"order_id": order_id, "order_status": "PAID"}}}).encode()
    webhook = client.post(
        "/payments/webhook",
        content=body,
        headers={"x-webhook-signature": gateway.sign(body, "1700000000"), "x-webhook-timestamp": "1700000000"},
    )
    assert webhook.status_code == 200

    booking = client.get(f"/bookings/{created['booking']['id']}", headers=auth_headers).json()
    assert booking["status"] == "confirmed"
    assert booking["payment_status"] == "completed"
