import datetime
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from booking_service import crud, models
from booking_service.exceptions import GatewayRejected, GatewayUnavailable

TIMESTAMP = "1700000000"


def webhook_body(order_id: str, order_status: str = None, payment: dict = None) -> bytes:
    data = {"order": {"order_id": order_id}}
    if order_status is not None:
        data["order"]["order_status"] = order_status
    if payment is not None:
        data["payment"] = payment
    return json.dumps({"type": "PAYMENT_SUCCESS_WEBHOOK", "data": data}).encode()


def post_webhook(client: TestClient, gateway, body: bytes, signature: str = None):
    headers = {
        "Content-Type": "application/json",
        "x-webhook-timestamp": TIMESTAMP,
        "x-webhook-signature": signature if signature is not None else gateway.sign(body, TIMESTAMP),
    }
    return client.post("/payments/webhook", content=body, headers=headers)


def read_booking(db: Session, order_id: str) -> models.Booking:
    db.expire_all()
    return crud.get_booking_by_order(db, order_id)


# --- Webhook ---

def test_webhook_paid_confirms_booking(client: TestClient, gateway, make_booking, db_session: Session):
    _, order = make_booking()
    body = webhook_body(order.order_id, "PAID", payment={
        "payment_status": "SUCCESS",
        "payment_group": "upi",
        "payment_time": "2026-03-01T10:15:00+05:30",
    })

    response = post_webhook(client, gateway, body)

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "order_id": order.order_id,
        "status": "PAID",
        "outcome": "applied",
    }
    booking = read_booking(db_session, order.order_id)
    assert booking.status == "confirmed"
    assert booking.payment_status == "completed"
    stored = crud.get_payment_order(db_session, order.order_id)
    assert stored.payment_method == "upi"
    assert stored.paid_at.isoformat() == "2026-03-01T04:45:00"


def test_webhook_replay_is_acknowledged(client: TestClient, gateway, make_booking):
    _, order = make_booking()
    body = webhook_body(order.order_id, "PAID")

    post_webhook(client, gateway, body)
    response = post_webhook(client, gateway, body)

    assert response.status_code == 200
    assert response.json()["outcome"] == "replayed"


def test_webhook_status_from_payment_section(client: TestClient, gateway, make_booking, db_session: Session):
    _, order = make_booking()
    body = webhook_body(order.order_id, payment={"payment_status": "SUCCESS", "payment_method": {"card": {}}})

    response = post_webhook(client, gateway, body)

    assert response.json()["status"] == "PAID"
    db_session.expire_all()
    assert crud.get_payment_order(db_session, order.order_id).payment_method == "card"


def test_webhook_expired_then_paid_conflicts(client: TestClient, gateway, make_booking, db_session: Session):
    _, order = make_booking()

    expired = post_webhook(client, gateway, webhook_body(order.order_id, "EXPIRED"))
    assert expired.status_code == 200
    paid = post_webhook(client, gateway, webhook_body(order.order_id, "PAID"))

    assert paid.status_code == 409
    booking = read_booking(db_session, order.order_id)
    assert booking.status == "cancelled"
    assert booking.payment_status == "failed"


@pytest.mark.parametrize("signature", ["", "bm90LXRoZS1zaWduYXR1cmU="])
def test_webhook_bad_signature_is_unauthorized(client: TestClient, gateway, make_booking, db_session: Session, signature):
    _, order = make_booking()

    response = post_webhook(client, gateway, webhook_body(order.order_id, "PAID"), signature=signature)

    assert response.status_code == 401
    booking = read_booking(db_session, order.order_id)
    assert booking.status == "pending"
    assert crud.get_payment_order(db_session, order.order_id).gateway_status == "PENDING"


def test_webhook_without_signature_header(client: TestClient, make_booking):
    _, order = make_booking()

    response = client.post("/payments/webhook", content=webhook_body(order.order_id, "PAID"))

    assert response.status_code == 401


def test_webhook_invalid_json(client: TestClient, gateway):
    body = b"{not json"
    response = post_webhook(client, gateway, body)
    assert response.status_code == 400


def test_webhook_without_order_id(client: TestClient, gateway):
    body = json.dumps({"data": {"order": {"order_status": "PAID"}}}).encode()
    response = post_webhook(client, gateway, body)
    assert response.status_code == 400


def test_webhook_unknown_order(client: TestClient, gateway):
    response = post_webhook(client, gateway, webhook_body("order_missing", "PAID"))
    assert response.status_code == 404


# --- Client verification ---

def test_verify_payment_reconciles_from_gateway(client: TestClient, gateway, auth_headers, make_booking, db_session: Session):
    _, order = make_booking()
    gateway.statuses[order.order_id] = "PAID"
    gateway.payment_methods[order.order_id] = "netbanking"

    response = client.post("/payments/verify", json={"order_id": order.order_id}, headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "PAID"
    assert data["booking_status"] == "confirmed"
    assert data["payment_status"] == "completed"
    assert data["outcome"] == "applied"
    assert data["message"] == "Payment completed successfully"
    assert data["payment_details"]["method"] == "netbanking"
    assert data["payment_details"]["paid_at"] is not None


def test_payment_status_while_still_active(client: TestClient, gateway, auth_headers, make_booking):
    _, order = make_booking()
    gateway.statuses[order.order_id] = "ACTIVE"

    response = client.get(f"/payments/status/{order.order_id}", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "PENDING"
    assert data["booking_status"] == "pending"
    assert data["outcome"] == "replayed"


def test_verify_other_users_order_is_not_found(client: TestClient, gateway, make_token, make_booking):
    _, order = make_booking(user_id="u1")
    gateway.statuses[order.order_id] = "PAID"

    response = client.post(
        "/payments/verify",
        json={"order_id": order.order_id},
        headers={"Authorization": make_token("u2")},
    )

    assert response.status_code == 404


def test_verify_when_gateway_is_down(client: TestClient, gateway, auth_headers, make_booking, db_session: Session):
    _, order = make_booking()
    gateway.verify_error = GatewayUnavailable("Cashfree unreachable")

    response = client.post("/payments/verify", json={"order_id": order.order_id}, headers=auth_headers)

    assert response.status_code == 503
    assert read_booking(db_session, order.order_id).status == "pending"


def test_verify_when_gateway_rejects_the_query(client: TestClient, gateway, auth_headers, make_booking, db_session: Session):
    _, order = make_booking()
    gateway.verify_error = GatewayRejected("authentication failed", details={"status_code": 401})

    response = client.post("/payments/verify", json={"order_id": order.order_id}, headers=auth_headers)

    assert response.status_code == 502
    assert response.json() == {
        "detail": "authentication failed",
        "details": {"status_code": 401},
        "retryable": False,
    }
    assert read_booking(db_session, order.order_id).status == "pending"


def test_verify_requires_auth(client: TestClient, make_booking):
    _, order = make_booking()
    response = client.post("/payments/verify", json={"order_id": order.order_id})
    assert response.status_code in (401, 403)


# --- Admin ---

def test_admin_override_cancels_booking(client: TestClient, admin_headers, make_booking, db_session: Session):
    _, order = make_booking()

    response = client.post(
        f"/admin/orders/{order.order_id}/status",
        json={"status": "CANCELLED", "note": "customer called support"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json() == {
        "order_id": order.order_id,
        "gateway_status": "CANCELLED",
        "booking_status": "cancelled",
        "payment_status": "failed",
        "outcome": "applied",
    }


def test_admin_override_on_terminal_order_conflicts(client: TestClient, admin_headers, gateway, make_booking):
    _, order = make_booking()
    post_webhook(client, gateway, webhook_body(order.order_id, "PAID"))

    response = client.post(
        f"/admin/orders/{order.order_id}/status",
        json={"status": "FAILED"},
        headers=admin_headers,
    )

    assert response.status_code == 409


def test_admin_override_requires_admin(client: TestClient, auth_headers, make_booking):
    _, order = make_booking()

    response = client.post(f"/admin/orders/{order.order_id}/status", json={"status": "PAID"}, headers=auth_headers)

    assert response.status_code == 403


def test_admin_lists_bookings_with_filters(client: TestClient, admin_headers, gateway, make_booking, future_slot):
    _, paid_order = make_booking(user_id="u1", slot=future_slot)
    make_booking(user_id="u2", slot=future_slot)
    make_booking(user_id="u3", slot=future_slot + datetime.timedelta(hours=2))
    post_webhook(client, gateway, webhook_body(paid_order.order_id, "PAID"))

    everything = client.get("/admin/bookings", headers=admin_headers).json()
    confirmed = client.get("/admin/bookings", params={"status": "confirmed"}, headers=admin_headers).json()
    pending = client.get(
        "/admin/bookings",
        params={"status": "pending", "payment_status": "pending", "limit": 1},
        headers=admin_headers,
    ).json()

    assert everything["total"] == 3
    assert confirmed["total"] == 1
    assert confirmed["bookings"][0]["order_id"] == paid_order.order_id
    assert pending["total"] == 2
    assert len(pending["bookings"]) == 1
    assert pending["limit"] == 1


def test_admin_list_rejects_unknown_status(client: TestClient, admin_headers):
    response = client.get("/admin/bookings", params={"status": "archived"}, headers=admin_headers)
    assert response.status_code == 422
