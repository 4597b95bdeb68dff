import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from typing import Annotated

from .. import schemas, crud
from ..auth import CurrentUser, get_current_user
from ..database import get_db
from ..dependencies import get_engine
from ..gateway import OrderStatusReport, WebhookEvidence, parse_gateway_time
from ..reconciliation import ReconciliationEngine, TransitionResult
from ..statuses import EventSource, status_message

logger = logging.getLogger("booking_service")

router = APIRouter(prefix="/payments", tags=["Payments"])


def _status_response(db: Session, result: TransitionResult) -> schemas.PaymentStatusRead:
    order = crud.get_payment_order(db, result.order_id)
    return schemas.PaymentStatusRead(
        order_id=result.order_id,
        status=result.gateway_status.value,
        booking_status=result.booking_status.value,
        payment_status=result.payment_status.value,
        outcome=result.outcome.value,
        message=status_message(result.gateway_status),
        payment_details=schemas.PaymentDetailsRead(
            amount=order.amount,
            currency=order.currency,
            method=order.payment_method,
            paid_at=order.paid_at,
        ),
    )


def _poll_gateway(order_id: str, user: CurrentUser, db: Session, engine: ReconciliationEngine) -> schemas.PaymentStatusRead:
    booking = crud.get_booking_by_order(db, order_id)
    if booking is None or (booking.user_id != user.id and not user.is_admin):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment record not found")

    # Gateway round-trip happens before, never inside, the reconciliation transaction
    report = engine.gateway.verify_order(order_id)
    result = engine.apply_status_event(
        order_id,
        report.gateway_status,
        EventSource.CLIENT,
        details=report,
    )
    return _status_response(db, result)


@router.post("/verify", response_model=schemas.PaymentStatusRead)
def verify_payment(
        body: schemas.VerifyPaymentRequest,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        engine: ReconciliationEngine = Depends(get_engine),
):
    """
    Client-initiated check: asks the gateway for the order status and reconciles it.
    """
    return _poll_gateway(body.order_id, user, db, engine)


@router.get("/status/{order_id}", response_model=schemas.PaymentStatusRead)
def payment_status(
        order_id: str,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        engine: ReconciliationEngine = Depends(get_engine),
):
    """
    Same as /verify, for the gateway's return URL landing page.
    """
    return _poll_gateway(order_id, user, db, engine)


def _extract_order_status(event: dict) -> tuple:
    data = event.get("data") or {}
    order = data.get("order") or {}
    payment = data.get("payment") or {}
    order_id = order.get("order_id")
    reported = order.get("order_status") or payment.get("payment_status")
    method = payment.get("payment_group") or payment.get("payment_method")
    if isinstance(method, dict):
        # Cashfree sends the method as {"upi": {...}}
        method = next(iter(method), None)
    return order_id, reported, method, payment.get("payment_time")


@router.post("/webhook")
async def payment_webhook(
        request: Request,
        engine: ReconciliationEngine = Depends(get_engine),
):
    """
    Gateway push notification. The raw body and signature headers are passed on
    untouched so the signature check is byte-exact.
    """
    raw_payload = await request.body()
    try:
        event = json.loads(raw_payload)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    order_id, reported, method, payment_time = _extract_order_status(event)
    if not order_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook payload has no order id")

    evidence = WebhookEvidence(
        payload=raw_payload,
        signature=request.headers.get("x-webhook-signature"),
        timestamp=request.headers.get("x-webhook-timestamp", ""),
    )
    result = engine.apply_status_event(
        order_id,
        reported,
        EventSource.WEBHOOK,
        evidence=evidence,
        details=_webhook_details(reported, method, payment_time),
    )
    logger.info(f"Webhook for order {order_id} handled: {result.outcome.value}")
    return {
        "success": True,
        "order_id": order_id,
        "status": result.gateway_status.value,
        "outcome": result.outcome.value,
    }


def _webhook_details(reported, method, payment_time) -> OrderStatusReport:
    return OrderStatusReport(
        gateway_status=reported or "",
        payment_method=method,
        paid_at=parse_gateway_time(payment_time),
    )
