import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Annotated, Optional

from .. import schemas, crud
from ..auth import CurrentUser, get_current_admin_user
from ..database import get_db
from ..dependencies import get_engine
from ..reconciliation import ReconciliationEngine
from ..statuses import BookingStatus, EventSource, PaymentStatus

logger = logging.getLogger("booking_service")

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/bookings", response_model=schemas.BookingPage)
def list_bookings(
        admin: Annotated[CurrentUser, Depends(get_current_admin_user)],
        db: Session = Depends(get_db),
        booking_status: Annotated[Optional[BookingStatus], Query(alias="status")] = None,
        payment_status: Optional[PaymentStatus] = None,
        skip: int = Query(default=0, ge=0),
        limit: int = Query(default=10, ge=1, le=100),
):
    """
    All bookings, newest first, optionally filtered by booking and payment status.
    """
    bookings, total = crud.list_bookings(
        db,
        status=booking_status.value if booking_status else None,
        payment_status=payment_status.value if payment_status else None,
        skip=skip,
        limit=limit,
    )
    return schemas.BookingPage(
        bookings=[schemas.BookingRead.model_validate(b) for b in bookings],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.post("/orders/{order_id}/status", response_model=schemas.TransitionRead)
def override_order_status(
        order_id: str,
        override: schemas.StatusOverride,
        admin: Annotated[CurrentUser, Depends(get_current_admin_user)],
        engine: ReconciliationEngine = Depends(get_engine),
):
    """
    Manual status override. Goes through the same rules as gateway reports,
    so a terminal order answers 409 instead of being overwritten.
    """
    logger.info(f"Admin {admin.id} reports {override.status} for order {order_id}: {override.note or '-'}")
    result = engine.apply_status_event(order_id, override.status, EventSource.ADMIN)
    return schemas.TransitionRead(
        order_id=result.order_id,
        gateway_status=result.gateway_status.value,
        booking_status=result.booking_status.value,
        payment_status=result.payment_status.value,
        outcome=result.outcome.value,
    )
