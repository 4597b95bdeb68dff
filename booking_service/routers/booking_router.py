from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import Annotated

from .. import schemas, crud
from ..auth import CurrentUser, get_current_user
from ..booking_flow import BookingFlow
from ..database import get_db
from ..dependencies import get_booking_flow, create_booking_limiter, read_bookings_limiter


router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/", response_model=schemas.BookingCreated, status_code=status.HTTP_201_CREATED)
def create_booking(
        booking: schemas.BookingCreate,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        flow: BookingFlow = Depends(get_booking_flow),
        limit: None = Depends(create_booking_limiter)
):
    """
    Reserve a consultation slot for the authenticated user and open a payment session.
    """
    db_booking, db_order, session = flow.create_booking(
        user_id=user.id,
        slot=booking.slot,
        customer=booking.customer.model_dump(),
    )
    return schemas.BookingCreated(
        booking=schemas.BookingRead.model_validate(db_booking),
        payment_session=schemas.PaymentSessionRead(
            order_id=db_order.order_id,
            payment_session_id=session.session_id,
            amount=db_order.amount,
            currency=db_order.currency,
            order_status=db_order.gateway_status,
        ),
    )


@router.get("/", response_model=schemas.BookingPage)
def read_user_bookings(
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
        skip: int = 0,
        limit: int = 100,
        limit2: None = Depends(read_bookings_limiter)
):
    """
    Get all bookings for the authenticated user, newest first.
    """
    bookings = crud.get_bookings_by_user(db=db, user_id=user.id, skip=skip, limit=limit)
    return schemas.BookingPage(
        bookings=[schemas.BookingRead.model_validate(b) for b in bookings],
        total=crud.count_bookings_by_user(db=db, user_id=user.id),
        skip=skip,
        limit=limit,
    )


@router.get("/{booking_id}", response_model=schemas.BookingRead)
def read_booking(
        booking_id: str,
        user: Annotated[CurrentUser, Depends(get_current_user)],
        db: Session = Depends(get_db),
):
    db_booking = crud.get_booking(db, booking_id)
    # Other users' bookings are indistinguishable from missing ones
    if db_booking is None or (db_booking.user_id != user.id and not user.is_admin):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return db_booking
