import json
import datetime
from typing import Any, Optional
from sqlalchemy.orm import Session
from . import models
from .config import settings  # Need this for the topic name
from .statuses import BookingStatus, PaymentStatus


# --- Payment orders ---

def get_payment_order(db: Session, order_id: str) -> Optional[models.PaymentOrder]:
    return db.query(models.PaymentOrder).filter(models.PaymentOrder.order_id == order_id).first()


def compare_and_set_order_status(db: Session, order_id: str, expected_status: str, values: dict[str, Any]) -> bool:
    """
    Updates the payment order only if its gateway_status is still `expected_status`.
    Does NOT commit. Returns False when another writer got there first.
    """
    rows = db.query(models.PaymentOrder).filter(
        models.PaymentOrder.order_id == order_id,
        models.PaymentOrder.gateway_status == expected_status,
    ).update(values, synchronize_session=False)
    return rows == 1


def set_session_id(db: Session, order_id: str, session_id: str) -> None:
    """Does NOT commit."""
    db.query(models.PaymentOrder).filter(models.PaymentOrder.order_id == order_id).update(
        {"session_id": session_id, "updated_at": models.utcnow()},
        synchronize_session=False,
    )


# --- Bookings ---

def get_booking(db: Session, booking_id: str) -> Optional[models.Booking]:
    return db.query(models.Booking).filter(models.Booking.id == booking_id).first()


def get_booking_by_order(db: Session, order_id: str) -> Optional[models.Booking]:
    return db.query(models.Booking).filter(models.Booking.order_id == order_id).first()


def get_open_booking(db: Session, user_id: str, slot: datetime.datetime) -> Optional[models.Booking]:
    """
    Returns the user's non-cancelled booking for this exact slot, if any.
    The unique index on (user_id, slot) is what actually guarantees there is at most one.
    """
    return db.query(models.Booking).filter(
        models.Booking.user_id == user_id,
        models.Booking.slot == slot,
        models.Booking.status != BookingStatus.CANCELLED.value,
    ).first()


def compare_and_set_booking(db: Session, order_id: str, expected_status: str, values: dict[str, Any]) -> bool:
    """Same contract as compare_and_set_order_status, keyed on Booking.status."""
    rows = db.query(models.Booking).filter(
        models.Booking.order_id == order_id,
        models.Booking.status == expected_status,
    ).update(values, synchronize_session=False)
    return rows == 1


def supersede_failed_booking(db: Session, booking: models.Booking) -> bool:
    """
    Cancels a pending booking whose payment failed so its slot can be taken by a fresh attempt.
    Does NOT commit.
    """
    return compare_and_set_booking(
        db,
        booking.order_id,
        BookingStatus.PENDING.value,
        {"status": BookingStatus.CANCELLED.value, "updated_at": models.utcnow()},
    )


def restore_superseded_booking(db: Session, order_id: str) -> bool:
    """Reopens a booking cancelled by supersede_failed_booking. Does NOT commit."""
    return compare_and_set_booking(
        db,
        order_id,
        BookingStatus.CANCELLED.value,
        {"status": BookingStatus.PENDING.value, "updated_at": models.utcnow()},
    )


def create_booking_with_order(
        db: Session,
        user_id: str,
        slot: datetime.datetime,
        customer: dict[str, str],
        amount,
        currency: str,
) -> tuple[models.Booking, models.PaymentOrder]:
    """
    Adds a PENDING payment order and its pending booking to the session.
    Does NOT commit. The caller commits both in one transaction.
    """
    now = models.utcnow()
    db_order = models.PaymentOrder(
        order_id=models.generate_order_id(),
        amount=amount,
        currency=currency,
        created_at=now,
        updated_at=now,
    )
    db_booking = models.Booking(
        user_id=user_id,
        order_id=db_order.order_id,
        slot=slot,
        status=BookingStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        customer_name=customer["name"],
        customer_email=customer["email"],
        customer_phone=customer["phone"],
        created_at=now,
        updated_at=now,
    )
    db.add(db_order)
    db.flush()
    db.add(db_booking)
    return db_booking, db_order


def delete_booking_with_order(db: Session, order_id: str) -> None:
    """Compensation for a failed gateway call: removes both records. Does NOT commit."""
    db.query(models.Booking).filter(models.Booking.order_id == order_id).delete(synchronize_session=False)
    db.query(models.PaymentOrder).filter(models.PaymentOrder.order_id == order_id).delete(synchronize_session=False)


def set_meet_link(db: Session, booking_id: str, meet_link: str) -> bool:
    """Attaches the meeting link once. Returns False if the booking already has one."""
    rows = db.query(models.Booking).filter(
        models.Booking.id == booking_id,
        models.Booking.meet_link.is_(None),
    ).update({"meet_link": meet_link, "updated_at": models.utcnow()}, synchronize_session=False)
    db.commit()
    return rows == 1


def get_bookings_by_user(db: Session, user_id: str, skip: int = 0, limit: int = 100) -> list[models.Booking]:
    return (
        db.query(models.Booking)
        .filter(models.Booking.user_id == user_id)
        .order_by(models.Booking.created_at.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def count_bookings_by_user(db: Session, user_id: str) -> int:
    return db.query(models.Booking).filter(models.Booking.user_id == user_id).count()


def list_bookings(
        db: Session,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
) -> tuple[list[models.Booking], int]:
    query = db.query(models.Booking)
    if status:
        query = query.filter(models.Booking.status == status)
    if payment_status:
        query = query.filter(models.Booking.payment_status == payment_status)
    total = query.count()
    bookings = query.order_by(models.Booking.created_at.desc()).offset(skip).limit(limit).all()
    return bookings, total


# --- Outbox ---

def create_booking_event_in_outbox(db: Session, event: str, payload: dict[str, Any]) -> None:
    """
    Creates a booking lifecycle event in the outbox table.
    Note: Does NOT commit. It rides in the caller's transaction.
    """
    db_outbox_event = models.OutboxEvent(
        topic=settings.KAFKA_BOOKING_TOPIC,
        payload=json.dumps({"event": event, **payload}),
        status="PENDING"
    )
    db.add(db_outbox_event)
