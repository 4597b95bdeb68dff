import datetime
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, models
from .exceptions import Conflict, GatewayError, ValidationError
from .gateway import CallbackUrls, Customer, OrderSession, PaymentGateway
from .statuses import BookingStatus, GatewayStatus, PaymentStatus

logger = logging.getLogger("booking_service")


def to_naive_utc(value: datetime.datetime) -> datetime.datetime:
    """Slots are stored as naive UTC; naive input is taken to already be UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return value


class BookingFlow:
    """
    Opens a booking together with its payment order and the remote gateway order.

    The two records are committed first (the unique index on user and slot
    settles concurrent requests), then the gateway is called outside any
    transaction. If the gateway refuses or is unreachable both records are
    deleted again, so a booking never outlives a failed order attempt. A failed
    booking superseded by this attempt is reopened in that same transaction.
    """

    def __init__(self, db: Session, gateway: PaymentGateway, settings):
        self.db = db
        self.gateway = gateway
        self.settings = settings

    def create_booking(
            self,
            user_id: str,
            slot: datetime.datetime,
            customer: dict[str, str],
            now: Optional[datetime.datetime] = None,
    ) -> tuple[models.Booking, models.PaymentOrder, OrderSession]:
        slot = to_naive_utc(slot)
        now = now or models.utcnow()
        if slot <= now:
            raise ValidationError("Consultation slot must be in the future.", details={"slot": slot.isoformat()})

        superseded = None
        existing = crud.get_open_booking(self.db, user_id, slot)
        if existing is not None:
            if existing.status == BookingStatus.PENDING.value and existing.payment_status == PaymentStatus.FAILED.value:
                # Retry after a failed payment: the old attempt gives up the slot
                if crud.supersede_failed_booking(self.db, existing):
                    superseded = {
                        "booking_id": existing.id,
                        "order_id": existing.order_id,
                        "user_id": existing.user_id,
                        "slot": existing.slot.isoformat(),
                    }
                    logger.info(f"Booking {existing.id} superseded by a new attempt for the same slot")
            else:
                raise Conflict(
                    "You already have a booking for this slot.",
                    details={"booking_id": existing.id, "slot": slot.isoformat()},
                )

        try:
            db_booking, db_order = crud.create_booking_with_order(
                self.db,
                user_id=user_id,
                slot=slot,
                customer=customer,
                amount=self.settings.CONSULTATION_FEE,
                currency=self.settings.CONSULTATION_CURRENCY,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Slot race lost for user {user_id} at {slot.isoformat()}")
            raise Conflict(
                "This slot was just booked. Please pick another slot.",
                details={"slot": slot.isoformat()},
            )

        order_id = db_order.order_id
        try:
            session = self.gateway.create_order(
                order_id=order_id,
                amount=db_order.amount,
                currency=db_order.currency,
                customer=Customer(
                    customer_id=user_id,
                    name=db_booking.customer_name,
                    email=db_booking.customer_email,
                    phone=db_booking.customer_phone,
                ),
                callback_urls=self._callback_urls(order_id),
            )
        except GatewayError as e:
            logger.warning(f"Gateway refused order {order_id}, rolling back booking: {e.message}")
            crud.delete_booking_with_order(self.db, order_id)
            if superseded:
                # The failed attempt keeps the slot again
                crud.restore_superseded_booking(self.db, superseded["order_id"])
            self.db.commit()
            raise

        crud.set_session_id(self.db, order_id, session.session_id)
        if superseded:
            # Published only once the replacement is certain to stay
            crud.create_booking_event_in_outbox(self.db, "booking.cancelled", {
                **superseded,
                "gateway_status": GatewayStatus.FAILED.value,
                "booking_status": BookingStatus.CANCELLED.value,
                "payment_status": PaymentStatus.FAILED.value,
                "superseded_by": order_id,
            })
        self.db.commit()
        self.db.refresh(db_booking)
        self.db.refresh(db_order)
        logger.info(f"Booking {db_booking.id} opened with order {order_id}")
        return db_booking, db_order, session

    def _callback_urls(self, order_id: str) -> CallbackUrls:
        return CallbackUrls(
            return_url=f"{self.settings.FRONTEND_URL.rstrip('/')}/payment-status/{order_id}",
            notify_url=f"{self.settings.PUBLIC_BASE_URL.rstrip('/')}/payments/webhook",
        )
