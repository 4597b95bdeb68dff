import datetime
import uuid

from sqlalchemy import Column, Integer, String, Text, Numeric, DateTime, ForeignKey, Index, text
from .database import Base
from .statuses import GatewayStatus, BookingStatus, PaymentStatus


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form every datetime column is stored in."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def generate_order_id() -> str:
    # Cashfree order ids: alphanumeric, '_' and '-', at most 45 chars
    return f"order_{uuid.uuid4().hex}"


class PaymentOrder(Base):
    __tablename__ = "payment_orders"

    order_id = Column(String(45), primary_key=True, default=generate_order_id)

    # Issued by the gateway once the remote order exists
    session_id = Column(String(255), nullable=True)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    gateway_status = Column(String(20), nullable=False, default=GatewayStatus.PENDING.value)

    # Only set on the transition into PAID
    payment_method = Column(String(50), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Comes from the JWT issued by the auth service
    user_id = Column(String(64), index=True, nullable=False)

    order_id = Column(
        String(45),
        ForeignKey("payment_orders.order_id"),
        unique=True,
        nullable=False,
    )

    slot = Column(DateTime, nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(20), nullable=False)

    meet_link = Column(String(512), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        # One open booking per user and instant. Cancelled rows drop out of
        # the index so the slot can be booked again.
        Index(
            "uq_bookings_user_slot_open",
            "user_id",
            "slot",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been sent
    status = Column(String(20), default="PENDING", nullable=False)

    # The Kafka topic to send the message to
    topic = Column(String(255), nullable=False)

    # The full JSON payload to be sent
    payload = Column(Text, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
