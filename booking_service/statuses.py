"""
Status vocabulary for bookings and payment orders.

All gateway wording is translated here, so the reconciliation logic only
ever sees the closed ``GatewayStatus`` enum. New gateway statuses are added
to ``_GATEWAY_STATUS_TABLE`` and nowhere else.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class GatewayStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    USER_DROPPED = "USER_DROPPED"
    # Never persisted, never applied
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_GATEWAY_STATUSES


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.CONFIRMED, BookingStatus.CANCELLED)


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class EventSource(str, Enum):
    CLIENT = "client"
    WEBHOOK = "webhook"
    ADMIN = "admin"


TERMINAL_GATEWAY_STATUSES = frozenset({
    GatewayStatus.PAID,
    GatewayStatus.FAILED,
    GatewayStatus.CANCELLED,
    GatewayStatus.EXPIRED,
})

# Cashfree order statuses (ACTIVE, PAID, EXPIRED) and payment statuses
# (SUCCESS, FAILED, USER_DROPPED, NOT_ATTEMPTED, ...) both land here.
_GATEWAY_STATUS_TABLE = {
    "PAID": GatewayStatus.PAID,
    "SUCCESS": GatewayStatus.PAID,
    "FAILED": GatewayStatus.FAILED,
    "CANCELLED": GatewayStatus.CANCELLED,
    "USER_DROPPED": GatewayStatus.USER_DROPPED,
    "EXPIRED": GatewayStatus.EXPIRED,
    "PENDING": GatewayStatus.PENDING,
    "ACTIVE": GatewayStatus.PENDING,
    "NOT_ATTEMPTED": GatewayStatus.PENDING,
}


def normalize_gateway_status(reported: Optional[str]) -> GatewayStatus:
    """Map a raw gateway status string to ``GatewayStatus`` (``UNKNOWN`` if unrecognised)."""
    if not isinstance(reported, str):
        return GatewayStatus.UNKNOWN
    return _GATEWAY_STATUS_TABLE.get(reported.strip().upper(), GatewayStatus.UNKNOWN)


@dataclass(frozen=True)
class BookingEffect:
    # None leaves Booking.status as it is
    booking_status: Optional[BookingStatus]
    payment_status: PaymentStatus


TRANSITION_TABLE = {
    GatewayStatus.PAID: BookingEffect(BookingStatus.CONFIRMED, PaymentStatus.COMPLETED),
    # The booking stays open so the user can retry with a fresh order
    GatewayStatus.FAILED: BookingEffect(None, PaymentStatus.FAILED),
    GatewayStatus.CANCELLED: BookingEffect(BookingStatus.CANCELLED, PaymentStatus.FAILED),
    GatewayStatus.USER_DROPPED: BookingEffect(BookingStatus.CANCELLED, PaymentStatus.FAILED),
    GatewayStatus.EXPIRED: BookingEffect(BookingStatus.CANCELLED, PaymentStatus.FAILED),
    GatewayStatus.PENDING: BookingEffect(None, PaymentStatus.PENDING),
}


_STATUS_MESSAGES = {
    GatewayStatus.PAID: "Payment completed successfully",
    GatewayStatus.FAILED: "Payment failed. Please try again",
    GatewayStatus.CANCELLED: "Payment was cancelled",
    GatewayStatus.USER_DROPPED: "Payment was cancelled",
    GatewayStatus.PENDING: "Payment is being processed",
    GatewayStatus.EXPIRED: "Payment session expired",
}


def status_message(status: GatewayStatus) -> str:
    return _STATUS_MESSAGES.get(status, "Unable to determine payment status")
