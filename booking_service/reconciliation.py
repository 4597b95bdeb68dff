"""
Booking / payment order reconciliation.

Every status report, whether it comes from the client polling the gateway,
the gateway's webhook or an admin, goes through
``ReconciliationEngine.apply_status_event``. The payment order row is the
single point of synchronisation: both records are written with
compare-and-set updates in one transaction, so when two sources race only
one transition commits and the loser re-reads and takes the replay or
conflict path.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models
from .exceptions import Conflict, NotFound, Unauthorized, ValidationError
from .gateway import OrderStatusReport, PaymentGateway, WebhookEvidence
from .statuses import (
    TRANSITION_TABLE,
    BookingStatus,
    EventSource,
    GatewayStatus,
    PaymentStatus,
    normalize_gateway_status,
)

logger = logging.getLogger("booking_service")
audit_logger = logging.getLogger("booking_service.audit")

MAX_CAS_ATTEMPTS = 3


class Outcome(str, Enum):
    APPLIED = "applied"
    REPLAYED = "replayed"
    IGNORED = "ignored"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"


AuditHook = Callable[[str, str, Optional[str], Outcome], None]


def log_status_event(order_id: str, source: str, reported_status: Optional[str], outcome: Outcome) -> None:
    """Default audit hook: one log line per status event, applied or not."""
    level = logging.INFO if outcome in (Outcome.APPLIED, Outcome.REPLAYED, Outcome.IGNORED) else logging.WARNING
    audit_logger.log(
        level,
        f"status event order_id={order_id} source={source} reported={reported_status} outcome={outcome.value}",
        extra={
            "order_id": order_id,
            "source": source,
            "reported_status": reported_status,
            "outcome": outcome.value,
        },
    )


@dataclass(frozen=True)
class TransitionResult:
    order_id: str
    gateway_status: GatewayStatus
    booking_status: BookingStatus
    payment_status: PaymentStatus
    outcome: Outcome


class ReconciliationEngine:

    def __init__(
            self,
            db: Session,
            gateway: PaymentGateway,
            audit: AuditHook = log_status_event,
            max_attempts: int = MAX_CAS_ATTEMPTS,
    ):
        self.db = db
        self.gateway = gateway
        self.audit = audit
        self.max_attempts = max_attempts

    def apply_status_event(
            self,
            order_id: str,
            reported_status: Optional[str],
            source,
            evidence: Optional[WebhookEvidence] = None,
            details: Optional[OrderStatusReport] = None,
    ) -> TransitionResult:
        """
        Merges one reported gateway status into the order and its booking.

        Raises NotFound for an unknown order, Unauthorized for a webhook whose
        signature does not verify, and Conflict when the report contradicts a
        terminal state. An unrecognised status is ignored and the current state
        is returned.
        """
        try:
            source = EventSource(source)
        except ValueError:
            raise ValidationError(f"Unknown event source: {source!r}")

        if source is EventSource.WEBHOOK:
            self._verify_evidence(order_id, reported_status, evidence)

        status = normalize_gateway_status(reported_status)

        for attempt in range(1, self.max_attempts + 1):
            # Never decide on rows this session read earlier in the request
            self.db.expire_all()
            order = crud.get_payment_order(self.db, order_id)
            booking = crud.get_booking_by_order(self.db, order_id) if order else None
            if order is None or booking is None:
                self.audit(order_id, source.value, reported_status, Outcome.NOT_FOUND)
                raise NotFound(f"Payment order {order_id} not found", details={"order_id": order_id})

            current = GatewayStatus(order.gateway_status)
            booking_status = BookingStatus(booking.status)

            if status is GatewayStatus.UNKNOWN:
                self.audit(order_id, source.value, reported_status, Outcome.IGNORED)
                return self._result(order, booking, Outcome.IGNORED)

            if status is current:
                self.audit(order_id, source.value, reported_status, Outcome.REPLAYED)
                return self._result(order, booking, Outcome.REPLAYED)

            if current.is_terminal:
                self._reject(order_id, source, reported_status,
                             f"Payment order {order_id} is already {current.value}",
                             current=current, reported=status)

            effect = TRANSITION_TABLE[status]
            target = effect.booking_status or booking_status
            if booking_status.is_terminal and target is not booking_status:
                self._reject(order_id, source, reported_status,
                             f"Booking {booking.id} is already {booking_status.value}",
                             current=current, reported=status)

            if self._commit_transition(order, booking, status, target, effect.payment_status, source, details):
                self.audit(order_id, source.value, reported_status, Outcome.APPLIED)
                logger.info(
                    f"Order {order_id}: {current.value} -> {status.value}, "
                    f"booking {booking_status.value} -> {target.value} (source={source.value})"
                )
                return TransitionResult(order_id, status, target, effect.payment_status, Outcome.APPLIED)

            logger.info(f"Order {order_id} changed concurrently, re-reading (attempt {attempt}/{self.max_attempts})")

        self.audit(order_id, source.value, reported_status, Outcome.CONFLICT)
        raise Conflict(
            f"Payment order {order_id} kept changing during reconciliation",
            details={"order_id": order_id, "attempts": self.max_attempts},
        )

    def _verify_evidence(self, order_id, reported_status, evidence: Optional[WebhookEvidence]) -> None:
        if evidence is None or not evidence.signature:
            self.audit(order_id, EventSource.WEBHOOK.value, reported_status, Outcome.UNAUTHORIZED)
            raise Unauthorized("Missing webhook signature", details={"order_id": order_id})
        if not self.gateway.verify_webhook_signature(evidence.payload, evidence.signature, evidence.timestamp):
            self.audit(order_id, EventSource.WEBHOOK.value, reported_status, Outcome.UNAUTHORIZED)
            raise Unauthorized("Invalid signature", details={"order_id": order_id})

    def _reject(self, order_id, source, reported_status, message, current, reported):
        self.audit(order_id, source.value, reported_status, Outcome.CONFLICT)
        raise Conflict(message, details={
            "order_id": order_id,
            "current_status": current.value,
            "reported_status": reported.value,
            "source": source.value,
        })

    def _commit_transition(
            self,
            order: models.PaymentOrder,
            booking: models.Booking,
            status: GatewayStatus,
            booking_target: BookingStatus,
            payment_status: PaymentStatus,
            source: EventSource,
            details: Optional[OrderStatusReport],
    ) -> bool:
        """Writes order, booking and outbox row atomically. False if a CAS lost."""
        now = models.utcnow()
        order_values = {"gateway_status": status.value, "updated_at": now}
        if status is GatewayStatus.PAID:
            order_values["payment_method"] = details.payment_method if details else None
            order_values["paid_at"] = (details.paid_at if details and details.paid_at else now)

        booking_values = {"payment_status": payment_status.value, "updated_at": now}
        if booking_target.value != booking.status:
            booking_values["status"] = booking_target.value

        order_id = order.order_id
        expected_order_status = order.gateway_status
        expected_booking_status = booking.status
        try:
            if not crud.compare_and_set_order_status(self.db, order_id, expected_order_status, order_values):
                self.db.rollback()
                return False
            if not crud.compare_and_set_booking(self.db, order_id, expected_booking_status, booking_values):
                self.db.rollback()
                return False

            crud.create_booking_event_in_outbox(self.db, _event_name(booking_target, expected_booking_status), {
                "booking_id": booking.id,
                "order_id": order_id,
                "user_id": booking.user_id,
                "slot": booking.slot.isoformat(),
                "gateway_status": status.value,
                "booking_status": booking_target.value,
                "payment_status": payment_status.value,
                "source": source.value,
            })
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return True

    @staticmethod
    def _result(order, booking, outcome: Outcome) -> TransitionResult:
        return TransitionResult(
            order_id=order.order_id,
            gateway_status=GatewayStatus(order.gateway_status),
            booking_status=BookingStatus(booking.status),
            payment_status=PaymentStatus(booking.payment_status),
            outcome=outcome,
        )


def _event_name(target: BookingStatus, previous: str) -> str:
    if target.value != previous:
        return f"booking.{target.value}"
    return "booking.payment_updated"
