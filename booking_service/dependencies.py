from fastapi import Depends, Request
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from .auth import get_key_by_user_id_or_ip
from .booking_flow import BookingFlow
from .config import settings
from .database import get_db
from .gateway import PaymentGateway
from .reconciliation import ReconciliationEngine


def get_gateway(request: Request) -> PaymentGateway:
    # Built once per app in the lifespan and handed to every request
    return request.app.state.gateway


def get_engine(
        db: Session = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
) -> ReconciliationEngine:
    return ReconciliationEngine(db, gateway)


def get_booking_flow(
        db: Session = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
) -> BookingFlow:
    return BookingFlow(db, gateway, settings)


create_booking_limiter = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
read_bookings_limiter = RateLimiter(times=60, minutes=1, identifier=get_key_by_user_id_or_ip)
