from pydantic import BaseModel, ConfigDict, Field
from decimal import Decimal
from typing import Optional, List
import datetime


class CustomerDetails(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    # Cashfree requires a phone number on every order
    phone: str = Field(default="0000000000", min_length=10, max_length=20)


class BookingCreate(BaseModel):
    # user_id will come from the JWT token
    slot: datetime.datetime
    customer: CustomerDetails


class BookingRead(BaseModel):
    id: str
    user_id: str
    order_id: str
    slot: datetime.datetime
    status: str
    payment_status: str
    meet_link: Optional[str] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentSessionRead(BaseModel):
    order_id: str
    payment_session_id: Optional[str] = None
    amount: Decimal
    currency: str
    order_status: str


class BookingCreated(BaseModel):
    booking: BookingRead
    payment_session: PaymentSessionRead


class BookingPage(BaseModel):
    bookings: List[BookingRead]
    total: int
    skip: int
    limit: int


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(min_length=1, max_length=45)


class PaymentDetailsRead(BaseModel):
    amount: Decimal
    currency: str
    method: Optional[str] = None
    paid_at: Optional[datetime.datetime] = None


class PaymentStatusRead(BaseModel):
    order_id: str
    status: str
    booking_status: str
    payment_status: str
    outcome: str
    message: str
    payment_details: PaymentDetailsRead


class StatusOverride(BaseModel):
    status: str = Field(min_length=1, max_length=32)
    note: Optional[str] = Field(default=None, max_length=500)


class TransitionRead(BaseModel):
    order_id: str
    gateway_status: str
    booking_status: str
    payment_status: str
    outcome: str
