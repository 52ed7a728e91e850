"""Schemas for payment entities and the client confirmation endpoints."""
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr

from app.models.payment import PaymentStatus
from app.schemas.booking import BookingRead, BookingSummary


class PaymentRead(BaseModel):
    id: int
    charge_id: str
    payment_intent_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    completed_at: datetime | None
    booking_error: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProcessSuccessRequest(BaseModel):
    customer_email: EmailStr | None = None


class ProcessSuccessResponse(BaseModel):
    booking: BookingRead
    created: bool
    message: str


class PaymentStateRead(BaseModel):
    payment_intent_id: str
    gateway_status: str | None
    payment: PaymentRead | None
    booking: BookingSummary | None
    booking_exists: bool
    next_action: Literal["done", "wait", "confirm", "contact_support", "failed"]

    model_config = ConfigDict(from_attributes=True)
