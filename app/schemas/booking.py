"""Schemas for bookings."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from app.models.booking import BookingStatus


class BookingSummary(BaseModel):
    """Booking state safe to expose to anyone holding the payment reference."""

    id: int
    payment_id: int
    box_id: int
    start_at: datetime
    end_at: datetime
    total_amount: Decimal
    status: BookingStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingRead(BookingSummary):
    lock_pin: str
