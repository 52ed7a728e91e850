"""Booking model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class BookingStatus(str, enum.Enum):
    """Lifecycle of a booking."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# A booking in one of these states means the payment has been fully processed.
SETTLED_BOOKING_STATUSES = frozenset({BookingStatus.CONFIRMED, BookingStatus.ACTIVE})


class Booking(Base):
    """A reservation of one box for a time window, owned by exactly one payment."""

    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_bookings_payment_id"),
        Index("ix_bookings_box_window", "box_id", "start_at", "end_at"),
        Index("ix_bookings_status", "status"),
    )

    payment_id: Mapped[int] = mapped_column(ForeignKey("payments.id"), nullable=False)
    box_id: Mapped[int] = mapped_column(ForeignKey("boxes.id"), nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        SqlEnum(BookingStatus), nullable=False, default=BookingStatus.CONFIRMED
    )
    lock_pin: Mapped[str] = mapped_column(String(32), nullable=False)
    # Filled by the return flow.
    return_photos: Mapped[list | None] = mapped_column(JSON, nullable=True)
    return_condition_ok: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    payment = relationship("Payment", back_populates="booking")
    box = relationship("Box")
