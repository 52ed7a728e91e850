"""Payment model definitions."""
import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class PaymentStatus(str, enum.Enum):
    """Possible statuses for a payment."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


_ALLOWED_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: {PaymentStatus.PROCESSING},
    PaymentStatus.REFUNDED: set(),
}


class Payment(Base):
    """A gateway charge that has been independently verified as succeeded.

    ``charge_id`` is the idempotency key shared by every entry point.
    """

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("charge_id", name="uq_payments_charge_id"),
        CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        Index("ix_payments_payment_intent_id", "payment_intent_id"),
        Index("ix_payments_status", "status"),
        Index("ix_payments_created_at", "created_at"),
    )

    charge_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payment_intent_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        SqlEnum(PaymentStatus), nullable=False, default=PaymentStatus.PROCESSING
    )
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    livemode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    booking_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    billing_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    booking_error: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reconcile_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    user = relationship("User", back_populates="payments")
    booking = relationship("Booking", back_populates="payment", uselist=False)

    def can_transition_to(self, target: PaymentStatus) -> bool:
        return target == self.status or target in _ALLOWED_TRANSITIONS[self.status]
