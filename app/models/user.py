"""User model."""
import enum

from sqlalchemy import JSON, Boolean, Enum as SqlEnum, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class UserRole(str, enum.Enum):
    """Roles a user can hold."""

    CUSTOMER = "CUSTOMER"
    GUEST = "GUEST"
    DISTRIBUTOR = "DISTRIBUTOR"
    ADMIN = "ADMIN"


class User(Base):
    """A registered customer, a location owner, or a guest synthesized from a payer email."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    billing_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    role: Mapped[UserRole] = mapped_column(SqlEnum(UserRole), nullable=False, default=UserRole.CUSTOMER)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    payments = relationship("Payment", back_populates="user")
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")
