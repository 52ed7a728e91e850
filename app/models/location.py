"""Locations and the storage boxes they host."""
from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class Location(Base):
    """A physical site operated by a distributor."""

    __tablename__ = "locations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)

    owner = relationship("User")
    boxes = relationship("Box", back_populates="location")


class Box(Base):
    """A rentable storage compartment, addressed by its ``code`` (e.g. ``C1``)."""

    __tablename__ = "boxes"

    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False, index=True)

    location = relationship("Location", back_populates="boxes")
