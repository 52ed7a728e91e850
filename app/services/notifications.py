"""Fire-and-forget side effects of a newly created booking."""
from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.models import Booking, Notification
from app.services import email as email_service

logger = logging.getLogger(__name__)


def _notify(db: Session, *, user_id: int, kind: str, title: str, message: str, booking_id: int) -> None:
    with db.begin_nested():
        db.add(
            Notification(
                user_id=user_id,
                kind=kind,
                title=title,
                message=message,
                related_booking_id=booking_id,
            )
        )
    db.commit()


def notify_location_owner(db: Session, booking: Booking) -> None:
    location = booking.box.location
    if location.owner_user_id is None:
        logger.warning(
            "Location has no owner; skipping owner notification",
            extra={"booking_id": booking.id, "location_id": location.id},
        )
        return
    _notify(
        db,
        user_id=location.owner_user_id,
        kind="BOOKING_CONFIRMED",
        title="New Booking Confirmed",
        message=f"Compartment {booking.box.code} at {location.name} has been booked.",
        booking_id=booking.id,
    )


def notify_payer(db: Session, booking: Booking) -> None:
    payment = booking.payment
    if payment.user_id is None:
        logger.warning("Booking payment has no owner; skipping payer notification", extra={"booking_id": booking.id})
        return
    _notify(
        db,
        user_id=payment.user_id,
        kind="BOOKING_CONFIRMED",
        title="Your booking is confirmed",
        message=f"Your compartment {booking.box.code} is reserved. Your access PIN is in your confirmation email.",
        booking_id=booking.id,
    )


def send_confirmation_email(booking: Booking, payer_email: str | None, settings: Settings) -> None:
    if not payer_email:
        logger.warning("No payer email; skipping confirmation email", extra={"booking_id": booking.id})
        return
    subject, body = email_service.render_booking_confirmation(booking, payer_email=payer_email, settings=settings)
    email_service.send_email(payer_email, subject, body, settings=settings)


def dispatch_booking_confirmed(
    db: Session,
    booking: Booking,
    *,
    payer_email: str | None,
    settings: Settings | None = None,
) -> dict[str, bool]:
    """Run every post-booking side effect independently.

    A failing step is logged and skipped; the booking and payment are already
    committed and are never touched here.
    """

    settings = settings or get_settings()
    steps: list[tuple[str, Callable[[], None]]] = [
        ("owner_notification", lambda: notify_location_owner(db, booking)),
        ("payer_notification", lambda: notify_payer(db, booking)),
        ("confirmation_email", lambda: send_confirmation_email(booking, payer_email, settings)),
    ]
    outcome: dict[str, bool] = {}
    for name, step in steps:
        try:
            step()
            outcome[name] = True
        except Exception:  # noqa: BLE001
            logger.exception("Booking side effect failed", extra={"step": name, "booking_id": booking.id})
            outcome[name] = False
    return outcome


__all__ = ["dispatch_booking_confirmed", "notify_location_owner", "notify_payer", "send_confirmation_email"]
