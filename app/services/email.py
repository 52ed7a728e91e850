"""Transactional email delivery (SendGrid HTTP API or SMTP)."""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import httpx

from app.config import Settings, get_settings
from app.models import Booking

logger = logging.getLogger(__name__)

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def guest_bookings_link(settings: Settings, email: str, charge_id: str) -> str:
    query = urlencode({"email": email, "chargeId": charge_id})
    return f"{settings.APP_PUBLIC_URL.rstrip('/')}/guest/bookings?{query}"


def render_booking_confirmation(booking: Booking, *, payer_email: str, settings: Settings) -> tuple[str, str]:
    """Return ``(subject, body)`` for the booking confirmation email."""

    tz = ZoneInfo(settings.BOOKING_TIMEZONE)
    start = booking.start_at.astimezone(tz)
    end = booking.end_at.astimezone(tz)
    box = booking.box
    location = box.location if box is not None else None
    payment = booking.payment

    lines = [
        "Your storage box is booked.",
        "",
        f"Location: {location.name if location else '-'}",
        f"Compartment: {box.label or box.code if box else '-'}",
        f"From: {start:%Y-%m-%d %H:%M}",
        f"To: {end:%Y-%m-%d %H:%M}",
        f"Access PIN: {booking.lock_pin}",
        f"Amount paid: {booking.total_amount} {payment.currency if payment else ''}".rstrip(),
        "",
        f"View your booking: {guest_bookings_link(settings, payer_email, payment.charge_id if payment else '')}",
    ]
    if settings.SUPPORT_URL:
        lines.append(f"Need help? {settings.SUPPORT_URL}")
    return f"Booking confirmed: {start:%d %b %Y}", "\n".join(lines)


def _send_via_sendgrid(settings: Settings, to_email: str, subject: str, body: str) -> None:
    payload = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": settings.EMAIL_FROM},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    response = httpx.post(
        SENDGRID_URL,
        json=payload,
        headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
        timeout=20,
    )
    response.raise_for_status()


def _send_via_smtp(settings: Settings, to_email: str, subject: str, body: str) -> None:
    if not settings.SMTP_HOST:
        raise RuntimeError("SMTP_HOST is not configured")
    msg = EmailMessage()
    msg["From"] = settings.EMAIL_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USERNAME:
            smtp.starttls()
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD or "")
        smtp.send_message(msg)


def send_email(to_email: str, subject: str, body: str, *, settings: Settings | None = None) -> bool:
    """Send one email. Returns ``False`` when delivery is disabled, raises on transport errors."""

    settings = settings or get_settings()
    if not settings.EMAIL_ENABLED:
        logger.info("Email delivery disabled; skipping", extra={"subject": subject})
        return False
    if settings.SENDGRID_API_KEY:
        _send_via_sendgrid(settings, to_email, subject, body)
    else:
        _send_via_smtp(settings, to_email, subject, body)
    logger.info("Email sent", extra={"subject": subject})
    return True


__all__ = ["guest_bookings_link", "render_booking_confirmation", "send_email"]
