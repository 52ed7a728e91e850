"""Shared core behind every entry point: verify, record, identify, book, notify."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.models import Booking, Payment, PaymentStatus
from app.services import payment_records
from app.services.access_control import PinProvider
from app.services.bookings import get_booking_for_payment, materialize
from app.services.identity import SessionIdentity, normalize_email, resolve_owner
from app.services.notifications import dispatch_booking_confirmed
from app.services.psp_stripe import StripeClient
from app.services.signal_verifier import VerifiedCharge, confirm_charge, gateway_status
from app.utils.errors import MissingContactError, PaymentNotFoundError

logger = logging.getLogger(__name__)

NEXT_ACTION_DONE = "done"
NEXT_ACTION_WAIT = "wait"
NEXT_ACTION_CONFIRM = "confirm"
NEXT_ACTION_SUPPORT = "contact_support"
NEXT_ACTION_FAILED = "failed"

_FAILED_GATEWAY_STATUSES = {"canceled"}


@dataclass(frozen=True)
class ProcessingResult:
    payment: Payment
    booking: Booking
    created: bool


def _resolve_and_attach(
    db: Session,
    payment: Payment,
    charge: VerifiedCharge,
    *,
    session: SessionIdentity | None,
    provided_email: str | None,
) -> None:
    """Attach the payer. Missing contact data is fatal only while the payment has no owner."""

    try:
        owner = resolve_owner(db, session=session, provided_email=provided_email, billing=charge.billing)
    except MissingContactError:
        if payment.user_id is not None:
            return
        logger.warning(
            "Cannot identify payer for verified payment",
            extra={"payment_id": payment.id, "charge_id": payment.charge_id},
        )
        raise
    payment_records.attach_owner(db, payment, owner.user.id, authoritative=owner.authoritative)


def _payer_email(payment: Payment, charge: VerifiedCharge, provided_email: str | None) -> str | None:
    for candidate in (provided_email, charge.billing.email, charge.billing.metadata_email):
        email = normalize_email(candidate)
        if email:
            return email
    return payment.user.email if payment.user is not None else None


def process_payment_success(
    db: Session,
    payment_intent_id: str,
    *,
    session: SessionIdentity | None = None,
    provided_email: str | None = None,
    source: str = "api",
    gateway: StripeClient | None = None,
    pin_provider: PinProvider | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> ProcessingResult:
    """Turn a "payment succeeded" signal into exactly one booking.

    Every entry point (webhook, client confirmation, poller fallback, sweeper)
    calls this with the same guarantees; it may run any number of times and in
    any order for the same payment.
    """

    settings = settings or get_settings()
    gateway = gateway or StripeClient(settings)

    charge = confirm_charge(gateway, payment_intent_id)
    payment, _ = payment_records.upsert_verified_payment(
        db,
        charge_id=charge.charge_id,
        amount=charge.amount,
        currency=charge.currency,
        payment_intent_id=charge.payment_intent_id,
        livemode=charge.livemode,
        metadata=charge.metadata,
        billing_email=normalize_email(charge.billing.email or charge.billing.metadata_email),
        source=source,
    )

    existing = get_booking_for_payment(db, payment.id)
    if existing is not None:
        # Already booked: only fix up ownership, never create or notify again.
        _resolve_and_attach(db, payment, charge, session=session, provided_email=provided_email)
        result = materialize(db, payment, pin_provider=pin_provider, now=now, settings=settings)
        logger.info(
            "Payment already booked",
            extra={"payment_id": payment.id, "booking_id": result.booking.id, "source": source},
        )
        return ProcessingResult(payment=payment, booking=result.booking, created=False)

    _resolve_and_attach(db, payment, charge, session=session, provided_email=provided_email)
    result = materialize(db, payment, pin_provider=pin_provider, now=now, settings=settings)

    if result.created:
        dispatch_booking_confirmed(
            db,
            result.booking,
            payer_email=_payer_email(payment, charge, provided_email),
            settings=settings,
        )
    logger.info(
        "Payment processed",
        extra={
            "payment_id": payment.id,
            "booking_id": result.booking.id,
            "booking_created": result.created,
            "source": source,
        },
    )
    return ProcessingResult(payment=payment, booking=result.booking, created=result.created)


def _next_action(payment: Payment | None, booking: Booking | None, status: str | None) -> str:
    if booking is not None:
        return NEXT_ACTION_DONE
    if payment is not None:
        if payment.status in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            return NEXT_ACTION_FAILED
        if payment.booking_error:
            return NEXT_ACTION_SUPPORT
        return NEXT_ACTION_WAIT
    if status == "succeeded":
        return NEXT_ACTION_CONFIRM
    if status in _FAILED_GATEWAY_STATUSES:
        return NEXT_ACTION_FAILED
    return NEXT_ACTION_WAIT


def get_payment_state(
    db: Session,
    payment_intent_id: str,
    *,
    gateway: StripeClient | None = None,
) -> dict[str, Any]:
    """Read-only view used by pollers. Never creates or updates anything.

    The gateway is only consulted while no payment row exists yet; otherwise
    ``gateway_status`` is ``None`` and the recorded payment status applies.
    """

    payment = payment_records.get_latest_for_intent(db, payment_intent_id)
    booking = get_booking_for_payment(db, payment.id) if payment is not None else None

    status: str | None = None
    if payment is None:
        status = gateway_status(gateway or StripeClient.from_env(), payment_intent_id)
        if status is None:
            raise PaymentNotFoundError(
                "Unknown payment.", details={"payment_intent_id": payment_intent_id}
            )

    return {
        "payment_intent_id": payment_intent_id,
        "gateway_status": status,
        "payment": payment,
        "booking": booking,
        "booking_exists": booking is not None,
        "next_action": _next_action(payment, booking, status),
    }


__all__ = [
    "NEXT_ACTION_CONFIRM",
    "NEXT_ACTION_DONE",
    "NEXT_ACTION_FAILED",
    "NEXT_ACTION_SUPPORT",
    "NEXT_ACTION_WAIT",
    "ProcessingResult",
    "get_payment_state",
    "process_payment_success",
]
