"""Authenticity checks applied before any payment state is touched."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

import stripe

from app.config import Settings
from app.services.psp_stripe import (
    BillingDetails,
    StripeClient,
    charge_id_of,
    extract_billing_details,
    intent_amount,
)
from app.utils.errors import (
    InvalidSignatureError,
    NotVerifiedError,
    PaymentModeMismatchError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedCharge:
    """A charge the gateway itself reported as succeeded with a positive amount."""

    payment_intent_id: str
    charge_id: str
    amount: Decimal
    currency: str
    livemode: bool
    metadata: dict[str, Any] = field(default_factory=dict)
    billing: BillingDetails = field(default_factory=BillingDetails)


def ensure_mode_matches(settings: Settings, livemode: bool | None, *, reference: str | None = None) -> None:
    """Reject signals whose live/test flag disagrees with this deployment."""

    server_live = settings.stripe_live_mode
    if livemode is None or bool(livemode) == server_live:
        return
    logger.error(
        "Stripe live/test mode mismatch",
        extra={"server_livemode": server_live, "event_livemode": bool(livemode), "reference": reference},
    )
    raise PaymentModeMismatchError(
        "Payment mode does not match this deployment.",
        details={"server_livemode": server_live, "event_livemode": bool(livemode)},
    )


def verify_event(client: StripeClient, payload: bytes, sig_header: str) -> dict[str, Any]:
    """Authenticate a raw webhook delivery and return the decoded event.

    Signature, timestamp freshness and live/test mode are all enforced here.
    """

    try:
        event = client.verify_webhook(payload, sig_header)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe signature verification failed", extra={"reason": str(exc)})
        raise InvalidSignatureError("Invalid Stripe signature.") from exc
    except ValueError as exc:
        logger.warning("Stripe webhook payload is not valid JSON")
        raise InvalidSignatureError("Invalid Stripe webhook payload.") from exc

    ensure_mode_matches(client.settings, event.get("livemode"), reference=event.get("id"))
    return event


def confirm_charge(client: StripeClient, payment_intent_id: str) -> VerifiedCharge:
    """Re-read the intent from Stripe and accept it only if it is a real, positive success.

    Event bodies and client claims are never trusted for this decision.
    """

    intent = client.retrieve_payment_intent(payment_intent_id)
    if intent is None:
        raise NotVerifiedError(
            "Payment intent is unknown to the gateway.",
            details={"payment_intent_id": payment_intent_id},
        )

    status = intent.get("status")
    if status != "succeeded":
        raise NotVerifiedError(
            "Payment has not succeeded.",
            details={"payment_intent_id": payment_intent_id, "gateway_status": status},
        )

    amount = intent_amount(intent)
    if amount <= 0:
        raise NotVerifiedError(
            "Payment amount must be positive.",
            details={"payment_intent_id": payment_intent_id},
        )

    charge_id = charge_id_of(intent)
    if not charge_id:
        raise NotVerifiedError(
            "Payment has no settled charge yet.",
            details={"payment_intent_id": payment_intent_id},
        )

    ensure_mode_matches(client.settings, intent.get("livemode"), reference=payment_intent_id)

    currency = (intent.get("currency") or client.settings.DEFAULT_CURRENCY).upper()
    return VerifiedCharge(
        payment_intent_id=payment_intent_id,
        charge_id=charge_id,
        amount=amount,
        currency=currency,
        livemode=bool(intent.get("livemode")),
        metadata=dict(intent.get("metadata") or {}),
        billing=extract_billing_details(intent),
    )


def gateway_status(client: StripeClient, payment_intent_id: str) -> str | None:
    """Return the raw gateway status for read-only polling, ``None`` if unknown."""

    intent: Mapping[str, Any] | None = client.retrieve_payment_intent(payment_intent_id)
    if intent is None:
        return None
    return intent.get("status")


__all__ = ["VerifiedCharge", "confirm_charge", "ensure_mode_matches", "gateway_status", "verify_event"]
