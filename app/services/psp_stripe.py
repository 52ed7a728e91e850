"""Stripe SDK wrapper for payment-intent lookups and webhook verification."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

import stripe

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Expansions needed to read the charge id and billing contact in one round trip.
PAYMENT_INTENT_EXPAND = ["payment_method", "latest_charge", "customer"]


def _from_cents(amount: int | None) -> Decimal:
    """Convert Stripe's smallest currency unit to a major-unit decimal."""

    return (Decimal(int(amount or 0)) / Decimal("100")).quantize(Decimal("0.01"))


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


def _object_id(value: Any) -> str | None:
    """Return the id of an expandable field, whether it was expanded or not."""

    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return value.get("id")
    return None


@dataclass(frozen=True)
class BillingDetails:
    """Contact data gathered from a payment intent, in precedence order."""

    email: str | None = None
    metadata_email: str | None = None
    name: str | None = None
    phone: str | None = None
    address: dict[str, Any] | None = field(default=None)


def extract_billing_details(intent: Mapping[str, Any]) -> BillingDetails:
    """Collect payer contact data from an (expanded) payment intent.

    Email precedence: ``receipt_email``, then the payment method's billing details,
    then the latest charge's billing details. The checkout's ``customerEmail``
    metadata is kept apart as the last-resort fallback.
    """

    metadata = intent.get("metadata") or {}
    payment_method = intent.get("payment_method")
    pm_billing = (payment_method.get("billing_details") or {}) if isinstance(payment_method, Mapping) else {}
    charge = intent.get("latest_charge")
    charge_billing = (charge.get("billing_details") or {}) if isinstance(charge, Mapping) else {}

    email = intent.get("receipt_email") or pm_billing.get("email") or charge_billing.get("email")
    name = pm_billing.get("name") or charge_billing.get("name") or metadata.get("customerName")
    phone = pm_billing.get("phone") or charge_billing.get("phone") or metadata.get("customerPhone")
    address = pm_billing.get("address") or charge_billing.get("address")

    return BillingDetails(
        email=email or None,
        metadata_email=metadata.get("customerEmail") or None,
        name=name or None,
        phone=phone or None,
        address=dict(address) if address else None,
    )


class StripeClient:
    """Wrapper around the Stripe Python SDK to isolate PSP concerns."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._ensure_enabled()
        self._secret_key = settings.STRIPE_SECRET_KEY
        if not self._secret_key:
            raise RuntimeError("Stripe secret key is missing; configure STRIPE_SECRET_KEY.")

        stripe.api_key = self._secret_key

    @classmethod
    def from_env(cls) -> "StripeClient":
        """Instantiate a client using the cached application settings."""

        return cls(get_settings())

    def _ensure_enabled(self) -> None:
        if not self.settings.STRIPE_ENABLED:
            raise RuntimeError("Stripe integration is disabled; enable STRIPE_ENABLED to proceed.")

    @property
    def live_mode(self) -> bool:
        return self.settings.stripe_live_mode

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any] | None:
        """Fetch the authoritative intent state, or ``None`` when Stripe does not know it.

        Transport and server errors propagate so callers can answer with a retryable failure.
        """

        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id, expand=PAYMENT_INTENT_EXPAND)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                logger.info("Stripe payment intent not found", extra={"payment_intent_id": payment_intent_id})
                return None
            raise
        return _as_dict(intent)

    def verify_webhook(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify signature and freshness against the active secrets and decode the event.

        Raises ``stripe.SignatureVerificationError`` when no configured secret matches.
        """

        secrets = self.settings.stripe_webhook_secrets
        if not secrets:
            raise RuntimeError(
                "Stripe webhook secret is missing; configure STRIPE_WEBHOOK_SECRET for verification."
            )

        body = payload.decode("utf-8")
        last_error: stripe.SignatureVerificationError | None = None
        for secret in secrets:
            try:
                stripe.WebhookSignature.verify_header(
                    body,
                    sig_header,
                    secret,
                    tolerance=self.settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
                )
                break
            except stripe.SignatureVerificationError as exc:
                last_error = exc
        else:
            assert last_error is not None
            raise last_error

        return json.loads(body)


def charge_id_of(intent: Mapping[str, Any]) -> str | None:
    return _object_id(intent.get("latest_charge"))


def intent_amount(intent: Mapping[str, Any]) -> Decimal:
    return _from_cents(intent.get("amount_received") or intent.get("amount"))


__all__ = [
    "BillingDetails",
    "PAYMENT_INTENT_EXPAND",
    "StripeClient",
    "charge_id_of",
    "extract_billing_details",
    "intent_amount",
]
