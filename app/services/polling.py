"""Client-side polling loop used right after checkout.

It waits a bounded time for the webhook to materialize the booking and falls
back to the confirmation endpoint once, so a lost webhook never strands a payer.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

OUTCOME_CONFIRMED = "confirmed"
OUTCOME_FAILED = "failed"
OUTCOME_SUPPORT = "support"
OUTCOME_PENDING = "pending"

PENDING_MESSAGE = "Your payment was received but the booking is still pending. Please contact support."


def _error_code(response: httpx.Response) -> str | None:
    # Proxies answer with HTML error pages.
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    return (payload.get("error") or {}).get("code")


@dataclass(frozen=True)
class PollOutcome:
    status: str
    booking: dict[str, Any] | None = None
    created: bool = False
    attempts: int = 0
    message: str | None = None


class BookingPoller:
    """Bounded poll of ``GET /payments/{id}`` with a single ``process-success`` fallback."""

    def __init__(
        self,
        base_url: str,
        *,
        max_attempts: int = 5,
        interval_seconds: float = 1.0,
        session_token: str | None = None,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        headers = {"Authorization": f"Bearer {session_token}"} if session_token else None
        self._client = client or httpx.Client(base_url=base_url, timeout=10.0, headers=headers)
        self.max_attempts = max(max_attempts, 1)
        self.interval_seconds = max(interval_seconds, 0.0)
        self._sleep = sleep

    def _fetch_state(self, payment_intent_id: str) -> dict[str, Any] | None:
        try:
            response = self._client.get(f"/payments/{payment_intent_id}")
        except httpx.TransportError as exc:
            logger.warning("Payment state poll failed", extra={"payment_intent_id": payment_intent_id, "error": str(exc)})
            return None
        if response.status_code != httpx.codes.OK:
            logger.info(
                "Payment state not available yet",
                extra={"payment_intent_id": payment_intent_id, "status_code": response.status_code},
            )
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Payment state response was not JSON", extra={"payment_intent_id": payment_intent_id})
            return None

    def _confirm(self, payment_intent_id: str, customer_email: str | None, attempts: int) -> PollOutcome:
        body = {"customer_email": customer_email} if customer_email else {}
        try:
            response = self._client.post(f"/payments/{payment_intent_id}/process-success", json=body)
        except httpx.TransportError as exc:
            logger.warning("Booking confirmation fallback failed", extra={"error": str(exc)})
            return PollOutcome(status=OUTCOME_PENDING, attempts=attempts, message=PENDING_MESSAGE)

        if response.status_code == httpx.codes.OK:
            data = response.json()
            return PollOutcome(
                status=OUTCOME_CONFIRMED,
                booking=data.get("booking"),
                created=bool(data.get("created")),
                attempts=attempts,
            )

        code = _error_code(response)
        logger.warning(
            "Booking confirmation fallback rejected",
            extra={"payment_intent_id": payment_intent_id, "status_code": response.status_code, "code": code},
        )
        if code == "INCOMPLETE_BOOKING_METADATA":
            return PollOutcome(status=OUTCOME_SUPPORT, attempts=attempts, message=PENDING_MESSAGE)
        return PollOutcome(status=OUTCOME_PENDING, attempts=attempts, message=PENDING_MESSAGE)

    def poll(self, payment_intent_id: str, *, customer_email: str | None = None) -> PollOutcome:
        verified = False
        attempts = 0
        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            state = self._fetch_state(payment_intent_id)
            if state is not None:
                action = state.get("next_action")
                if action == "done":
                    return PollOutcome(status=OUTCOME_CONFIRMED, booking=state.get("booking"), attempts=attempt)
                if action == "failed":
                    return PollOutcome(status=OUTCOME_FAILED, attempts=attempt, message="Payment failed.")
                if action == "contact_support":
                    return PollOutcome(status=OUTCOME_SUPPORT, attempts=attempt, message=PENDING_MESSAGE)
                verified = verified or state.get("payment") is not None or state.get("gateway_status") == "succeeded"
            if attempt < self.max_attempts:
                self._sleep(self.interval_seconds)

        if verified:
            logger.info("Webhook did not book in time; confirming directly", extra={"payment_intent_id": payment_intent_id})
            return self._confirm(payment_intent_id, customer_email, attempts)
        return PollOutcome(status=OUTCOME_PENDING, attempts=attempts, message=PENDING_MESSAGE)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BookingPoller":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = [
    "BookingPoller",
    "OUTCOME_CONFIRMED",
    "OUTCOME_FAILED",
    "OUTCOME_PENDING",
    "OUTCOME_SUPPORT",
    "PollOutcome",
]
