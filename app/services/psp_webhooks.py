"""Services handling Stripe webhook callbacks."""
from __future__ import annotations

import hashlib
import logging
from typing import Any, Mapping, NoReturn

from fastapi import HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.config import get_settings
from app.models.psp_webhook import PSPWebhookEvent
from app.services import payment_records
from app.services.alerts import create_alert
from app.services.payment_processing import process_payment_success
from app.services.psp_stripe import StripeClient
from app.services.signal_verifier import verify_event
from app.utils.errors import (
    IncompleteMetadataError,
    InvalidSignatureError,
    MissingContactError,
    NotVerifiedError,
    PaymentModeMismatchError,
    error_response,
)
from app.utils.time import utcnow

logger = logging.getLogger(__name__)

PROVIDER = "stripe"


def _current_settings():
    return get_settings()


def _masked_secret_status(secrets_info: Mapping[str, str | None]) -> dict[str, str | None]:
    """Return deterministic markers instead of raw secrets for logging."""

    masked: dict[str, str | None] = {}
    for name, secret in secrets_info.items():
        if not secret:
            masked[name] = None
            continue

        digest = hashlib.sha256(secret.encode()).hexdigest()[:8]
        masked[name] = f"sha256:{digest}"
    return masked


def _already_handled(db: Session, event_id: str) -> bool:
    stmt = select(PSPWebhookEvent.id).where(
        PSPWebhookEvent.provider == PROVIDER,
        PSPWebhookEvent.event_id == event_id,
    )
    return db.scalars(stmt).first() is not None


def _record_event(db: Session, event: Mapping[str, Any], *, psp_ref: str | None, outcome: str) -> None:
    row = PSPWebhookEvent(
        provider=PROVIDER,
        event_id=event["id"],
        kind=event.get("type") or "unknown",
        psp_ref=psp_ref,
        outcome=outcome,
        raw_json=dict(event),
        processed_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(row)
    except IntegrityError:
        logger.info("Webhook event recorded concurrently", extra={"event_id": event["id"]})
        return
    db.commit()


def _raise_mode_mismatch(db: Session, exc: PaymentModeMismatchError, payload: bytes) -> NoReturn:
    create_alert(
        db,
        alert_type="PAYMENT_MODE_MISMATCH",
        message="Stripe event live/test mode does not match this deployment.",
        actor_user_id=None,
        payload={**exc.details, "payload_sha256": hashlib.sha256(payload).hexdigest()},
    )
    raise HTTPException(status_code=exc.status_code, detail=exc.to_response()) from exc


async def _handle_payment_succeeded(db: Session, client: StripeClient, intent: Mapping[str, Any]) -> tuple[bool, str]:
    payment_intent_id = intent.get("id")
    if not payment_intent_id:
        return False, "missing_payment_intent"

    try:
        result = await run_in_threadpool(
            process_payment_success,
            db,
            payment_intent_id,
            source="webhook",
            gateway=client,
        )
    except NotVerifiedError as exc:
        logger.warning(
            "Stripe success event not confirmed by gateway; acknowledging",
            extra={"payment_intent_id": payment_intent_id, "details": exc.details},
        )
        return False, "not_verified"
    except IncompleteMetadataError as exc:
        logger.error(
            "Payment recorded without booking: incomplete metadata",
            extra={"payment_intent_id": payment_intent_id, "details": exc.details},
        )
        return False, "incomplete_metadata"
    except MissingContactError:
        logger.error(
            "Payment recorded without booking: payer cannot be identified",
            extra={"payment_intent_id": payment_intent_id},
        )
        return False, "missing_contact"

    return True, "booking_created" if result.created else "booking_exists"


async def handle_stripe_webhook(request: Request, db: Session) -> dict[str, Any]:
    """Authenticate a Stripe delivery and route it into the payment pipeline.

    Any authenticated, parseable event is acknowledged with 200, even when no
    booking results. Only signature problems (400), mode mismatches (401),
    configuration gaps (503) and real system failures (5xx) are not.
    """

    settings = _current_settings()
    if not settings.STRIPE_ENABLED:
        logger.warning("Stripe webhook received while Stripe is disabled")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("STRIPE_DISABLED", "Stripe integration is disabled."),
        )

    payload = await request.body()
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response(
                "STRIPE_SIGNATURE_MISSING", "Stripe-Signature header is required."
            ),
        )

    try:
        client = StripeClient(settings)
        event = verify_event(client, payload, sig_header)
    except RuntimeError as exc:  # configuration issue
        logger.error(
            "Stripe webhook configuration error",
            extra={
                "psp_secret_status": _masked_secret_status(
                    {
                        "primary": settings.STRIPE_WEBHOOK_SECRET,
                        "next": settings.STRIPE_WEBHOOK_SECRET_NEXT,
                    }
                )
            },
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_response("STRIPE_NOT_CONFIGURED", str(exc)),
        )
    except InvalidSignatureError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_response()) from exc
    except PaymentModeMismatchError as exc:
        _raise_mode_mismatch(db, exc, payload)

    event_id = event.get("id")
    event_type = event.get("type") or ""
    if not event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("MISSING_EVENT_ID", "Stripe event id is missing."),
        )

    logger.info("Stripe webhook received", extra={"event_type": event_type, "event_id": event_id})

    if _already_handled(db, event_id):
        logger.info("Duplicate Stripe event acknowledged", extra={"event_id": event_id})
        return {"received": True, "duplicate": True}

    obj = (event.get("data") or {}).get("object") or {}
    psp_ref = obj.get("id")
    processed = False

    if event_type == "payment_intent.succeeded":
        processed, outcome = await _handle_payment_succeeded(db, client, obj)
    elif event_type == "payment_intent.payment_failed":
        updated = payment_records.mark_payment_failed(db, payment_intent_id=psp_ref) if psp_ref else 0
        processed, outcome = True, f"failed:{updated}"
    elif event_type == "charge.refunded":
        payment = payment_records.mark_refunded(db, charge_id=psp_ref) if psp_ref else None
        processed, outcome = payment is not None, "refunded" if payment is not None else "unknown_charge"
    else:
        logger.info("Unhandled Stripe event type", extra={"event_type": event_type})
        outcome = "ignored"

    _record_event(db, event, psp_ref=psp_ref, outcome=outcome)
    logger.info(
        "Stripe webhook processed",
        extra={"event_id": event_id, "event_type": event_type, "outcome": outcome},
    )
    response: dict[str, Any] = {"received": True, "processed": processed}
    if not processed:
        response["reason"] = outcome
    return response


__all__ = ["handle_stripe_webhook"]
