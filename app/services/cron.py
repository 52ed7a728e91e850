"""Background jobs run by the scheduler on the lock-holding runner."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

import stripe
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import db as db_module
from app.config import Settings, get_settings
from app.core.runtime_state import record_reconciliation_run
from app.models import Booking, Payment, PaymentStatus
from app.services.payment_processing import process_payment_success
from app.services.psp_stripe import StripeClient
from app.utils.errors import BookingPipelineError
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def find_unbooked_payments(db: Session, *, settings: Settings, now: datetime, limit: int = 50) -> list[Payment]:
    """Verified payments still waiting for a booking and not known to be unbookable."""

    cutoff = now - timedelta(seconds=settings.RECONCILE_GRACE_SECONDS)
    stmt = (
        select(Payment)
        .outerjoin(Booking, Booking.payment_id == Payment.id)
        .where(
            Booking.id.is_(None),
            Payment.status == PaymentStatus.PROCESSING,
            Payment.booking_error.is_(None),
            Payment.reconcile_attempts < settings.RECONCILE_MAX_ATTEMPTS,
            Payment.created_at <= cutoff,
        )
        .order_by(Payment.created_at.asc())
        .limit(limit)
    )
    return list(db.scalars(stmt))


def reconcile_payments(
    db: Session,
    *,
    gateway: StripeClient | None = None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Push stranded payments through the shared pipeline once more."""

    settings = settings or get_settings()
    now = now or utcnow()
    gateway = gateway or StripeClient(settings)
    counts = {"checked": 0, "created": 0, "failed": 0}

    for payment in find_unbooked_payments(db, settings=settings, now=now):
        counts["checked"] += 1
        payment.reconcile_attempts += 1
        db.commit()
        payment_id, attempt = payment.id, payment.reconcile_attempts
        try:
            result = process_payment_success(
                db,
                payment.payment_intent_id,
                source="reconciliation",
                gateway=gateway,
                settings=settings,
            )
        except BookingPipelineError as exc:
            counts["failed"] += 1
            logger.warning(
                "Reconciliation could not book payment",
                extra={"payment_id": payment_id, "code": exc.code, "attempt": attempt},
            )
            continue
        except stripe.StripeError as exc:
            counts["failed"] += 1
            logger.warning(
                "Reconciliation gateway call failed",
                extra={"payment_id": payment_id, "error": str(exc), "attempt": attempt},
            )
            continue
        except SQLAlchemyError:
            db.rollback()
            counts["failed"] += 1
            logger.exception(
                "Reconciliation database error",
                extra={"payment_id": payment_id, "attempt": attempt},
            )
            continue
        if result.created:
            counts["created"] += 1

    record_reconciliation_run(now, counts)
    if counts["checked"]:
        logger.info("Reconciliation sweep finished", extra={"sweep": counts})
    return counts


def reconcile_unbooked_payments_once() -> None:
    """Scheduler entry point: own session, own gateway client."""

    with db_module.session_scope() as session:
        reconcile_payments(session)


__all__ = ["find_unbooked_payments", "reconcile_payments", "reconcile_unbooked_payments_once"]
