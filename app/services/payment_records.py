"""Payment record store: one verified gateway charge, one payment row."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Payment, PaymentStatus, User, UserRole
from app.utils.audit import log_audit
from app.utils.time import utcnow

logger = logging.getLogger(__name__)


def get_by_charge_id(db: Session, charge_id: str) -> Payment | None:
    stmt = select(Payment).where(Payment.charge_id == charge_id).limit(1)
    return db.scalars(stmt).first()


def get_latest_for_intent(db: Session, payment_intent_id: str) -> Payment | None:
    """Return the most recent payment recorded for a payment intent."""

    stmt = (
        select(Payment)
        .where(Payment.payment_intent_id == payment_intent_id)
        .order_by(Payment.id.desc())
        .limit(1)
    )
    return db.scalars(stmt).first()


def _merge_observation(
    payment: Payment, *, metadata: dict[str, Any] | None, billing_email: str | None
) -> bool:
    changed = False
    if metadata and not payment.booking_metadata:
        payment.booking_metadata = dict(metadata)
        changed = True
    if billing_email and not payment.billing_email:
        payment.billing_email = billing_email
        changed = True
    return changed


def _reopen_failed(db: Session, payment: Payment, *, source: str) -> bool:
    """A failure signal that arrived before the gateway confirmed the charge is superseded."""

    if payment.status != PaymentStatus.FAILED or not payment.can_transition_to(PaymentStatus.PROCESSING):
        return False
    payment.status = PaymentStatus.PROCESSING
    log_audit(
        db,
        actor=source,
        action="PAYMENT_REOPENED",
        entity="Payment",
        entity_id=payment.id,
        data={"charge_id": payment.charge_id, "previous_status": PaymentStatus.FAILED.value},
    )
    logger.warning(
        "Failed payment confirmed as succeeded by gateway; reopening",
        extra={"payment_id": payment.id, "charge_id": payment.charge_id, "source": source},
    )
    return True


def upsert_verified_payment(
    db: Session,
    *,
    charge_id: str,
    amount: Decimal,
    currency: str,
    payment_intent_id: str,
    livemode: bool = False,
    metadata: dict[str, Any] | None = None,
    billing_email: str | None = None,
    source: str = "system",
) -> tuple[Payment, bool]:
    """Insert the payment for ``charge_id`` or return the row that already holds it.

    Safe under concurrent callers: the insert runs in a SAVEPOINT guarded by
    ``uq_payments_charge_id`` and a losing writer re-reads the winner. Later
    observations only fill fields that are still empty.
    """

    existing = get_by_charge_id(db, charge_id)
    if existing is not None:
        changed = _merge_observation(existing, metadata=metadata, billing_email=billing_email)
        changed = _reopen_failed(db, existing, source=source) or changed
        if changed:
            db.commit()
        logger.info(
            "Reusing recorded payment",
            extra={"payment_id": existing.id, "charge_id": charge_id, "source": source},
        )
        return existing, False

    payment = Payment(
        charge_id=charge_id,
        payment_intent_id=payment_intent_id,
        amount=amount,
        currency=currency.upper(),
        status=PaymentStatus.PROCESSING,
        livemode=livemode,
        booking_metadata=dict(metadata or {}),
        billing_email=billing_email,
    )
    try:
        with db.begin_nested():
            db.add(payment)
    except IntegrityError:
        winner = get_by_charge_id(db, charge_id)
        if winner is None:
            raise
        if _reopen_failed(db, winner, source=source):
            db.commit()
        logger.info(
            "Concurrent payment insert lost the race; using stored row",
            extra={"payment_id": winner.id, "charge_id": charge_id, "source": source},
        )
        return winner, False

    log_audit(
        db,
        actor=source,
        action="PAYMENT_RECORDED",
        entity="Payment",
        entity_id=payment.id,
        data={
            "charge_id": charge_id,
            "payment_intent_id": payment_intent_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
        },
    )
    db.commit()
    logger.info(
        "Verified payment recorded",
        extra={"payment_id": payment.id, "charge_id": charge_id, "source": source},
    )
    return payment, True


def attach_owner(db: Session, payment: Payment, user_id: int, *, authoritative: bool = False) -> bool:
    """Set the payment owner. Returns ``True`` when the owner changed.

    An empty owner is always filled. A different owner is only replaced by an
    authoritative (session-based) resolution, and only when the current owner is
    a synthesized guest account.
    """

    if payment.user_id == user_id:
        return False

    previous = payment.user_id
    if previous is not None:
        if not authoritative:
            return False
        current_owner = db.get(User, previous)
        if current_owner is not None and current_owner.role != UserRole.GUEST:
            logger.warning(
                "Refusing to reassign payment owned by a registered user",
                extra={"payment_id": payment.id, "current_user_id": previous, "user_id": user_id},
            )
            return False

    payment.user_id = user_id
    log_audit(
        db,
        actor="system",
        action="PAYMENT_OWNER_ATTACHED",
        entity="Payment",
        entity_id=payment.id,
        data={"previous_user_id": previous, "user_id": user_id, "authoritative": authoritative},
    )
    db.commit()
    logger.info(
        "Payment owner attached",
        extra={"payment_id": payment.id, "user_id": user_id, "previous_user_id": previous},
    )
    return True


def mark_payment_failed(db: Session, *, payment_intent_id: str) -> int:
    """Fail every not-yet-completed payment of an intent. Completed payments never move back."""

    stmt = select(Payment).where(Payment.payment_intent_id == payment_intent_id)
    updated = 0
    for payment in db.scalars(stmt):
        if payment.status == PaymentStatus.FAILED:
            continue
        if not payment.can_transition_to(PaymentStatus.FAILED):
            logger.info(
                "Ignoring failure signal for settled payment",
                extra={"payment_id": payment.id, "status": payment.status.value},
            )
            continue
        payment.status = PaymentStatus.FAILED
        log_audit(
            db,
            actor="psp",
            action="PAYMENT_FAILED",
            entity="Payment",
            entity_id=payment.id,
            data={"payment_intent_id": payment_intent_id},
        )
        updated += 1

    if updated:
        db.commit()
    logger.info(
        "Stripe payment failure processed",
        extra={"payment_intent_id": payment_intent_id, "updated": updated},
    )
    return updated


def mark_refunded(db: Session, *, charge_id: str) -> Payment | None:
    payment = get_by_charge_id(db, charge_id)
    if payment is None:
        logger.info("Refund for unknown charge", extra={"charge_id": charge_id})
        return None
    if payment.status == PaymentStatus.REFUNDED:
        return payment
    if not payment.can_transition_to(PaymentStatus.REFUNDED):
        logger.warning(
            "Refund signal for payment that never completed",
            extra={"payment_id": payment.id, "status": payment.status.value},
        )
        return payment

    payment.status = PaymentStatus.REFUNDED
    log_audit(
        db,
        actor="psp",
        action="PAYMENT_REFUNDED",
        entity="Payment",
        entity_id=payment.id,
        data={"charge_id": charge_id},
    )
    db.commit()
    logger.info("Payment marked as refunded", extra={"payment_id": payment.id})
    return payment


def mark_completed(db: Session, payment: Payment) -> None:
    """Flag the payment as fully processed; the caller commits."""

    if payment.status == PaymentStatus.COMPLETED:
        return
    if not payment.can_transition_to(PaymentStatus.COMPLETED):
        logger.warning(
            "Payment cannot be completed from its current status",
            extra={"payment_id": payment.id, "status": payment.status.value},
        )
        return
    payment.status = PaymentStatus.COMPLETED
    payment.completed_at = utcnow()
    payment.booking_error = None


__all__ = [
    "attach_owner",
    "get_by_charge_id",
    "get_latest_for_intent",
    "mark_completed",
    "mark_payment_failed",
    "mark_refunded",
    "upsert_verified_payment",
]
