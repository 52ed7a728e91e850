"""Booking materialization: at most one booking per verified payment."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.models import SETTLED_BOOKING_STATUSES, Booking, BookingStatus, Box, Payment, PaymentStatus
from app.services import payment_records
from app.services.access_control import PinProvider, get_pin_provider, issue_pin
from app.utils.audit import log_audit
from app.utils.errors import ConflictRetry, IncompleteMetadataError, MissingContactError, NotVerifiedError
from app.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_START_TIME = "00:00"
DEFAULT_END_TIME = "23:59"

UNBOOKABLE_PAYMENT_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.REFUNDED})


@dataclass(frozen=True)
class BookingParams:
    box_code: str
    start_at: datetime
    end_at: datetime
    total_amount: Decimal


@dataclass(frozen=True)
class MaterializeResult:
    booking: Booking
    created: bool


def get_booking_for_payment(db: Session, payment_id: int) -> Booking | None:
    stmt = select(Booking).where(Booking.payment_id == payment_id).limit(1)
    return db.scalars(stmt).first()


def _parse_moment(day_value: Any, time_value: Any, default_time: str, tz: ZoneInfo, field: str) -> datetime:
    text = str(day_value).strip()
    try:
        day = date.fromisoformat(text[:10])
        clock = time.fromisoformat(str(time_value or default_time).strip())
    except ValueError as exc:
        raise IncompleteMetadataError(
            f"Booking metadata field '{field}' is not a valid date/time.",
            details={"field": field, "value": text},
        ) from exc
    return datetime.combine(day, clock, tzinfo=tz)


def _parse_amount(value: Any, fallback: Decimal) -> Decimal:
    if value in (None, ""):
        return fallback
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except InvalidOperation:
        logger.warning("Ignoring unparseable booking amount", extra={"amount": str(value)})
        return fallback
    return amount if amount > 0 else fallback


def extract_booking_params(
    metadata: Mapping[str, Any] | None,
    *,
    fallback_amount: Decimal,
    tz_name: str,
) -> BookingParams:
    """Read compartment, window and price from checkout metadata.

    ``startDate``/``endDate`` are local dates in ``tz_name``; ``startTime`` and
    ``endTime`` default to the whole day. ``amount`` is in major units and falls
    back to the charged amount.
    """

    metadata = metadata or {}
    missing = [key for key in ("boxId", "startDate", "endDate") if not metadata.get(key)]
    if missing:
        raise IncompleteMetadataError(
            "Payment is missing booking metadata.",
            details={"missing": missing},
        )

    tz = ZoneInfo(tz_name)
    start_at = _parse_moment(metadata["startDate"], metadata.get("startTime"), DEFAULT_START_TIME, tz, "startDate")
    end_at = _parse_moment(metadata["endDate"], metadata.get("endTime"), DEFAULT_END_TIME, tz, "endDate")
    if end_at <= start_at:
        raise IncompleteMetadataError(
            "Booking end must be after its start.",
            details={"start_at": start_at.isoformat(), "end_at": end_at.isoformat()},
        )

    return BookingParams(
        box_code=str(metadata["boxId"]).strip(),
        start_at=start_at,
        end_at=end_at,
        total_amount=_parse_amount(metadata.get("amount"), fallback_amount),
    )


def initial_booking_status(start_at: datetime, now: datetime) -> BookingStatus:
    """New bookings are Active when their window has already opened, Confirmed otherwise."""

    if ensure_utc(start_at) <= ensure_utc(now):
        return BookingStatus.ACTIVE
    return BookingStatus.CONFIRMED


def _resolve_box(db: Session, box_code: str) -> Box:
    box = db.scalars(select(Box).where(Box.code == box_code).limit(1)).first()
    if box is None:
        raise IncompleteMetadataError(
            "Booking metadata references an unknown compartment.",
            details={"box_code": box_code},
        )
    return box


def record_booking_error(db: Session, payment: Payment, error: IncompleteMetadataError) -> None:
    """Persist the terminal metadata failure on the payment so sweepers skip it."""

    reason = f"{error.code}: {error.message}"[:255]
    if payment.booking_error == reason:
        return
    payment.booking_error = reason
    log_audit(
        db,
        actor="system",
        action="BOOKING_METADATA_INVALID",
        entity="Payment",
        entity_id=payment.id,
        data={"reason": error.message, "details": error.details},
    )
    db.commit()


def _insert_booking(db: Session, booking: Booking) -> None:
    try:
        with db.begin_nested():
            db.add(booking)
    except IntegrityError as exc:
        raise ConflictRetry("Booking already created for this payment.") from exc


def materialize(
    db: Session,
    payment: Payment,
    *,
    pin_provider: PinProvider | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> MaterializeResult:
    """Create the booking for ``payment`` unless one already exists.

    Exactly one caller observes ``created=True`` per payment, however many
    entry points race: the insert is guarded by ``uq_bookings_payment_id`` and
    the loser returns the winner's row.
    """

    settings = settings or get_settings()
    existing = get_booking_for_payment(db, payment.id)
    if existing is not None:
        if existing.status in SETTLED_BOOKING_STATUSES:
            payment_records.mark_completed(db, payment)
            db.commit()
        return MaterializeResult(booking=existing, created=False)

    if payment.status in UNBOOKABLE_PAYMENT_STATUSES:
        raise NotVerifiedError(
            "Payment is not in a bookable state.",
            details={"payment_id": payment.id, "status": payment.status.value},
        )

    if payment.user_id is None:
        raise MissingContactError(
            "Payment has no owner; resolve the payer before booking.",
            details={"payment_id": payment.id},
        )

    try:
        params = extract_booking_params(
            payment.booking_metadata,
            fallback_amount=payment.amount,
            tz_name=settings.BOOKING_TIMEZONE,
        )
        box = _resolve_box(db, params.box_code)
    except IncompleteMetadataError as exc:
        logger.error(
            "Booking metadata invalid; payment recorded without booking",
            extra={"payment_id": payment.id, "charge_id": payment.charge_id, "reason": exc.message},
        )
        record_booking_error(db, payment, exc)
        raise

    provider = pin_provider or get_pin_provider(settings)
    lock_pin = issue_pin(provider, box=box, start_at=params.start_at, end_at=params.end_at, settings=settings)

    booking = Booking(
        payment_id=payment.id,
        box_id=box.id,
        start_at=params.start_at,
        end_at=params.end_at,
        total_amount=params.total_amount,
        status=initial_booking_status(params.start_at, now or utcnow()),
        lock_pin=lock_pin,
    )
    try:
        _insert_booking(db, booking)
    except ConflictRetry as exc:
        winner = get_booking_for_payment(db, payment.id)
        if winner is None:
            raise RuntimeError("Booking insert conflicted but no booking exists") from exc
        logger.info(
            "Concurrent booking insert lost the race; using stored booking",
            extra={"payment_id": payment.id, "booking_id": winner.id},
        )
        return MaterializeResult(booking=winner, created=False)

    payment_records.mark_completed(db, payment)
    log_audit(
        db,
        actor="system",
        action="BOOKING_CREATED",
        entity="Booking",
        entity_id=booking.id,
        data={
            "payment_id": payment.id,
            "box_code": box.code,
            "start_at": params.start_at.isoformat(),
            "end_at": params.end_at.isoformat(),
            "status": booking.status.value,
        },
    )
    db.commit()
    logger.info(
        "Booking created",
        extra={"booking_id": booking.id, "payment_id": payment.id, "status": booking.status.value},
    )
    return MaterializeResult(booking=booking, created=True)


__all__ = [
    "BookingParams",
    "MaterializeResult",
    "extract_booking_params",
    "get_booking_for_payment",
    "initial_booking_status",
    "materialize",
    "record_booking_error",
]
