"""Resolve exactly one owning user for a payment."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import User, UserRole
from app.services.psp_stripe import BillingDetails
from app.utils.audit import log_audit
from app.utils.errors import MissingContactError

logger = logging.getLogger(__name__)

DEFAULT_GUEST_NAME = "Guest User"


@dataclass(frozen=True)
class SessionIdentity:
    """The authenticated caller, handed in explicitly by the HTTP layer."""

    user_id: int
    email: str | None = None


@dataclass(frozen=True)
class ResolvedOwner:
    user: User
    source: str
    authoritative: bool = False


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip().lower()
    if "@" not in cleaned:
        return None
    return cleaned


def get_user_by_email(db: Session, email: str) -> User | None:
    stmt = select(User).where(User.email == email).limit(1)
    return db.scalars(stmt).first()


def find_or_create_guest_user(
    db: Session,
    email: str,
    name: str | None = None,
    phone: str | None = None,
    address: dict[str, Any] | None = None,
) -> User:
    """Return the user registered under ``email``, creating a guest account if needed.

    Idempotent on the email: concurrent callers converge on the same row through
    the unique index on ``users.email``.
    """

    normalized = normalize_email(email)
    if normalized is None:
        raise MissingContactError("A valid email is required to create a guest user.")

    existing = get_user_by_email(db, normalized)
    if existing is not None:
        return existing

    user = User(
        email=normalized,
        full_name=name or DEFAULT_GUEST_NAME,
        phone=phone,
        billing_address=address,
        role=UserRole.GUEST,
    )
    try:
        with db.begin_nested():
            db.add(user)
    except IntegrityError:
        winner = get_user_by_email(db, normalized)
        if winner is None:
            raise
        return winner

    log_audit(
        db,
        actor="system",
        action="GUEST_USER_CREATED",
        entity="User",
        entity_id=user.id,
        data={"email": normalized},
    )
    db.commit()
    logger.info("Guest user created", extra={"user_id": user.id})
    return user


def resolve_owner(
    db: Session,
    *,
    session: SessionIdentity | None = None,
    provided_email: str | None = None,
    billing: BillingDetails | None = None,
) -> ResolvedOwner:
    """Pick the payer identity: session, then supplied email, then gateway billing data.

    A session never creates anything. Every email path goes through
    :func:`find_or_create_guest_user`, so a registered user with the same email
    is reused rather than shadowed by a guest.
    """

    if session is not None:
        user = db.get(User, session.user_id)
        if user is None:
            raise MissingContactError(
                "Session user no longer exists.", details={"user_id": session.user_id}
            )
        return ResolvedOwner(user=user, source="session", authoritative=True)

    billing = billing or BillingDetails()
    candidates = (
        ("provided_email", provided_email),
        ("billing_email", billing.email),
        ("metadata_email", billing.metadata_email),
    )
    for source, candidate in candidates:
        email = normalize_email(candidate)
        if email is None:
            continue
        user = find_or_create_guest_user(
            db,
            email,
            name=billing.name,
            phone=billing.phone,
            address=billing.address,
        )
        return ResolvedOwner(user=user, source=source)

    raise MissingContactError("No session and no email available to identify the payer.")


__all__ = [
    "DEFAULT_GUEST_NAME",
    "ResolvedOwner",
    "SessionIdentity",
    "find_or_create_guest_user",
    "get_user_by_email",
    "normalize_email",
    "resolve_owner",
]
