# app/security.py
"""Optional session authentication for the client-facing payment endpoints."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from app.config import get_settings
from app.db import get_db
from app.models.user import User
from app.services.identity import SessionIdentity
from app.utils.errors import error_response


def _extract_bearer(authorization: str | None = Header(default=None)) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


def create_session_token(user: User, expires_minutes: int = 60) -> str:
    """Issue a session token for ``user`` (used by the auth frontend and tests)."""

    settings = get_settings()
    exp = datetime.now(UTC) + timedelta(minutes=expires_minutes)
    payload = {"sub": str(user.id), "email": user.email, "type": "session", "exp": exp}
    return jwt.encode(payload, settings.session_secret, algorithm=settings.SESSION_JWT_ALGORITHM)


def decode_session_token(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.session_secret, algorithms=[settings.SESSION_JWT_ALGORITHM])


def optional_session(
    db: Session = Depends(get_db),
    token: str | None = Depends(_extract_bearer),
) -> SessionIdentity | None:
    """Resolve the caller's session, or ``None`` for anonymous (guest checkout) callers.

    A token that is present but invalid is rejected rather than silently downgraded.
    """

    if token is None:
        return None

    try:
        claims = decode_session_token(token)
        user_id = int(claims["sub"])
    except (JWTError, KeyError, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("INVALID_SESSION", "Session token is invalid or expired."),
        )

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("INVALID_SESSION", "Session user is unknown or inactive."),
        )
    return SessionIdentity(user_id=user.id, email=user.email)


__all__ = ["create_session_token", "decode_session_token", "optional_session"]
