"""DB-backed lease so only one runner executes background reconciliation."""
from __future__ import annotations

import os
import socket
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import db
from app.models.scheduler_lock import SchedulerLock
from app.utils.time import ensure_utc, utcnow

LOCK_NAME = "reconciliation"
LOCK_TTL_SECONDS = 300


@contextmanager
def _session(db_session: Session | None = None) -> Iterator[Session]:
    if db_session is not None:
        yield db_session
        return
    session = db.get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _locked_row(session: Session, name: str) -> SchedulerLock | None:
    stmt = select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
    return session.execute(stmt).scalar_one_or_none()


def _transaction(session: Session):
    return session.begin_nested() if session.in_transaction() else session.begin()


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
    now: datetime | None = None,
) -> bool:
    """Take the lease when it is free, expired, or already ours."""

    owner = _owner_id()
    now = now or utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    with _session(db_session) as session:
        try:
            with _transaction(session):
                lock = _locked_row(session, name)
                if lock is None:
                    session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
                    return True

                expires_at = ensure_utc(lock.expires_at)
                if lock.owner == owner or expires_at is None or expires_at <= now:
                    if lock.owner != owner:
                        lock.owner = owner
                        lock.acquired_at = now
                    lock.expires_at = expires
                    return True
                return False
        except IntegrityError:
            # Another runner inserted the row first.
            return False


def refresh_scheduler_lock(
    name: str = LOCK_NAME, *, ttl_seconds: int = LOCK_TTL_SECONDS, db_session: Session | None = None
) -> None:
    """Heartbeat: push the lease expiry forward while this runner holds it."""

    owner = _owner_id()
    with _session(db_session) as session:
        with _transaction(session):
            lock = _locked_row(session, name)
            if lock is not None and lock.owner == owner:
                lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)


def release_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> None:
    owner = _owner_id()
    with _session(db_session) as session:
        with _transaction(session):
            lock = _locked_row(session, name)
            if lock is not None and lock.owner == owner:
                session.delete(lock)


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Return a lightweight description of the current lease for health checks."""

    with _session(db_session) as session:
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == name)).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None, "present": False}

        now = utcnow()
        acquired_at = ensure_utc(lock.acquired_at)
        expires_at = ensure_utc(lock.expires_at)
        expires_in = (expires_at - now).total_seconds() if expires_at else None
        return {
            "status": "owned_by_self" if lock.owner == _owner_id() else "owned_by_other",
            "owner": lock.owner,
            "present": True,
            "age_seconds": (now - acquired_at).total_seconds() if acquired_at else None,
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < -60,
        }


__all__ = [
    "LOCK_NAME",
    "describe_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "try_acquire_scheduler_lock",
]
