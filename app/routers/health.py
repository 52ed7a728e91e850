"""Health check endpoint."""
from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text

from fastapi import APIRouter

from app.config import Settings, get_settings
from app.core.runtime_state import is_scheduler_active, last_reconciliation_run
from app.db import get_engine
from app.services.scheduler_lock import describe_scheduler_lock

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def _secret_status(primary: str | None, secondary: str | None) -> str:
    if primary and secondary:
        return "rotating"
    if primary or secondary:
        return "ok"
    return "missing"


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        script = ScriptDirectory.from_config(Config(str(ALEMBIC_INI)))
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        with get_engine().connect() as conn:
            current = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
        if expected_head is None:
            return False, "unknown"
        if current == expected_head:
            return True, "up_to_date"
        return False, "out_of_date"
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"


def _secret_fingerprints(settings: Settings) -> dict[str, str | None]:
    def _fp(value: str | None) -> str | None:
        if not value:
            return None
        return hashlib.sha256(value.encode("utf-8")).hexdigest()[:8]

    return {
        "primary": _fp(settings.STRIPE_WEBHOOK_SECRET),
        "next": _fp(settings.STRIPE_WEBHOOK_SECRET_NEXT),
    }


@router.get("", summary="Health check")
def healthcheck() -> dict[str, object]:
    settings = get_settings()
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    degraded = not (db_ok and migration_ok)
    return {
        "status": "degraded" if degraded else "ok",
        "stripe": {
            "enabled": bool(settings.STRIPE_ENABLED),
            "api_key_configured": bool(settings.STRIPE_SECRET_KEY),
            "livemode": settings.stripe_live_mode,
            "webhook_secret_status": _secret_status(
                settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_WEBHOOK_SECRET_NEXT
            ),
            "webhook_secret_fingerprints": _secret_fingerprints(settings),
        },
        "lock_pin_provider": settings.LOCK_PIN_PROVIDER,
        "email_enabled": bool(settings.EMAIL_ENABLED),
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "last_reconciliation": last_reconciliation_run(),
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "scheduler_lock": describe_scheduler_lock(),
    }
