"""Operator alerts for conditions that need a human."""
import logging
from typing import Any

from sqlalchemy.orm import Session

from app.models.alert import Alert
from app.utils.audit import sanitize_payload_for_audit

logger = logging.getLogger(__name__)


def create_alert(
    db: Session,
    *,
    alert_type: str,
    message: str,
    actor_user_id: int | None = None,
    payload: dict[str, Any] | None = None,
) -> Alert:
    """Persist an alert; the payload is masked like audit data."""

    alert = Alert(
        type=alert_type,
        message=message,
        actor_user_id=actor_user_id,
        payload_json=sanitize_payload_for_audit(payload or {}),
    )
    with db.begin_nested():
        db.add(alert)
    db.commit()
    logger.warning("Alert created", extra={"alert_type": alert_type, "alert_id": alert.id})
    return alert
