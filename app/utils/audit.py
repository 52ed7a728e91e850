"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from app.models.audit import AuditLog
from app.utils.time import utcnow


SENSITIVE_KEYS = {
    "email",
    "billing_email",
    "customer_email",
    "phone",
    "lock_pin",
    "pin",
    "address",
    "billing_address",
}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in {"email", "billing_email", "customer_email"}:
        text = str(value)
        if "@" in text:
            _, domain = text.split("@", 1)
            return f"***@{domain}"
        return "***"

    if key == "phone":
        digits = "".join(ch for ch in str(value) if ch.isdigit())
        return f"***{digits[-2:]}" if len(digits) > 2 else "***"

    if key in {"lock_pin", "pin"}:
        return "***"

    if key in {"address", "billing_address"}:
        if isinstance(value, Mapping):
            return {"country": value.get("country")}
        return "***"

    return value


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with obvious PII fields masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            if key in SENSITIVE_KEYS:
                sanitized[key] = _mask_value(key, value)
            else:
                sanitized[key] = sanitize_payload_for_audit(value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Stage an audit entry in the shared AuditLog table; the caller commits."""

    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            data_json=sanitize_payload_for_audit(data or {}),
            at=utcnow(),
        )
    )
