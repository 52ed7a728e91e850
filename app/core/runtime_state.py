"""Process-wide runtime flags shared across modules."""
from __future__ import annotations

from datetime import datetime
from typing import Any

_scheduler_active = False
_last_reconciliation: dict[str, Any] | None = None


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_reconciliation_run(at: datetime, counts: dict[str, int]) -> None:
    global _last_reconciliation
    _last_reconciliation = {"at": at.isoformat(), **counts}


def last_reconciliation_run() -> dict[str, Any] | None:
    return _last_reconciliation
