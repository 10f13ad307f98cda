"""Process-wide runtime flags shared across modules."""
from __future__ import annotations

from datetime import datetime
from typing import Any

_scheduler_active = False
_last_sweep: dict[str, Any] | None = None


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_sweep(finished_at: datetime, summary: dict[str, int]) -> None:
    global _last_sweep
    _last_sweep = {"finished_at": finished_at.isoformat(), **summary}


def last_sweep() -> dict[str, Any] | None:
    return _last_sweep
