"""Health check endpoint."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text

from app.config import get_settings
from app.core.runtime_state import is_scheduler_active, last_sweep
from app.db import get_engine
from app.services.scheduler_lock import describe_scheduler_lock

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _scheduler_lock_status() -> dict[str, object]:
    try:
        return describe_scheduler_lock()
    except Exception:  # noqa: BLE001
        logger.exception("Scheduler lock lookup failed")
        return {"status": "unknown", "owner": None}


def _gateway_status(request: Request) -> dict[str, dict[str, object]]:
    service = getattr(request.app.state, "payment_service", None)
    if service is None:
        return {}
    return {
        adapter.name.value: {
            "configured": adapter.is_configured(),
            "secret_fingerprints": adapter.secret_fingerprints(),
            "status_query": adapter.supports_query,
        }
        for adapter in service.gateways
    }


@router.get("", summary="Health check")
def healthcheck(request: Request) -> dict[str, object]:
    """Return DB reachability, gateway configuration and scheduler state."""

    settings = get_settings()
    db_status = _db_status()
    gateways = _gateway_status(request)
    gateways_ok = bool(gateways) and all(info["configured"] for info in gateways.values())
    return {
        "status": "ok" if db_status == "ok" and gateways_ok else "degraded",
        "env": settings.app_env,
        "db_ok": db_status == "ok",
        "db_status": db_status,
        "gateways": gateways,
        "scheduler_config_enabled": bool(settings.SCHEDULER_ENABLED),
        "scheduler_running": is_scheduler_active(),
        "scheduler_lock": _scheduler_lock_status() if db_status == "ok" else {"status": "unknown", "owner": None},
        "last_sweep": last_sweep(),
    }
