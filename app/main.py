from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import db
from app.config import GATEWAY_SECRET_FIELDS, AppInfo, get_settings
from app.core.logging import get_logger, setup_logging
from app.core.runtime_state import set_scheduler_active
import app.models  # registers the tables
from app.routers import get_api_router
from app.services.payment_sweep import sweep_stale_payments_once
from app.services.payments import build_payment_service
from app.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from app.utils.errors import PaymentError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _current_settings():
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    """Configure middleware using a fresh snapshot of the settings."""

    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware)
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_gateway_secrets(settings: Any) -> None:
    """Fail fast when gateway secrets are missing outside dev."""

    missing = [name for name in GATEWAY_SECRET_FIELDS if not getattr(settings, name, None)]
    if not missing:
        return
    if settings.app_env.lower() != "dev":
        logger.error(
            "Gateway secrets are missing; configure them before startup.",
            extra={"env": settings.app_env, "missing": missing},
        )
        raise RuntimeError(f"Missing gateway secrets in non-dev environment: {', '.join(missing)}")
    logger.warning(
        "Gateway secrets are not configured; allowed in dev only.",
        extra={"env": settings.app_env, "missing": missing},
    )


def _start_scheduler(settings: Any, service: Any) -> bool:
    """Start the sweep on this instance when it wins the scheduler lock."""

    global scheduler
    if not try_acquire_scheduler_lock():
        logger.warning(
            "Scheduler disabled because lock is already held by another instance.",
            extra={"env": settings.app_env},
        )
        return False

    scheduler = AsyncIOScheduler()
    scheduler.start()
    scheduler.add_job(
        sweep_stale_payments_once,
        "interval",
        minutes=settings.PAYMENT_SWEEP_INTERVAL_MINUTES,
        args=[service],
        id="payment-sweep",
        replace_existing=True,
    )
    scheduler.add_job(
        refresh_scheduler_lock,
        "interval",
        seconds=60,
        id="scheduler-lock-heartbeat",
        replace_existing=True,
    )
    set_scheduler_active(True)
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    global scheduler
    setup_logging()
    settings = _current_settings()
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_gateway_secrets(settings)

    db.init_engine()
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info(
            "Skipping create_all(); use Alembic migrations. APP_ENV=%s, ALLOW_DB_CREATE_ALL=%s",
            settings.app_env,
            settings.ALLOW_DB_CREATE_ALL,
        )

    http_client = httpx.Client(timeout=settings.GATEWAY_TIMEOUT_SECONDS)
    app.state.payment_service = build_payment_service(settings, http_client)

    # In multi-replica deployments the DB lock keeps the sweep on a single runner.
    set_scheduler_active(False)
    lock_acquired = False
    if settings.SCHEDULER_ENABLED:
        lock_acquired = _start_scheduler(settings, app.state.payment_service)
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        http_client.close()
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("Payment request rejected", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", exc_info=exc)
    payload = error_response("INTERNAL_SERVER_ERROR", "An unexpected error occurred.")
    return JSONResponse(status_code=500, content=payload)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict) and "error" in detail:
        content: dict[str, Any] = detail
    else:
        content = error_response("HTTP_ERROR", str(detail))
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


__all__ = ["app"]
