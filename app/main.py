from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import db
from app.config import AppInfo, get_settings
from app.core.logging import get_logger, setup_logging
from app.core.runtime_state import set_scheduler_active
import app.models  # registers tables
from app.routers import get_api_router
from app.services.access_control import close_pin_providers
from app.services.cron import reconcile_unbooked_payments_once
from app.services.scheduler_lock import (
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)
from app.utils.errors import BookingPipelineError, error_response

logger = get_logger(__name__)
scheduler: AsyncIOScheduler | None = None
ALLOWED_CREATE_ENV = {"dev", "local", "test"}


def _current_settings():
    return get_settings()


def _configure_middlewares(fastapi_app: FastAPI) -> None:
    runtime_settings = _current_settings()
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=runtime_settings.CORS_ALLOW_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    if runtime_settings.PROMETHEUS_ENABLED:
        from starlette_exporter import PrometheusMiddleware, handle_metrics

        fastapi_app.add_middleware(PrometheusMiddleware, app_name="storebox")
        fastapi_app.add_route("/metrics", handle_metrics)

    if runtime_settings.SENTRY_DSN:
        import sentry_sdk

        sentry_sdk.init(dsn=runtime_settings.SENTRY_DSN, traces_sample_rate=0.2)


def _assert_webhook_secrets(settings: Any) -> None:
    """Fail fast when Stripe is enabled outside dev without a webhook secret."""

    configured = bool(settings.stripe_webhook_secrets)
    env_lower = settings.app_env.lower()
    if not settings.STRIPE_ENABLED:
        return
    if env_lower != "dev" and not configured:
        logger.error(
            "Stripe webhook secret is missing; configure STRIPE_WEBHOOK_SECRET before startup.",
            extra={"env": settings.app_env},
        )
        raise RuntimeError("Missing Stripe webhook secret in non-dev environment.")
    if not configured:
        logger.warning("Stripe webhook secret is not configured; allowed in dev only.", extra={"env": settings.app_env})
    elif settings.STRIPE_WEBHOOK_SECRET is None:
        logger.warning(
            "Primary Stripe webhook secret unset; relying on STRIPE_WEBHOOK_SECRET_NEXT only.",
            extra={"env": settings.app_env},
        )


def _start_scheduler(settings: Any) -> bool:
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
        reconcile_unbooked_payments_once,
        "interval",
        minutes=settings.RECONCILE_INTERVAL_MINUTES,
        id="reconcile-unbooked-payments",
        replace_existing=True,
        max_instances=1,
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
    settings = _current_settings()
    setup_logging(settings.LOG_LEVEL)
    logger.info("Application startup", extra={"env": settings.app_env})
    _assert_webhook_secrets(settings)

    db.init_engine()
    if settings.ALLOW_DB_CREATE_ALL and settings.app_env.lower() in ALLOWED_CREATE_ENV:
        logger.warning(
            "Running Base.metadata.create_all() because APP_ENV=%s and ALLOW_DB_CREATE_ALL=True",
            settings.app_env,
        )
        db.create_all()
    else:
        logger.info("Skipping create_all(); use Alembic migrations. APP_ENV=%s", settings.app_env)

    # Only the runner holding the DB lease runs the reconciliation sweep.
    set_scheduler_active(False)
    lock_acquired = _start_scheduler(settings) if settings.SCHEDULER_ENABLED else False
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
        if lock_acquired:
            release_scheduler_lock()
        set_scheduler_active(False)
        close_pin_providers()
        db.close_engine()
        logger.info("Application shutdown", extra={"env": settings.app_env})


app_info = AppInfo()

app = FastAPI(title=app_info.name, version=app_info.version, lifespan=lifespan)

_configure_middlewares(app)
app.include_router(get_api_router())


@app.exception_handler(BookingPipelineError)
async def booking_pipeline_exception_handler(request: Request, exc: BookingPipelineError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log("Booking pipeline error", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


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
