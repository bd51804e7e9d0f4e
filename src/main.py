"""
PushOps - campaign & trigger automation engine for push notifications.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("pushops")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


async def _seed_triggers() -> None:
    """Ensure every catalog trigger has a row (inactive by default)."""
    from src.database import async_session_factory
    from src.services.triggers import ensure_triggers

    async with async_session_factory() as db:
        triggers = await ensure_triggers(db)
        await db.commit()
    active = [t.key for t in triggers if t.is_active]
    logger.info(
        "Triggers ready: %d total, active: %s",
        len(triggers), ", ".join(active) if active else "none",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("PushOps starting up (env=%s)", settings.app_env)

    if not settings.push_gateway_url:
        logger.warning(
            "PUSH_GATEWAY_URL not set - sends will fail with 503 and scheduler "
            "cycles will report gateway issues."
        )
    if not settings.cron_secret:
        logger.warning("CRON_SECRET not set - POST /api/v1/cron/notifications is disabled.")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    try:
        await _seed_triggers()
    except Exception as e:
        logger.warning("Failed to seed trigger rows: %s", str(e))

    worker_tasks: list[asyncio.Task] = []

    # In-process scheduler - gated behind config flag
    if settings.cron_scheduler_enabled:
        from src.workers.notification_cron import run_notification_cron
        worker_tasks.append(asyncio.create_task(run_notification_cron()))
        logger.info("Notification cron worker started")
    else:
        logger.info("In-process scheduler disabled (CRON_SCHEDULER_ENABLED=false)")

    yield

    # Graceful shutdown - give the cycle in flight time to finish
    logger.info("PushOps shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    logger.info("PushOps shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="PushOps",
        description="Campaign & trigger automation engine for push notifications",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS - allow dashboard origin
    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            settings.app_base_url,
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization", "Content-Type", "X-Correlation-ID", "X-Admin-Id",
            "Accept", "Origin", "X-Requested-With",
        ],
    )

    # Correlation ID middleware (must be added AFTER CORS so it runs on every request)
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)

    return application


app = create_app()
