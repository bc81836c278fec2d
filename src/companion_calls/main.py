"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
import hashlib
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from companion_calls.api.calls_router import router as calls_router
from companion_calls.api.scheduling_router import router as scheduling_router
from companion_calls.billing.payments import StripeUsageReporter
from companion_calls.calls.factory import CallDependencies
from companion_calls.calls.registry import LiveCallRegistry
from companion_calls.config import get_settings
from companion_calls.notifications.client import NotificationClient
from companion_calls.retention.deletion_retry import DeletionRetryScheduler
from companion_calls.scheduling.sweep import ScheduleSweep
from companion_calls.scheduling.timezone import validate_timezone_support
from companion_calls.shared.database import get_database_manager
from companion_calls.shared.exceptions import ConflictError, NotFoundError, ValidationError
from companion_calls.shared.logging import correlation_id_var, get_logger, setup_logging
from companion_calls.telephony.factory import get_telephony_config, get_telephony_provider
from companion_calls.telephony.webhooks.router import router as telephony_webhooks_router

logger = get_logger(__name__)

# Zones the service must be able to resolve at startup.
REQUIRED_TIMEZONES = (
    "UTC",
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "America/Phoenix",
    "Europe/London",
)


def _advisory_lock_id(key: str) -> int:
    """Derive a stable signed bigint lock id from an arbitrary string key."""
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    # Use 63-bit positive space to avoid signed bigint surprises.
    return int.from_bytes(digest, "big", signed=False) & 0x7FFF_FFFF_FFFF_FFFF


def _build_sweeps(deps: CallDependencies) -> tuple[ScheduleSweep | None, DeletionRetryScheduler | None]:
    settings = get_settings()
    db = get_database_manager()
    schedule_sweep = ScheduleSweep(db.session, deps, settings) if settings.scheduler_enabled else None
    deletion_sweep = (
        DeletionRetryScheduler(db.session, deps.provider, settings) if settings.deletion_sweep_enabled else None
    )
    return schedule_sweep, deletion_sweep


async def _sweep_supervisor(app: FastAPI) -> None:
    """Run the sweeps only on the process that becomes DB lock leader.

    Safe under ``uvicorn --workers N`` and multiple replicas. On SQLite (local
    development) there is no lock and this process always leads.
    """
    settings = get_settings()
    db = get_database_manager()
    schedule_sweep, deletion_sweep = _build_sweeps(app.state.call_deps)
    sweeps = [s for s in (schedule_sweep, deletion_sweep) if s is not None]

    if db.dialect_name != "postgresql":
        logger.info("No advisory locks on this database; running sweeps unconditionally")
        for sweep in sweeps:
            await sweep.start()
        try:
            await asyncio.Event().wait()
        finally:
            for sweep in sweeps:
                await sweep.stop()
        return

    lock_id = _advisory_lock_id(settings.scheduler_lock_key)
    retry_sleep = 5

    logger.info(
        "Sweep supervisor starting",
        extra={
            "scheduler_enabled": settings.scheduler_enabled,
            "deletion_sweep_enabled": settings.deletion_sweep_enabled,
            "lock_id": lock_id,
        },
    )

    while True:
        try:
            # Dedicated connection used to hold the advisory lock.
            async with db.engine.connect() as conn:
                res = await conn.execute(text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id})
                acquired = bool(res.scalar())

                if not acquired:
                    logger.info(
                        "Sweep leader lock busy; standby",
                        extra={"lock_id": lock_id, "sleep_seconds": retry_sleep},
                    )
                    await asyncio.sleep(retry_sleep)
                    continue

                logger.info("Sweep leader lock acquired", extra={"lock_id": lock_id})
                for sweep in sweeps:
                    await sweep.start()
                try:
                    # Hold the lock while the connection stays healthy.
                    while True:
                        await asyncio.sleep(retry_sleep)
                        await conn.execute(text("SELECT 1"))
                finally:
                    for sweep in sweeps:
                        await sweep.stop()

        except asyncio.CancelledError:
            logger.info("Sweep supervisor cancelled; stopping")
            raise
        except Exception:
            logger.exception("Sweep supervisor error; retrying", extra={"sleep_seconds": retry_sleep})
            await asyncio.sleep(retry_sleep)


def _default_dependencies() -> CallDependencies:
    settings = get_settings()
    return CallDependencies(
        provider=get_telephony_provider(),
        telephony_config=get_telephony_config(),
        registry=LiveCallRegistry(),
        notifier=NotificationClient(settings),
        reporter=StripeUsageReporter(settings),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})
    validate_timezone_support(REQUIRED_TIMEZONES)

    sweep_task: asyncio.Task[None] | None = None
    if settings.scheduler_enabled or settings.deletion_sweep_enabled:
        sweep_task = asyncio.create_task(_sweep_supervisor(app))
        app.state.sweep_task = sweep_task
        logger.info("Background sweeps enabled; supervisor task created")

    yield

    logger.info("Shutting down application")

    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
        logger.info("Sweep supervisor stopped")

    deps: CallDependencies = app.state.call_deps
    released = await deps.registry.release_all()
    if released:
        logger.info("Live calls released at shutdown", extra={"count": released})
    if isinstance(deps.notifier, NotificationClient):
        await deps.notifier.aclose()
    if isinstance(deps.reporter, StripeUsageReporter):
        await deps.reporter.aclose()

    await get_database_manager().close()
    logger.info("Application shutdown complete")


def create_app(deps: CallDependencies | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Companion Calls API",
        description="Call orchestration for a phone-based AI companion",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.call_deps = deps or _default_dependencies()

    # Map domain exceptions to HTTP responses
    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    @app.middleware("http")
    async def correlation_id_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = correlation_id_var.set(correlation_id)
        try:
            response = await call_next(request)
        finally:
            correlation_id_var.reset(token)
        response.headers["X-Request-ID"] = correlation_id
        return response

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(calls_router)
    app.include_router(scheduling_router)
    app.include_router(telephony_webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
