"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database initialization, the integration services and
the job scheduler, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response

from src.app.config import get_settings
from src.app.core.database import close_db, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.app.core.redis import close_redis
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.scheduler import OpsScheduler, build_jobs
from src.app.services.base import IntegrationError
from src.app.wiring import build_services

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry, services and scheduler; close on shutdown."""
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # A missing Pipedrive token leaves the API up with every service route at 503.
    try:
        app.state.services = build_services(settings)
        logger.info("app.services_initialized")
    except Exception:
        logger.warning("app.services_init_failed", exc_info=True)
        app.state.services = None

    app.state.scheduler = None
    if settings.SCHEDULER_ENABLED and app.state.services is not None:
        scheduler = OpsScheduler(
            build_jobs(app.state.services),
            timezone=settings.SCHEDULER_TIMEZONE,
            job_lock=app.state.services.job_lock,
        )
        if scheduler.start():
            app.state.scheduler = scheduler

    yield

    if app.state.scheduler is not None:
        app.state.scheduler.stop()

    await close_db()
    await close_redis()


async def integration_error_handler(request: Request, exc: IntegrationError) -> JSONResponse:
    logger.error(
        "app.integration_error",
        path=request.url.path,
        error=str(exc),
        upstream_status=exc.status_code,
    )
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": str(exc)},
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc)},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="salesops-bridge",
        version="0.1.0",
        description="Pipedrive, wFirma, Stripe, SendPulse and Google Calendar operations",
        lifespan=lifespan,
    )

    app.add_exception_handler(IntegrationError, integration_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    # Outermost: records Prometheus metrics for all requests
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
