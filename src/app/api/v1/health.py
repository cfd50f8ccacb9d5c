"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
covers the database and Redis; integration credentials are reported but
never fail the probe.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.core.redis import get_redis_pool

router = APIRouter(tags=["health"])

INTEGRATIONS = ("sendpulse", "wfirma", "calendar", "payment_sessions")


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are touched."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies() -> dict:
    checks: dict = {"database": "ok", "redis": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    try:
        redis = get_redis_pool()
        pong = await redis.ping()
        if not pong:
            checks["redis"] = "error"
            checks["redis_error"] = "PING did not return PONG"
    except Exception as e:
        checks["redis"] = "error"
        checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Returns 200 when the database and Redis respond, 503 otherwise."""
    checks = await _check_dependencies()
    healthy = checks["database"] == "ok" and checks["redis"] == "ok"

    services = getattr(request.app.state, "services", None)
    integrations = {
        name: services is not None and getattr(services, name, None) is not None
        for name in INTEGRATIONS
    }

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if healthy else "degraded",
            "checks": checks,
            "integrations": integrations,
        },
    )
