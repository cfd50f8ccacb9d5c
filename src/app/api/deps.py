"""FastAPI dependencies: API key authentication and service lookup.

Services are built once in the lifespan and stored on ``app.state``;
a service whose integration is not configured is None and the endpoint
answers 503.
"""

from __future__ import annotations

import secrets
from typing import Any

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from src.app.config import get_settings
from src.app.scheduler import OpsScheduler
from src.app.wiring import OpsServices

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(api_key: str | None = Security(api_key_header)) -> str:
    """Validate X-API-Key against OPS_API_KEY.

    Raises:
        HTTPException(401): Missing or wrong key, or no key configured.
    """
    expected = get_settings().OPS_API_KEY
    if not expected or not api_key or not secrets.compare_digest(api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return api_key


def get_services(request: Request) -> OpsServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services not initialized",
        )
    return services


def require_service(request: Request, name: str) -> Any:
    """Return ``services.<name>``, or 503 when that integration is disabled."""
    service = getattr(get_services(request), name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not configured",
        )
    return service


def get_scheduler(request: Request) -> OpsScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler not available",
        )
    return scheduler
