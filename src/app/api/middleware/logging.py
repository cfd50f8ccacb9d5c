"""Structured logging setup and per-request access log.

configure_structlog() is shared by the API process and the scripts: JSON in
production, console rendering elsewhere.

LoggingMiddleware binds a request id into structlog's context variables, so
every integration log line emitted while serving the request (Pipedrive
calls, wFirma errors, Stripe sessions) carries the same ``request_id``. An
incoming X-Request-ID is reused; otherwise one is generated. The id is
echoed back on the response.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.app.config import Environment, get_settings

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Probe and scrape traffic is logged at debug level.
QUIET_PATHS = frozenset({"/metrics", "/api/v1/health", "/api/v1/health/ready"})


def configure_structlog() -> None:
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        path = request.url.path
        start = time.monotonic()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "http.request_failed",
                    method=request.method,
                    path=path,
                    duration_ms=_elapsed_ms(start),
                )
                raise

            status_code = response.status_code
            if status_code >= 500:
                log = logger.error
            elif status_code >= 400:
                log = logger.warning
            elif path in QUIET_PATHS:
                log = logger.debug
            else:
                log = logger.info
            log(
                "http.request_completed",
                method=request.method,
                path=path,
                status_code=status_code,
                duration_ms=_elapsed_ms(start),
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
