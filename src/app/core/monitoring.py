"""Prometheus metrics, Sentry integration, and scheduled job tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry for the API process
- track_job(): Context manager recording job runs and durations
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Job Metrics ──────────────────────────────────────────────────────────────

job_runs_total = Counter(
    "ops_job_runs_total",
    "Total scheduled/manual job runs",
    ["job", "status"],
)

job_duration_seconds = Histogram(
    "ops_job_duration_seconds",
    "Job run duration in seconds",
    ["job"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0),
)

jobs_running = Gauge(
    "ops_jobs_running",
    "Jobs currently executing in this process",
    ["job"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records request count and duration per method/route.

    The route template (e.g. /api/v1/invoices/{deal_id}) is the endpoint
    label so per-deal paths do not create new series. /metrics is skipped.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Job Tracking ────────────────────────────────────────────────────────────


@asynccontextmanager
async def track_job(job: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that records a job run.

    Usage:
        async with track_job("mql_sync") as tracker:
            result = await service.run()
            tracker["status"] = "success" if result.success else "failed"

    The status defaults to "success" and becomes "error" when the body
    raises. Callers may set tracker["status"] (e.g. "skipped").
    """
    tracker: dict[str, Any] = {"status": "success"}
    start_time = time.perf_counter()
    jobs_running.labels(job=job).inc()

    try:
        yield tracker
    except Exception:
        tracker["status"] = "error"
        raise
    finally:
        jobs_running.labels(job=job).dec()
        job_runs_total.labels(job=job, status=tracker["status"]).inc()
        job_duration_seconds.labels(job=job).observe(time.perf_counter() - start_time)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize the Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
