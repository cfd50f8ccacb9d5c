"""Shared pieces for third-party API clients.

Provides:
- IntegrationError and per-service subclasses raised for non-retryable API failures
- integration_retry: tenacity decorator for idempotent calls (3 attempts, 1-10s backoff)
- raise_for_api_status(): converts httpx error responses into IntegrationError
"""

from __future__ import annotations

from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

# Transport failures only; HTTP error statuses surface as IntegrationError and
# are not retried.
integration_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


# -- Exceptions ---------------------------------------------------------------


class IntegrationError(Exception):
    """Raised when a third-party API rejects a request or returns garbage.

    Attributes:
        service: Short service name (pipedrive, sendpulse, wfirma, calendar).
        status_code: HTTP status if the failure came from a response.
        details: Raw response payload, when available.
    """

    service = "integration"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        self.status_code = status_code
        self.details = details
        super().__init__(f"{self.service}: {message}")


class PipedriveError(IntegrationError):
    service = "pipedrive"


class SendPulseError(IntegrationError):
    service = "sendpulse"


class WfirmaError(IntegrationError):
    service = "wfirma"


class CalendarError(IntegrationError):
    service = "calendar"


class ExchangeRateError(IntegrationError):
    service = "exchange_rates"


def raise_for_api_status(
    response: httpx.Response,
    error_cls: type[IntegrationError],
) -> None:
    """Raise error_cls for 4xx/5xx responses, keeping the body as details."""
    if response.is_success:
        return
    try:
        details: Any = response.json()
    except ValueError:
        details = response.text
    raise error_cls(
        f"HTTP {response.status_code} for {response.request.method} {response.request.url.path}",
        status_code=response.status_code,
        details=details,
    )
