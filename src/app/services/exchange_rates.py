"""PLN exchange rates from the National Bank of Poland (NBP) public API.

Uses the average (mid) rate from table A. Rates are cached per currency
until clear_cache(); the expense collector clears it at the start of each
aggregation run.
"""

from __future__ import annotations

import httpx
import structlog

from src.app.services.base import ExchangeRateError, integration_retry, raise_for_api_status

logger = structlog.get_logger(__name__)

NBP_BASE_URL = "https://api.nbp.pl/api/exchangerates/rates/A"


class ExchangeRateClient:
    TIMEOUT = 10.0

    def __init__(self, base_url: str = NBP_BASE_URL) -> None:
        self._base_url = base_url.rstrip("/")
        self._cache: dict[str, float] = {"PLN": 1.0}

    def clear_cache(self) -> None:
        self._cache = {"PLN": 1.0}

    @integration_retry
    async def _fetch_mid(self, currency: str) -> float:
        async with httpx.AsyncClient(timeout=self.TIMEOUT) as client:
            response = await client.get(
                f"{self._base_url}/{currency.lower()}/",
                params={"format": "json"},
            )
        raise_for_api_status(response, ExchangeRateError)
        payload = response.json()
        rates = (payload.get("rates") if isinstance(payload, dict) else None) or []
        if not rates or not isinstance(rates[0], dict) or rates[0].get("mid") is None:
            raise ExchangeRateError(f"no mid rate for {currency}")
        return float(rates[0]["mid"])

    async def get_rate(self, currency: str) -> float:
        """PLN value of one unit of currency.

        Raises:
            ExchangeRateError: NBP rejected the request, was unreachable or
                answered with something other than a rate.
        """
        code = (currency or "PLN").upper()
        if code not in self._cache:
            try:
                rate = await self._fetch_mid(code)
            except (httpx.HTTPError, ValueError) as exc:
                raise ExchangeRateError(f"rate lookup failed for {code}: {exc}") from exc
            self._cache[code] = rate
            logger.info("exchange_rates.fetched", currency=code, rate=rate)
        return self._cache[code]

    async def to_pln(self, amount: float, currency: str) -> float:
        return round(amount * await self.get_rate(currency), 2)
