"""Async HTTP client for the Pipedrive REST API (v1).

Every request carries the api_token query parameter. Read calls retry
transport failures via integration_retry; a response with success=false
or an HTTP error status raises PipedriveError.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.app.services.base import PipedriveError, integration_retry, raise_for_api_status

logger = structlog.get_logger(__name__)


class PipedriveClient:
    """Async client for Pipedrive deals, persons, organizations and notes.

    Args:
        api_token: Pipedrive API token.
        base_url: API root, e.g. https://api.pipedrive.com/v1.
    """

    TIMEOUT = 15.0

    def __init__(self, api_token: str, base_url: str = "https://api.pipedrive.com/v1") -> None:
        if not api_token:
            raise ValueError("PIPEDRIVE_API_TOKEN must be set")
        self._api_token = api_token
        self._base_url = base_url.rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.TIMEOUT)

    def _params(self, extra: dict[str, Any] | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {"api_token": self._api_token}
        if extra:
            params.update({k: v for k, v in extra.items() if v is not None})
        return params

    @staticmethod
    def _unwrap(response: httpx.Response) -> dict[str, Any]:
        raise_for_api_status(response, PipedriveError)
        body = response.json()
        if not body.get("success", False):
            raise PipedriveError(
                body.get("error") or "request was not successful",
                status_code=response.status_code,
                details=body,
            )
        return body

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.get(f"{self._base_url}{path}", params=self._params(params))
        return self._unwrap(response)

    # ── Deals ────────────────────────────────────────────────────────────

    @integration_retry
    async def get_deal(self, deal_id: int | str) -> dict[str, Any]:
        body = await self._get(f"/deals/{deal_id}")
        return body.get("data") or {}

    @integration_retry
    async def get_deals(
        self,
        limit: int = 100,
        start: int = 0,
        status: str | None = None,
        sort: str | None = None,
        label: str | None = None,
        **filters: Any,
    ) -> dict[str, Any]:
        """List deals.

        Returns:
            Dict with ``deals`` (list, possibly empty) and ``pagination``
            (Pipedrive additional_data.pagination, or {}).
        """
        params = {
            "limit": limit,
            "start": start,
            "status": status,
            "sort": sort,
            "label": label,
            **filters,
        }
        body = await self._get("/deals", params)
        return {
            "deals": body.get("data") or [],
            "pagination": (body.get("additional_data") or {}).get("pagination") or {},
        }

    @integration_retry
    async def get_deal_products(self, deal_id: int | str) -> list[dict[str, Any]]:
        body = await self._get(f"/deals/{deal_id}/products")
        return body.get("data") or []

    @integration_retry
    async def get_deal_flow(self, deal_id: int | str, limit: int = 100) -> list[dict[str, Any]]:
        """Deal change history (dealChange, activity, note ... entries)."""
        body = await self._get(f"/deals/{deal_id}/flow", {"limit": limit})
        return body.get("data") or []

    async def update_deal(self, deal_id: int | str, data: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.put(
                f"{self._base_url}/deals/{deal_id}",
                params=self._params(),
                json=data,
            )
        body = self._unwrap(response)
        logger.info("pipedrive.deal_updated", deal_id=deal_id, fields=sorted(data))
        return body.get("data") or {}

    async def add_note_to_deal(self, deal_id: int | str, content: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self._base_url}/notes",
                params=self._params(),
                json={"deal_id": int(deal_id), "content": content},
            )
        body = self._unwrap(response)
        return body.get("data") or {}

    # ── Persons & Organizations ──────────────────────────────────────────

    @integration_retry
    async def get_person(self, person_id: int | str) -> dict[str, Any]:
        body = await self._get(f"/persons/{person_id}")
        return body.get("data") or {}

    @integration_retry
    async def get_organization(self, org_id: int | str) -> dict[str, Any]:
        body = await self._get(f"/organizations/{org_id}")
        return body.get("data") or {}

    @integration_retry
    async def search_persons(
        self,
        term: str,
        fields: str = "email",
        exact_match: bool = True,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Search persons; returns the raw ``item`` dicts from the search result."""
        body = await self._get(
            "/persons/search",
            {
                "term": term,
                "fields": fields,
                "exact_match": str(exact_match).lower(),
                "limit": limit,
            },
        )
        items = (body.get("data") or {}).get("items") or []
        return [entry.get("item") or {} for entry in items]

    async def get_deal_with_related_data(
        self, deal_id: int | str
    ) -> tuple[dict[str, Any], dict[str, Any] | None, dict[str, Any] | None]:
        """Fetch a deal plus its person and organization (when linked)."""
        deal = await self.get_deal(deal_id)
        person = None
        organization = None

        person_ref = extract_ref_id(deal.get("person_id"))
        if person_ref is not None:
            person = await self.get_person(person_ref)

        org_ref = extract_ref_id(deal.get("org_id"))
        if org_ref is not None:
            organization = await self.get_organization(org_ref)

        return deal, person, organization


def extract_ref_id(value: Any) -> Any:
    """Pipedrive returns linked ids either as scalars or as {"value": id, ...} dicts."""
    if isinstance(value, dict):
        return value.get("value")
    return value or None
