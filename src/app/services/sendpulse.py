"""Async client for the SendPulse REST API.

Handles OAuth client-credentials tokens (cached until 60 seconds before
expiry), Telegram and SMS delivery, contact custom-field updates, and
paging through Instagram bot contacts by tag.

Send methods never raise for API errors: they return a MessageResult so
reminder jobs can count failures and move on to the next recipient.
"""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog
from pydantic import BaseModel

from src.app.core.phone import mask_phone
from src.app.services.base import SendPulseError, integration_retry, raise_for_api_status

logger = structlog.get_logger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 60


class MessageResult(BaseModel):
    """Outcome of a single SendPulse delivery/update call."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    not_found: bool = False


class SendPulseClient:
    """SendPulse API client.

    Args:
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        base_url: API root (default https://api.sendpulse.com).
    """

    TIMEOUT = 15.0

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str = "https://api.sendpulse.com",
    ) -> None:
        if not client_id or not client_secret:
            raise ValueError("SENDPULSE_CLIENT_ID and SENDPULSE_CLIENT_SECRET must be set")
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._access_token: str | None = None
        self._token_expires_at: float = 0.0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.TIMEOUT)

    # ── Auth ─────────────────────────────────────────────────────────────

    @integration_retry
    async def get_access_token(self) -> str:
        """Return a cached bearer token, requesting a new one when near expiry."""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        async with self._client() as client:
            response = await client.post(
                f"{self._base_url}/oauth/access_token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        raise_for_api_status(response, SendPulseError)
        data = response.json()
        token = data.get("access_token")
        if not token:
            raise SendPulseError("token response has no access_token", details=data)

        expires_in = int(data.get("expires_in") or 3600)
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 0)
        logger.info("sendpulse.token_refreshed", expires_in=expires_in)
        return token

    async def _auth_headers(self) -> dict[str, str]:
        token = await self.get_access_token()
        return {"Authorization": f"Bearer {token}"}

    # ── Messaging ────────────────────────────────────────────────────────

    async def send_telegram_message(self, contact_id: str | int, text: str) -> MessageResult:
        """Send a Markdown text message to a Telegram contact."""
        if not text or not text.strip():
            return MessageResult(success=False, error="Message text is empty")

        payload = {
            "contact_id": str(contact_id),
            "message": {"type": "text", "text": text, "parse_mode": "Markdown"},
        }
        try:
            headers = await self._auth_headers()
            async with self._client() as client:
                response = await client.post(
                    f"{self._base_url}/telegram/contacts/send",
                    json=payload,
                    headers=headers,
                )
            raise_for_api_status(response, SendPulseError)
            data = response.json() if response.content else {}
        except (SendPulseError, httpx.HTTPError) as exc:
            logger.error("sendpulse.telegram_failed", contact_id=str(contact_id), error=str(exc))
            return MessageResult(success=False, error=str(exc))

        message_id = data.get("id") or (data.get("data") or {}).get("id")
        logger.info("sendpulse.telegram_sent", contact_id=str(contact_id), message_id=message_id)
        return MessageResult(success=True, message_id=str(message_id) if message_id else None)

    async def send_sms(self, phone: str, text: str) -> MessageResult:
        """Send a plain SMS to a single E.164 phone number."""
        if not phone:
            return MessageResult(success=False, error="Phone number is empty")
        if not text or not text.strip():
            return MessageResult(success=False, error="Message text is empty")

        try:
            headers = await self._auth_headers()
            async with self._client() as client:
                response = await client.post(
                    f"{self._base_url}/sms/send",
                    json={"phones": [phone], "message": text},
                    headers=headers,
                )
            raise_for_api_status(response, SendPulseError)
            data = response.json() if response.content else {}
        except (SendPulseError, httpx.HTTPError) as exc:
            logger.error("sendpulse.sms_failed", phone=mask_phone(phone), error=str(exc))
            return MessageResult(success=False, error=str(exc))

        message_id = data.get("id") or data.get("campaign_id")
        logger.info("sendpulse.sms_sent", phone=mask_phone(phone), message_id=message_id)
        return MessageResult(success=True, message_id=str(message_id) if message_id else None)

    async def update_contact_custom_field(
        self, contact_id: str | int, custom_fields: dict[str, Any]
    ) -> MessageResult:
        """PATCH custom fields on a contact. A 404 is reported as not_found."""
        try:
            headers = await self._auth_headers()
            async with self._client() as client:
                response = await client.patch(
                    f"{self._base_url}/contacts/{contact_id}",
                    json={"custom_fields": custom_fields},
                    headers=headers,
                )
            if response.status_code == 404:
                logger.warning("sendpulse.contact_not_found", contact_id=str(contact_id))
                return MessageResult(success=False, error="Contact not found", not_found=True)
            raise_for_api_status(response, SendPulseError)
        except (SendPulseError, httpx.HTTPError) as exc:
            logger.error("sendpulse.contact_update_failed", contact_id=str(contact_id), error=str(exc))
            return MessageResult(success=False, error=str(exc))

        return MessageResult(success=True)

    # ── Instagram contacts ───────────────────────────────────────────────

    async def get_instagram_contacts_by_tag(
        self,
        tag: str,
        bot_id: str,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Page through all Instagram bot contacts carrying a tag.

        Follows ``links.next`` until it is absent. A 404 on any page ends
        pagination with whatever was collected so far.
        """
        url: str | None = f"{self._base_url}/instagram/contacts/getByTag"
        params: dict[str, Any] | None = {"tag": tag, "bot_id": bot_id, "limit": limit}
        contacts: list[dict[str, Any]] = []
        pages = 0

        while url:
            response = await self._get_contacts_page(url, params)
            pages += 1
            if response.status_code == 404:
                logger.info("sendpulse.contacts_page_not_found", page=pages, collected=len(contacts))
                break
            raise_for_api_status(response, SendPulseError)

            body = response.json()
            contacts.extend(_extract_contact_records(body))

            next_link = ((body.get("links") or {}) if isinstance(body, dict) else {}).get("next")
            if next_link:
                url = next_link.replace("http://", "https://", 1)
                params = None
            else:
                url = None

        logger.info("sendpulse.contacts_fetched", tag=tag, count=len(contacts), pages=pages)
        return contacts

    @integration_retry
    async def _get_contacts_page(
        self, url: str, params: dict[str, Any] | None
    ) -> httpx.Response:
        headers = await self._auth_headers()
        async with self._client() as client:
            return await client.get(url, params=params, headers=headers)


def _extract_contact_records(body: Any) -> list[dict[str, Any]]:
    """Contacts live in body.data, body.data.data, body.contacts or the body itself."""
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return []
    data = body.get("data")
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("data", "contacts"):
            if isinstance(data.get(key), list):
                return data[key]
    if isinstance(body.get("contacts"), list):
        return body["contacts"]
    return []
