"""Unit tests for the SendPulse client (token cache, messaging, contact paging)."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.app.services.base import SendPulseError
from src.app.services.sendpulse import SendPulseClient

BASE = "https://api.sendpulse.com"


def _response(method: str, url: str, status: int = 200, json=None) -> httpx.Response:
    return httpx.Response(status, json=json, request=httpx.Request(method, url))


@pytest.fixture
def client() -> SendPulseClient:
    return SendPulseClient("id", "secret")


@pytest.fixture
def authed(client) -> SendPulseClient:
    client._access_token = "cached"
    client._token_expires_at = time.monotonic() + 600
    return client


class TestToken:
    def test_credentials_required(self):
        with pytest.raises(ValueError):
            SendPulseClient("", "secret")

    async def test_token_cached_after_first_call(self, client):
        mock_post = AsyncMock(
            return_value=_response(
                "POST", f"{BASE}/oauth/access_token", json={"access_token": "tok", "expires_in": 3600}
            )
        )
        with patch.object(httpx.AsyncClient, "post", mock_post):
            first = await client.get_access_token()
            second = await client.get_access_token()

        assert first == second == "tok"
        assert mock_post.await_count == 1

    async def test_missing_token_raises(self, client):
        mock_post = AsyncMock(return_value=_response("POST", f"{BASE}/oauth/access_token", json={}))
        with patch.object(httpx.AsyncClient, "post", mock_post):
            with pytest.raises(SendPulseError, match="access_token"):
                await client.get_access_token()


class TestMessaging:
    async def test_telegram_payload(self, authed):
        mock_post = AsyncMock(
            return_value=_response("POST", f"{BASE}/telegram/contacts/send", json={"id": "m-1"})
        )
        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await authed.send_telegram_message(123, "Hello")

        assert result.success is True
        assert result.message_id == "m-1"
        payload = mock_post.call_args.kwargs["json"]
        assert payload["contact_id"] == "123"
        assert payload["message"]["parse_mode"] == "Markdown"
        assert mock_post.call_args.kwargs["headers"] == {"Authorization": "Bearer cached"}

    async def test_empty_text_not_sent(self, authed):
        with patch.object(httpx.AsyncClient, "post", AsyncMock()) as mock_post:
            result = await authed.send_telegram_message(1, "   ")
        assert result.success is False
        mock_post.assert_not_awaited()

    async def test_telegram_api_error_is_result(self, authed):
        mock_post = AsyncMock(
            return_value=_response("POST", f"{BASE}/telegram/contacts/send", status=400, json={"error": "bad"})
        )
        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await authed.send_telegram_message(1, "Hi")
        assert result.success is False
        assert "HTTP 400" in result.error

    async def test_sms_requires_phone(self, authed):
        result = await authed.send_sms("", "Hi")
        assert result.success is False
        assert result.error == "Phone number is empty"

    async def test_sms_payload(self, authed):
        mock_post = AsyncMock(
            return_value=_response("POST", f"{BASE}/sms/send", json={"campaign_id": 77})
        )
        with patch.object(httpx.AsyncClient, "post", mock_post):
            result = await authed.send_sms("+48500100200", "Hi")
        assert result.success is True
        assert result.message_id == "77"
        assert mock_post.call_args.kwargs["json"] == {"phones": ["+48500100200"], "message": "Hi"}

    async def test_contact_not_found(self, authed):
        mock_patch = AsyncMock(return_value=_response("PATCH", f"{BASE}/contacts/9", status=404, json={}))
        with patch.object(httpx.AsyncClient, "patch", mock_patch):
            result = await authed.update_contact_custom_field(9, {"deal": "1"})
        assert result.not_found is True
        assert result.success is False


class TestInstagramContacts:
    async def test_follows_next_links(self, authed):
        first = _response(
            "GET",
            f"{BASE}/instagram/contacts/getByTag",
            json={"data": [{"id": "a"}], "links": {"next": "http://api.sendpulse.com/page2"}},
        )
        second = _response("GET", f"{BASE}/page2", json={"data": {"data": [{"id": "b"}]}})
        mock_get = AsyncMock(side_effect=[first, second])
        with patch.object(httpx.AsyncClient, "get", mock_get):
            contacts = await authed.get_instagram_contacts_by_tag("MQL", "bot-1")

        assert [c["id"] for c in contacts] == ["a", "b"]
        assert mock_get.call_args_list[1].args[0] == "https://api.sendpulse.com/page2"
        assert mock_get.call_args_list[1].kwargs["params"] is None

    async def test_not_found_page_stops(self, authed):
        first = _response(
            "GET",
            f"{BASE}/instagram/contacts/getByTag",
            json={"contacts": [{"id": "a"}], "links": {"next": f"{BASE}/page2"}},
        )
        missing = _response("GET", f"{BASE}/page2", status=404, json={})
        mock_get = AsyncMock(side_effect=[first, missing])
        with patch.object(httpx.AsyncClient, "get", mock_get):
            contacts = await authed.get_instagram_contacts_by_tag("MQL", "bot-1")
        assert contacts == [{"id": "a"}]
