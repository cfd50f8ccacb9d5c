"""Collects Instagram bot contacts tagged as MQL from SendPulse."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.analytics.normalizer import normalize_email
from src.app.analytics.schemas import SendpulseContact, SendpulseContactsResult
from src.app.services.sendpulse import SendPulseClient

logger = structlog.get_logger(__name__)


class SendpulseMqlClient:
    """Args:
        client: SendPulseClient used for the paged contacts call.
        bot_id: Instagram bot id (required).
        tag: Contact tag marking an MQL.
        page_size: Contacts per page.
    """

    def __init__(
        self,
        client: SendPulseClient,
        bot_id: str,
        tag: str = "mql",
        page_size: int = 100,
    ) -> None:
        if not bot_id:
            raise ValueError("SENDPULSE_INSTAGRAM_BOT_ID must be configured to fetch Instagram contacts")
        self._client = client
        self._bot_id = bot_id
        self._tag = tag
        self._page_size = page_size

    async def fetch_contacts(self) -> SendpulseContactsResult:
        records = await self._client.get_instagram_contacts_by_tag(
            self._tag, self._bot_id, limit=self._page_size
        )
        contacts = [normalize_contact(record) for record in records if isinstance(record, dict)]
        logger.info("sendpulse_mql.fetched", tag=self._tag, count=len(contacts))
        return SendpulseContactsResult(contacts=contacts, fetched_at=datetime.now(timezone.utc))


def normalize_contact(contact: dict[str, Any]) -> SendpulseContact:
    channel = contact.get("channel_data") or {}
    first_name = channel.get("first_name") or channel.get("name")
    last_name = channel.get("last_name")
    full_name = channel.get("name") or " ".join(
        part for part in (channel.get("first_name"), last_name) if part
    )
    external_id = contact.get("id") or channel.get("id")

    return SendpulseContact(
        external_id=str(external_id) if external_id is not None else None,
        instagram_id=str(channel["id"]) if channel.get("id") is not None else None,
        username=channel.get("user_name"),
        email=normalize_email(channel.get("email") or contact.get("email")),
        first_name=first_name,
        last_name=last_name,
        full_name=full_name or None,
        follower_count=channel.get("follower_count"),
        tags=contact.get("tags") if isinstance(contact.get("tags"), list) else [],
        created_at=contact.get("created_at"),
        last_activity_at=contact.get("last_activity_at"),
        raw=contact,
    )
