"""Collects MQL-labelled deals from Pipedrive.

Deals are paged newest-update-first, so an optional cutoff date ends the walk
at the first deal that has not been touched since. Each kept deal is
flattened into an MqlDeal; optionally its first-seen timestamp is taken from
the deal flow (the moment it received an MQL label or entered a
conversation stage) instead of its last update.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import structlog

from src.app.analytics.normalizer import (
    get_month_key,
    normalize_email,
    parse_timestamp,
    resolve_channel_bucket,
)
from src.app.analytics.schemas import MqlDeal, MqlDealsResult
from src.app.config import Settings
from src.app.services.base import IntegrationError
from src.app.services.pipedrive import PipedriveClient

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class PipedriveMqlClient:
    """Pipedrive MQL deal collector.

    Args:
        client: Low-level PipedriveClient.
        primary_label_id: Deal label id marking an MQL.
        secondary_label_ids: Additional label ids counted as MQL (e.g. SQL).
        conversation_stage_ids: Stage ids whose entry marks first contact.
        utm_fields: Deal custom-field keys for source/medium/campaign.
        customer_label_names: Person label names marking existing customers.
        customer_label_ids: Person label ids marking existing customers.
        sendpulse_id_field: Person custom-field key holding the SendPulse id.
        page_size: Deals per page.
        max_pages: Hard stop for pagination.
    """

    def __init__(
        self,
        client: PipedriveClient,
        primary_label_id: str = "",
        secondary_label_ids: list[str] | None = None,
        conversation_stage_ids: list[str] | None = None,
        utm_fields: dict[str, str] | None = None,
        customer_label_names: list[str] | None = None,
        customer_label_ids: list[str] | None = None,
        sendpulse_id_field: str | None = None,
        page_size: int = 100,
        max_pages: int = 25,
    ) -> None:
        self._client = client
        self._primary_label_id = str(primary_label_id or "").strip()
        self._secondary_label_ids = [str(v).strip() for v in secondary_label_ids or [] if str(v).strip()]
        self._conversation_stage_ids = [str(v) for v in conversation_stage_ids or []]
        self._utm_fields = utm_fields or {}
        self._customer_label_names = [v.lower() for v in customer_label_names or []]
        self._customer_label_ids = [str(v) for v in customer_label_ids or []]
        self._sendpulse_id_field = sendpulse_id_field
        self._page_size = page_size
        self._max_pages = max_pages

    @classmethod
    def from_settings(cls, client: PipedriveClient, settings: Settings) -> PipedriveMqlClient:
        return cls(
            client,
            primary_label_id=settings.MQL_PRIMARY_LABEL_ID,
            secondary_label_ids=settings.mql_secondary_label_ids,
            conversation_stage_ids=settings.mql_conversation_stage_ids,
            utm_fields={
                "source": settings.PIPEDRIVE_UTM_SOURCE_FIELD_KEY,
                "medium": settings.PIPEDRIVE_UTM_MEDIUM_FIELD_KEY,
                "campaign": settings.PIPEDRIVE_UTM_CAMPAIGN_FIELD_KEY,
            },
            customer_label_names=settings.mql_customer_label_names,
            customer_label_ids=settings.mql_customer_label_ids,
            sendpulse_id_field=settings.PIPEDRIVE_SENDPULSE_ID_FIELD_KEY,
            page_size=settings.MQL_PIPEDRIVE_PAGE_SIZE,
            max_pages=settings.MQL_PIPEDRIVE_MAX_PAGES,
        )

    @property
    def mql_label_ids(self) -> list[str]:
        return [label for label in [self._primary_label_id, *self._secondary_label_ids] if label]

    async def fetch_mql_deals(
        self,
        cutoff_date: date | datetime | None = None,
        resolve_first_seen_from_flow: bool = False,
    ) -> MqlDealsResult:
        cutoff = None
        if cutoff_date is not None:
            cutoff = _as_utc(parse_timestamp(cutoff_date))
            logger.info("pipedrive_mql.cutoff_active", cutoff=cutoff.isoformat())

        result = MqlDealsResult()
        label_param = ",".join(self.mql_label_ids) or None
        start = 0

        while True:
            if result.pages >= self._max_pages:
                logger.warning("pipedrive_mql.max_pages_reached", max_pages=self._max_pages)
                break

            page = await self._client.get_deals(
                limit=self._page_size,
                start=start,
                status="all_not_deleted",
                sort="update_time DESC",
                label=label_param,
            )
            result.pages += 1

            for deal in page["deals"]:
                result.scanned += 1
                if cutoff is not None and self._is_older_than(deal, cutoff):
                    result.cutoff_hit = True
                    logger.info(
                        "pipedrive_mql.cutoff_hit",
                        deal_id=deal.get("id"),
                        update_time=deal.get("update_time"),
                    )
                    break
                if self._is_mql_deal(deal):
                    result.deals.append(self.normalize_deal(deal))

            if result.cutoff_hit:
                break

            pagination = page["pagination"]
            if not pagination.get("more_items_in_collection"):
                break
            start = pagination.get("next_start") or start + self._page_size

        if resolve_first_seen_from_flow:
            for deal in result.deals:
                resolved = await self._resolve_first_seen_at(deal.id)
                if resolved:
                    deal.first_seen_at = resolved
                    deal.first_seen_month = get_month_key(resolved) or deal.first_seen_month

        result.fetched_at = datetime.now(timezone.utc)
        logger.info(
            "pipedrive_mql.fetched",
            matched=len(result.deals),
            scanned=result.scanned,
            pages=result.pages,
            cutoff_hit=result.cutoff_hit,
        )
        return result

    # ── Deal inspection ──────────────────────────────────────────────────

    def _is_mql_deal(self, deal: dict[str, Any]) -> bool:
        label = str(deal.get("label") or "").strip()
        if not label:
            return False
        return label in self.mql_label_ids

    @staticmethod
    def _is_older_than(deal: dict[str, Any], cutoff: datetime) -> bool:
        updated = parse_timestamp(deal.get("update_time"))
        if updated is None:
            return True
        return _as_utc(updated) < cutoff

    def normalize_deal(self, deal: dict[str, Any]) -> MqlDeal:
        person = deal.get("person_id") if isinstance(deal.get("person_id"), dict) else {}
        utm_source = self._pluck(deal, "source")
        first_seen_at = deal.get("update_time") or deal.get("add_time")
        person_label = self._person_label(person)
        person_label_id = self._person_label_id(person)
        phones = person.get("phone") if isinstance(person.get("phone"), list) else []

        person_ref = person.get("value") or person.get("id")
        if person_ref is None and not isinstance(deal.get("person_id"), dict):
            person_ref = deal.get("person_id")

        return MqlDeal(
            id=deal["id"],
            title=deal.get("title"),
            label_id=str(deal["label"]) if deal.get("label") is not None else None,
            stage_id=deal.get("stage_id"),
            pipeline_id=deal.get("pipeline_id"),
            status=deal.get("status"),
            value=deal.get("value"),
            currency=deal.get("currency"),
            add_time=deal.get("add_time"),
            update_time=deal.get("update_time"),
            won_time=deal.get("won_time"),
            close_time=deal.get("close_time"),
            lost_time=deal.get("lost_time"),
            person_id=person_ref,
            person_name=deal.get("person_name") or person.get("name"),
            email=normalize_email(self._primary_email(person)),
            username=person.get("name") or deal.get("person_name"),
            phone=(phones[0] or {}).get("value") if phones else None,
            utm_source=utm_source,
            utm_medium=self._pluck(deal, "medium"),
            utm_campaign=self._pluck(deal, "campaign"),
            channel_bucket=resolve_channel_bucket(utm_source),
            first_seen_at=first_seen_at,
            first_seen_month=get_month_key(first_seen_at),
            person_label=person_label,
            person_label_id=person_label_id,
            is_repeat_customer=self._is_customer(person_label, person_label_id),
            sendpulse_id=self._sendpulse_id(person),
        )

    def _pluck(self, deal: dict[str, Any], name: str) -> str | None:
        key = self._utm_fields.get(name)
        if not key:
            return None
        return deal.get(key) or None

    @staticmethod
    def _primary_email(person: dict[str, Any]) -> str | None:
        emails = person.get("email") or person.get("emails") or []
        if isinstance(emails, str):
            return emails
        for entry in emails:
            value = entry if isinstance(entry, str) else (entry or {}).get("value")
            if isinstance(value, str) and value.strip():
                return value
        return None

    @staticmethod
    def _person_label(person: dict[str, Any]) -> str | None:
        for key in ("label", "label_name"):
            value = person.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip().lower()
        return None

    @staticmethod
    def _person_label_id(person: dict[str, Any]) -> str | None:
        value = person.get("label_id")
        return None if value is None else str(value).strip()

    def _is_customer(self, label: str | None, label_id: str | None) -> bool:
        if label and label in self._customer_label_names:
            return True
        return bool(label_id and label_id in self._customer_label_ids)

    def _sendpulse_id(self, person: dict[str, Any]) -> str | None:
        if not self._sendpulse_id_field:
            return None
        raw = person.get(self._sendpulse_id_field)
        if isinstance(raw, str):
            return raw.strip() or None
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return str(int(raw))
        return None

    async def _resolve_first_seen_at(self, deal_id: int) -> str | None:
        """When the deal first got an MQL label, else entered a conversation stage."""
        try:
            entries = await self._client.get_deal_flow(deal_id)
        except IntegrationError as exc:
            logger.warning("pipedrive_mql.flow_failed", deal_id=deal_id, error=str(exc))
            return None

        changes = [e for e in entries if e.get("object") == "dealChange"]
        mql_labels = set(self.mql_label_ids)

        for entry in changes:
            data = entry.get("data") or {}
            if data.get("field_key") == "label" and str(data.get("new_value") or "") in mql_labels:
                return data.get("log_time") or entry.get("timestamp")

        for entry in changes:
            data = entry.get("data") or {}
            if (
                data.get("field_key") == "stage_id"
                and str(data.get("new_value") or "") in self._conversation_stage_ids
            ):
                return data.get("log_time") or entry.get("timestamp")

        return None
