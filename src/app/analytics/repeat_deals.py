"""Repeat-deal counts and retention rate per month.

A repeat deal is any won deal for a person after their first win. Counts
are derived from the Pipedrive lead payloads stored by the MQL sync and
written onto existing snapshots only.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

import structlog

from src.app.analytics.normalizer import get_month_key, parse_timestamp
from src.app.analytics.repository import MqlRepository

logger = structlog.get_logger(__name__)

WIN_TIME_FIELDS = ("won_time", "close_time", "update_time", "add_time")


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _is_won(payload: dict[str, Any]) -> bool:
    return (payload.get("status") or "").lower() == "won" or bool(payload.get("won_time"))


def _won_at(payload: dict[str, Any]) -> str | None:
    for field in WIN_TIME_FIELDS:
        if payload.get(field):
            return payload[field]
    return None


def _sort_key(won_at: str) -> datetime:
    parsed = parse_timestamp(won_at) or datetime.min
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def calculate_repeats_by_month(payloads: list[dict[str, Any]], year: int) -> dict[str, int]:
    wins_by_person: dict[str, list[str]] = defaultdict(list)
    for payload in payloads:
        if not _is_won(payload):
            continue
        person_id = _clean(payload.get("person_id"))
        won_at = _won_at(payload)
        if person_id is None or _clean(payload.get("id")) is None or not won_at:
            continue
        wins_by_person[person_id].append(won_at)

    repeats: dict[str, int] = {}
    prefix = f"{year}-"
    for wins in wins_by_person.values():
        wins.sort(key=_sort_key)
        for won_at in wins[1:]:
            month_key = get_month_key(won_at)
            if month_key and month_key.startswith(prefix):
                repeats[month_key] = repeats.get(month_key, 0) + 1
    return repeats


async def backfill_repeat_deals(repository: MqlRepository, year: int) -> dict[str, Any]:
    payloads = await repository.fetch_lead_payloads("pipedrive")
    repeats = calculate_repeats_by_month(payloads, year)

    updated = 0
    for snapshot in await repository.fetch_snapshots(year):
        month_key = f"{snapshot.year}-{snapshot.month:02d}"
        repeat_count = repeats.get(month_key, 0)
        won = snapshot.won_deals or 0
        await repository.update_snapshot(
            snapshot.year,
            snapshot.month,
            {
                "repeat_deals": repeat_count,
                "retention_rate": repeat_count / won if won > 0 else None,
            },
        )
        updated += 1

    logger.info("repeat_deals.backfilled", year=year, updated=updated, repeats=repeats)
    return {"year": year, "updated": updated, "repeats": repeats}
