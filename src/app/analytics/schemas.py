"""Pydantic schemas for the MQL pipeline.

- Source records: MqlDeal (Pipedrive), SendpulseContact (Instagram bot)
- Collector results: MqlDealsResult, SendpulseContactsResult
- Monthly dataset: MonthSources, MonthMetrics, SyncTimestamps, MqlDataset
- Persistence input: MqlLead
- Job results: MqlSyncResult, ExpensesResult
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field

from src.app.analytics.normalizer import month_keys


# ── Source Records ──────────────────────────────────────────────────────────


class MqlDeal(BaseModel):
    """A Pipedrive deal carrying an MQL label, flattened for counting."""

    id: int
    title: str | None = None
    label_id: str | None = None
    stage_id: int | None = None
    pipeline_id: int | None = None
    status: str | None = None
    value: float | None = None
    currency: str | None = None
    add_time: str | None = None
    update_time: str | None = None
    won_time: str | None = None
    close_time: str | None = None
    lost_time: str | None = None
    person_id: int | None = None
    person_name: str | None = None
    email: str | None = None
    username: str | None = None
    phone: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    channel_bucket: str = "unknown"
    first_seen_at: str | None = None
    first_seen_month: str | None = None
    person_label: str | None = None
    person_label_id: str | None = None
    is_repeat_customer: bool = False
    sendpulse_id: str | None = None


class MqlDealsResult(BaseModel):
    deals: list[MqlDeal] = Field(default_factory=list)
    cutoff_hit: bool = False
    pages: int = 0
    scanned: int = 0
    fetched_at: datetime | None = None


class SendpulseContact(BaseModel):
    """An Instagram bot contact tagged as MQL."""

    external_id: str | None = None
    instagram_id: str | None = None
    username: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None
    follower_count: int | None = None
    tags: list[Any] = Field(default_factory=list)
    created_at: str | None = None
    last_activity_at: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class SendpulseContactsResult(BaseModel):
    contacts: list[SendpulseContact] = Field(default_factory=list)
    fetched_at: datetime | None = None


# ── Monthly Dataset ─────────────────────────────────────────────────────────


class SourceCount(BaseModel):
    mql: int | float = 0


class CombinedCounts(BaseModel):
    mql: int | float = 0
    won: int = 0
    closed: int = 0
    repeat: int = 0
    conversion: float = 0.0


class MonthSources(BaseModel):
    pipedrive: SourceCount = Field(default_factory=SourceCount)
    sendpulse: SourceCount = Field(default_factory=SourceCount)
    combined: CombinedCounts = Field(default_factory=CombinedCounts)


class MonthMetrics(BaseModel):
    budget: float = 0.0
    subscribers: int = 0
    new_subscribers: int = 0
    cost_per_subscriber: float | None = None
    cost_per_mql: float | None = None
    cost_per_deal: float | None = None


class SyncTimestamps(BaseModel):
    pipedrive: datetime | None = None
    sendpulse: datetime | None = None
    pnl: datetime | None = None


class MqlLead(BaseModel):
    source: str
    external_id: str
    email: str | None = None
    username: str | None = None
    first_seen_month: date | None = None
    channel_bucket: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class MqlDataset(BaseModel):
    """Twelve months of counters for one year, keyed by ``"YYYY-MM"``.

    ``leads`` and ``dedupe`` are working state for a sync run and are left
    out of serialized output.
    """

    year: int
    months: list[str]
    sources: dict[str, MonthSources]
    channels: dict[str, dict[str, int]]
    metrics: dict[str, MonthMetrics]
    sync: SyncTimestamps = Field(default_factory=SyncTimestamps)
    leads: list[MqlLead] = Field(default_factory=list, exclude=True)
    dedupe: set[str] = Field(default_factory=set, exclude=True)

    @classmethod
    def empty(cls, year: int) -> MqlDataset:
        months = month_keys(year)
        return cls(
            year=year,
            months=months,
            sources={m: MonthSources() for m in months},
            channels={m: {} for m in months},
            metrics={m: MonthMetrics() for m in months},
        )

    def track_lead(self, dedupe_key: str | None) -> bool:
        """Record a lead identity. Returns True if it was already seen."""
        if not dedupe_key:
            return False
        if dedupe_key in self.dedupe:
            return True
        self.dedupe.add(dedupe_key)
        return False


# ── Job Results ─────────────────────────────────────────────────────────────


class MqlSyncResult(BaseModel):
    year: int
    months: list[str]
    sync: SyncTimestamps
    repeats: dict[str, int] = Field(default_factory=dict)


class ExpensesResult(BaseModel):
    year: int
    months: dict[str, float]
    total: float = 0.0
