"""MQL persistence models.

- MqlLeadModel: one row per (source, external_id) lead seen by a sync
- MqlMonthlySnapshotModel: one row per (year, month); upserted, never deleted
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class MqlLeadModel(Base):
    """A deduplicated lead from Pipedrive or SendPulse.

    ``payload`` keeps the normalized source record; the repeat-deal backfill
    reads won deals back out of it.
    """

    __tablename__ = "mql_leads"
    __table_args__ = (
        UniqueConstraint("source", "external_id", name="uq_mql_lead_source_external"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    username: Mapped[str | None] = mapped_column(String(300), nullable=True)
    first_seen_month: Mapped[date] = mapped_column(Date, nullable=False)
    channel_bucket: Mapped[str | None] = mapped_column(String(32), nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class MqlMonthlySnapshotModel(Base):
    """Monthly MQL rollup written by the sync job and read by the report."""

    __tablename__ = "mql_monthly_snapshots"
    __table_args__ = (UniqueConstraint("year", "month", name="uq_mql_snapshot_year_month"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    sendpulse_mql: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    pipedrive_mql: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    combined_mql: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    won_deals: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    closed_deals: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    repeat_deals: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    retention_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    marketing_expense: Mapped[float] = mapped_column(Float, default=0.0, server_default="0")
    subscribers: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    new_subscribers: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    cost_per_subscriber: Mapped[float | None] = mapped_column(Float, nullable=True)
    cost_per_mql: Mapped[float | None] = mapped_column(Float, nullable=True)
    cost_per_deal: Mapped[float | None] = mapped_column(Float, nullable=True)
    channel_breakdown: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    pipedrive_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    sendpulse_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pnl_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
