"""Async persistence for MQL leads and monthly snapshots.

Both tables are written with PostgreSQL ``INSERT ... ON CONFLICT DO UPDATE``
so re-running a sync for the same year is idempotent. Snapshot upserts only
overwrite the columns they are given; repeat_deals and retention_rate are
owned by the repeat-deal backfill and survive a regular sync.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.analytics.models import MqlLeadModel, MqlMonthlySnapshotModel
from src.app.analytics.schemas import MqlLead

logger = structlog.get_logger(__name__)

LEAD_BATCH_SIZE = 500


class MqlRepository:
    """Leads and snapshots storage.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def bulk_upsert_leads(self, leads: list[MqlLead]) -> int:
        """Insert or refresh leads keyed by (source, external_id)."""
        rows = [
            {
                "source": lead.source,
                "external_id": lead.external_id,
                "email": lead.email,
                "username": lead.username,
                "first_seen_month": lead.first_seen_month,
                "channel_bucket": lead.channel_bucket,
                "payload": lead.payload,
            }
            for lead in leads
            if lead.first_seen_month is not None
        ]
        if not rows:
            return 0

        # One source can report the same lead twice in a page walk; keep the last.
        unique = {(row["source"], row["external_id"]): row for row in rows}
        rows = list(unique.values())

        async for session in self._session_factory():
            for offset in range(0, len(rows), LEAD_BATCH_SIZE):
                batch = rows[offset : offset + LEAD_BATCH_SIZE]
                stmt = insert(MqlLeadModel).values(batch)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["source", "external_id"],
                    set_={
                        "email": stmt.excluded.email,
                        "username": stmt.excluded.username,
                        "first_seen_month": stmt.excluded.first_seen_month,
                        "channel_bucket": stmt.excluded.channel_bucket,
                        "payload": stmt.excluded.payload,
                        "updated_at": func.now(),
                    },
                )
                await session.execute(stmt)
            await session.commit()

        logger.info("mql_repository.leads_upserted", count=len(rows))
        return len(rows)

    async def upsert_snapshot(self, year: int, month: int, data: dict[str, Any]) -> None:
        values = {"year": year, "month": month, **data}
        stmt = insert(MqlMonthlySnapshotModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["year", "month"],
            set_={**{key: stmt.excluded[key] for key in data}, "updated_at": func.now()},
        )
        async for session in self._session_factory():
            await session.execute(stmt)
            await session.commit()

    async def fetch_snapshots(self, year: int) -> list[MqlMonthlySnapshotModel]:
        async for session in self._session_factory():
            stmt = (
                select(MqlMonthlySnapshotModel)
                .where(MqlMonthlySnapshotModel.year == year)
                .order_by(MqlMonthlySnapshotModel.month)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
        return []

    async def update_snapshot(self, year: int, month: int, fields: dict[str, Any]) -> None:
        async for session in self._session_factory():
            stmt = (
                update(MqlMonthlySnapshotModel)
                .where(
                    MqlMonthlySnapshotModel.year == year,
                    MqlMonthlySnapshotModel.month == month,
                )
                .values(**fields, updated_at=func.now())
            )
            await session.execute(stmt)
            await session.commit()

    async def fetch_lead_payloads(self, source: str) -> list[dict[str, Any]]:
        """Stored payloads for every lead of one source."""
        async for session in self._session_factory():
            stmt = select(MqlLeadModel.payload).where(MqlLeadModel.source == source)
            result = await session.execute(stmt)
            return [payload or {} for payload in result.scalars().all()]
        return []
