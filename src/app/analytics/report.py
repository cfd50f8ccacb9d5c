"""Read side of the MQL pipeline.

Serves stored snapshots when the year has any. For a year that was never
synced, builds the dataset from the baseline table and a live SendPulse
count so the report is never empty.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.app.analytics.baseline import SendpulseBaseline
from src.app.analytics.models import MqlMonthlySnapshotModel
from src.app.analytics.normalizer import get_month_key
from src.app.analytics.repository import MqlRepository
from src.app.analytics.schemas import MqlDataset
from src.app.analytics.sendpulse_mql import SendpulseMqlClient

logger = structlog.get_logger(__name__)


class MqlReportService:
    def __init__(
        self,
        repository: MqlRepository,
        baseline: SendpulseBaseline,
        sendpulse_client: SendpulseMqlClient | None = None,
    ) -> None:
        self._repository = repository
        self._baseline = baseline
        self._sendpulse = sendpulse_client

    async def get_monthly_summary(self, year: int | None = None) -> MqlDataset:
        target_year = year or datetime.now(timezone.utc).year
        snapshots = await self._repository.fetch_snapshots(target_year)
        if snapshots:
            return build_dataset_from_snapshots(snapshots, target_year)

        dataset = MqlDataset.empty(target_year)
        self._apply_baseline(dataset)
        await self._populate_sendpulse(dataset)
        return dataset

    def _apply_baseline(self, dataset: MqlDataset) -> None:
        for month_key in dataset.months:
            value = self._baseline.value(dataset.year, month_key)
            if value is None:
                continue
            row = dataset.sources[month_key]
            row.sendpulse.mql = value
            row.combined.mql = row.pipedrive.mql + value

    async def _populate_sendpulse(self, dataset: MqlDataset) -> None:
        if self._sendpulse is None:
            return
        try:
            result = await self._sendpulse.fetch_contacts()
        except Exception as exc:
            logger.error("mql_report.sendpulse_failed", year=dataset.year, error=str(exc))
            return

        for contact in result.contacts:
            month_key = get_month_key(contact.created_at or contact.last_activity_at)
            if month_key not in dataset.sources:
                continue
            if self._baseline.value(dataset.year, month_key) is not None:
                continue
            row = dataset.sources[month_key]
            row.sendpulse.mql += 1
            row.combined.mql = row.pipedrive.mql + row.sendpulse.mql

        dataset.sync.sendpulse = result.fetched_at


def _nullable(value: float | None) -> float | None:
    return None if value is None else float(value)


def build_dataset_from_snapshots(
    snapshots: list[MqlMonthlySnapshotModel], year: int
) -> MqlDataset:
    dataset = MqlDataset.empty(year)

    for snapshot in snapshots:
        month_key = f"{snapshot.year}-{snapshot.month:02d}"
        if month_key not in dataset.sources:
            continue
        row = dataset.sources[month_key]
        metrics = dataset.metrics[month_key]

        row.pipedrive.mql = snapshot.pipedrive_mql or 0
        row.sendpulse.mql = snapshot.sendpulse_mql or 0
        row.combined.mql = snapshot.combined_mql or 0
        row.combined.won = snapshot.won_deals or 0
        row.combined.closed = snapshot.closed_deals or 0
        row.combined.repeat = snapshot.repeat_deals or 0
        row.combined.conversion = (
            row.combined.won / row.combined.mql
            if row.combined.mql > 0 and row.combined.won > 0
            else 0.0
        )

        metrics.budget = float(snapshot.marketing_expense or 0)
        metrics.subscribers = snapshot.subscribers or 0
        metrics.new_subscribers = snapshot.new_subscribers or 0
        metrics.cost_per_subscriber = _nullable(snapshot.cost_per_subscriber)
        metrics.cost_per_mql = _nullable(snapshot.cost_per_mql)
        metrics.cost_per_deal = _nullable(snapshot.cost_per_deal)

        dataset.channels[month_key] = dict(snapshot.channel_breakdown or {})

    dataset.sync.pipedrive = next(
        (s.pipedrive_sync_at for s in snapshots if s.pipedrive_sync_at), None
    )
    dataset.sync.sendpulse = next(
        (s.sendpulse_sync_at for s in snapshots if s.sendpulse_sync_at), None
    )
    dataset.sync.pnl = next((s.pnl_sync_at for s in snapshots if s.pnl_sync_at), None)
    return dataset
