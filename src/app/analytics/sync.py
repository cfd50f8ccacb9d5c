"""MQL sync: builds a year of monthly counters and persists them as snapshots.

Run order for one year:
1. collect SendPulse contacts (Instagram MQL tag)
2. collect Pipedrive MQL deals (first-seen month, channel, won/closed)
3. collect marketing spend
4. fill empty SendPulse months from the baseline table
5. conversion = won / mql
6. cost per subscriber / MQL / deal
7. upsert leads and the twelve snapshots
8. recompute repeat deals and retention on the stored snapshots

A lead identity (email, else username, else source id) adds to the combined
count once per run; each source still counts its own leads.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

import structlog

from src.app.analytics.baseline import SendpulseBaseline
from src.app.analytics.expenses import MarketingExpenseClient
from src.app.analytics.normalizer import build_dedupe_key, get_month_key
from src.app.analytics.pipedrive_mql import PipedriveMqlClient
from src.app.analytics.repeat_deals import backfill_repeat_deals
from src.app.analytics.repository import MqlRepository
from src.app.analytics.schemas import MqlDataset, MqlDeal, MqlLead, MqlSyncResult
from src.app.analytics.sendpulse_mql import SendpulseMqlClient

logger = structlog.get_logger(__name__)


def _first_of_month(month_key: str | None) -> date | None:
    if not month_key:
        return None
    year, month = month_key[:7].split("-")
    return date(int(year), int(month), 1)


def _ratio(numerator: float, denominator: float) -> float | None:
    if numerator > 0 and denominator > 0:
        return numerator / denominator
    return None


def compute_cost_metrics(budget: float, mql: int, won: int, new_subscribers: int) -> dict[str, float | None]:
    return {
        "cost_per_subscriber": _ratio(budget, new_subscribers),
        "cost_per_mql": _ratio(budget, mql),
        "cost_per_deal": _ratio(budget, won),
    }


class MqlSyncService:
    """Args:
        repository: Snapshot and lead storage.
        sendpulse_client: Instagram MQL contact collector (None disables the source).
        pipedrive_client: Pipedrive MQL deal collector.
        expense_client: Marketing spend aggregator.
        baseline: Historical SendPulse counts.
    """

    def __init__(
        self,
        repository: MqlRepository,
        sendpulse_client: SendpulseMqlClient | None,
        pipedrive_client: PipedriveMqlClient,
        expense_client: MarketingExpenseClient,
        baseline: SendpulseBaseline,
    ) -> None:
        self._repository = repository
        self._sendpulse = sendpulse_client
        self._pipedrive = pipedrive_client
        self._expenses = expense_client
        self._baseline = baseline

    async def run(self, year: int | None = None) -> MqlSyncResult:
        target_year = year or datetime.now(timezone.utc).year
        log = logger.bind(year=target_year)
        log.info("mql_sync.started")

        dataset = MqlDataset.empty(target_year)

        await self.collect_sendpulse(dataset)
        await self.collect_pipedrive(dataset)
        await self.collect_marketing_expenses(dataset)
        self.apply_baseline(dataset)
        self.update_conversion(dataset)
        self.update_cost_metrics(dataset)
        await self.persist(dataset)
        backfill = await backfill_repeat_deals(self._repository, target_year)

        log.info(
            "mql_sync.completed",
            leads=len(dataset.leads),
            combined_mql=sum(dataset.sources[m].combined.mql for m in dataset.months),
        )
        return MqlSyncResult(
            year=target_year,
            months=dataset.months,
            sync=dataset.sync,
            repeats=backfill["repeats"],
        )

    # ── Collection ───────────────────────────────────────────────────────

    async def collect_sendpulse(self, dataset: MqlDataset) -> None:
        if self._sendpulse is None:
            logger.warning("mql_sync.sendpulse_disabled")
            return
        try:
            result = await self._sendpulse.fetch_contacts()
        except Exception as exc:
            logger.error("mql_sync.sendpulse_failed", error=str(exc))
            return

        for contact in result.contacts:
            month_key = get_month_key(contact.created_at or contact.last_activity_at)
            dedupe_key = build_dedupe_key(
                "sendpulse", contact.external_id, contact.email, contact.username
            )
            if month_key not in dataset.sources:
                dataset.track_lead(dedupe_key)
                continue

            row = dataset.sources[month_key]
            seen_before = dataset.track_lead(dedupe_key)
            row.sendpulse.mql += 1
            if not seen_before:
                row.combined.mql += 1

            external_id = contact.external_id or contact.email or contact.username
            if external_id:
                dataset.leads.append(
                    MqlLead(
                        source="sendpulse",
                        external_id=str(external_id),
                        email=contact.email,
                        username=contact.username,
                        first_seen_month=_first_of_month(month_key),
                        payload=contact.raw,
                    )
                )

        dataset.sync.sendpulse = result.fetched_at or datetime.now(timezone.utc)

    async def collect_pipedrive(self, dataset: MqlDataset) -> None:
        try:
            result = await self._pipedrive.fetch_mql_deals(resolve_first_seen_from_flow=True)
        except Exception as exc:
            logger.error("mql_sync.pipedrive_failed", error=str(exc))
            return

        dataset.sync.pipedrive = result.fetched_at or datetime.now(timezone.utc)

        for deal in result.deals:
            month_key = deal.first_seen_month[:7] if deal.first_seen_month else None
            dedupe_key = build_dedupe_key("pipedrive", deal.id, deal.email, deal.username)

            if month_key not in dataset.sources:
                dataset.track_lead(dedupe_key)
            else:
                row = dataset.sources[month_key]
                seen_before = dataset.track_lead(dedupe_key)
                row.pipedrive.mql += 1
                if not seen_before:
                    row.combined.mql += 1
                bucket = deal.channel_bucket
                if bucket:
                    channels = dataset.channels[month_key]
                    channels[bucket] = channels.get(bucket, 0) + 1

            self._increment_won_and_closed(dataset, deal)

            dataset.leads.append(
                MqlLead(
                    source="pipedrive",
                    external_id=str(deal.id),
                    email=deal.email,
                    username=deal.username,
                    first_seen_month=_first_of_month(month_key),
                    channel_bucket=deal.channel_bucket,
                    payload=deal.model_dump(mode="json"),
                )
            )

    @staticmethod
    def _increment_won_and_closed(dataset: MqlDataset, deal: MqlDeal) -> None:
        won_key = get_month_key(deal.won_time)
        if won_key in dataset.sources:
            dataset.sources[won_key].combined.won += 1

        closed_key = get_month_key(deal.close_time or deal.won_time or deal.lost_time)
        if closed_key in dataset.sources:
            dataset.sources[closed_key].combined.closed += 1

    async def collect_marketing_expenses(self, dataset: MqlDataset) -> None:
        try:
            expenses = await self._expenses.get_marketing_expenses(dataset.year)
        except Exception as exc:
            logger.error("mql_sync.expenses_failed", error=str(exc))
            return
        for month_key in dataset.months:
            dataset.metrics[month_key].budget = expenses.months.get(month_key, 0.0)
        dataset.sync.pnl = datetime.now(timezone.utc)

    # ── Derived values ───────────────────────────────────────────────────

    def apply_baseline(self, dataset: MqlDataset) -> None:
        for month_key in dataset.months:
            value = self._baseline.value(dataset.year, month_key)
            row = dataset.sources[month_key]
            if value is None or row.sendpulse.mql > 0:
                continue
            row.sendpulse.mql = value
            row.combined.mql = row.pipedrive.mql + value

    @staticmethod
    def update_conversion(dataset: MqlDataset) -> None:
        for month_key in dataset.months:
            combined = dataset.sources[month_key].combined
            combined.conversion = combined.won / combined.mql if combined.mql > 0 else 0.0

    @staticmethod
    def update_cost_metrics(dataset: MqlDataset) -> None:
        for month_key in dataset.months:
            metrics = dataset.metrics[month_key]
            combined = dataset.sources[month_key].combined
            costs = compute_cost_metrics(
                metrics.budget, combined.mql, combined.won, metrics.new_subscribers
            )
            metrics.cost_per_subscriber = costs["cost_per_subscriber"]
            metrics.cost_per_mql = costs["cost_per_mql"]
            metrics.cost_per_deal = costs["cost_per_deal"]

    # ── Persistence ──────────────────────────────────────────────────────

    async def persist(self, dataset: MqlDataset) -> None:
        leads = [lead for lead in dataset.leads if lead.first_seen_month is not None]
        if leads:
            await self._repository.bulk_upsert_leads(leads)

        for month_key in dataset.months:
            year, month = (int(part) for part in month_key.split("-"))
            row = dataset.sources[month_key]
            metrics = dataset.metrics[month_key]
            # repeat_deals/retention_rate are left out so stored values survive.
            await self._repository.upsert_snapshot(
                year,
                month,
                {
                    "sendpulse_mql": round(row.sendpulse.mql),
                    "pipedrive_mql": row.pipedrive.mql,
                    "combined_mql": round(row.combined.mql),
                    "won_deals": row.combined.won,
                    "closed_deals": row.combined.closed,
                    "marketing_expense": metrics.budget,
                    "subscribers": metrics.subscribers,
                    "new_subscribers": metrics.new_subscribers,
                    "cost_per_subscriber": metrics.cost_per_subscriber,
                    "cost_per_mql": metrics.cost_per_mql,
                    "cost_per_deal": metrics.cost_per_deal,
                    "channel_breakdown": dataset.channels[month_key],
                    "pipedrive_sync_at": dataset.sync.pipedrive,
                    "sendpulse_sync_at": dataset.sync.sendpulse,
                    "pnl_sync_at": dataset.sync.pnl,
                },
            )
        logger.info("mql_sync.persisted", leads=len(leads), snapshots=len(dataset.months))

    async def update_marketing_expenses_only(self, year: int | None = None) -> dict[str, Any]:
        target_year = year or datetime.now(timezone.utc).year
        snapshots = await self._repository.fetch_snapshots(target_year)
        if not snapshots:
            logger.warning("mql_sync.no_snapshots_for_expenses", year=target_year)
            return {"year": target_year, "updated": 0}

        expenses = await self._expenses.get_marketing_expenses(target_year)
        now = datetime.now(timezone.utc)
        updated = 0
        for snapshot in snapshots:
            budget = expenses.months.get(f"{snapshot.year}-{snapshot.month:02d}", 0.0)
            costs = compute_cost_metrics(
                budget,
                snapshot.combined_mql or 0,
                snapshot.won_deals or 0,
                snapshot.new_subscribers or 0,
            )
            await self._repository.update_snapshot(
                snapshot.year,
                snapshot.month,
                {"marketing_expense": budget, "pnl_sync_at": now, **costs},
            )
            updated += 1

        logger.info("mql_sync.expenses_updated", year=target_year, updated=updated)
        return {"year": target_year, "updated": updated}
