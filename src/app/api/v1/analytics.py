"""MQL analytics endpoints: monthly summary, sync and backfills."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from src.app.analytics.repeat_deals import backfill_repeat_deals
from src.app.api.deps import get_services, require_api_key

router = APIRouter(prefix="/analytics", tags=["analytics"], dependencies=[Depends(require_api_key)])

YearQuery = Query(default=None, ge=2000, le=2100, description="Defaults to the current year")


@router.get("/mql-summary")
async def mql_summary(request: Request, year: int | None = YearQuery) -> dict[str, Any]:
    """Monthly MQL dataset (snapshots, or baseline plus live SendPulse counts)."""
    services = get_services(request)
    dataset = await services.mql_report.get_monthly_summary(year)
    return dataset.model_dump(mode="json")


@router.post("/mql-sync")
async def mql_sync(request: Request, year: int | None = YearQuery) -> dict[str, Any]:
    services = get_services(request)
    result = await services.mql_sync.run(year)
    return {"success": True, **result.model_dump(mode="json")}


@router.post("/mql-expenses")
async def mql_expenses(request: Request, year: int | None = YearQuery) -> dict[str, Any]:
    """Refresh marketing spend and cost metrics on existing snapshots only."""
    services = get_services(request)
    result = await services.mql_sync.update_marketing_expenses_only(year)
    return {"success": True, **result}


@router.post("/repeat-deals")
async def repeat_deals(request: Request, year: int | None = YearQuery) -> dict[str, Any]:
    services = get_services(request)
    target_year = year or datetime.now(timezone.utc).year
    result = await backfill_repeat_deals(services.mql_repository, target_year)
    return {"success": True, **result}
