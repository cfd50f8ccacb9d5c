"""Reminder endpoints: Google Meet scan/delivery and proforma second payments."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from src.app.api.deps import require_api_key, require_service

router = APIRouter(prefix="/reminders", tags=["reminders"], dependencies=[Depends(require_api_key)])


@router.post("/calendar-scan")
async def calendar_scan(request: Request) -> dict[str, Any]:
    service = require_service(request, "meet_reminders")
    summary = await service.daily_calendar_scan(trigger="api")
    return summary.model_dump(mode="json")


@router.post("/process")
async def process_reminders(request: Request) -> dict[str, Any]:
    service = require_service(request, "meet_reminders")
    summary = await service.process_scheduled_reminders(trigger="api")
    return summary.model_dump(mode="json")


@router.get("/proforma")
async def upcoming_proforma_reminders(request: Request) -> dict[str, Any]:
    """Deals with a paid deposit and an outstanding second payment, soonest first."""
    service = require_service(request, "proforma_reminders")
    tasks = await service.find_all_upcoming_tasks()
    return {
        "count": len(tasks),
        "tasks": [task.model_dump(mode="json") for task in tasks],
    }


@router.post("/proforma/process")
async def process_proforma_reminders(request: Request) -> dict[str, Any]:
    service = require_service(request, "proforma_reminders")
    result = await service.process_all_deals(trigger="api")
    return result.model_dump(mode="json")
