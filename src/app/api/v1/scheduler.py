"""Scheduler status and manual job triggers."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.app.api.deps import get_scheduler, require_api_key

router = APIRouter(prefix="/scheduler", tags=["scheduler"], dependencies=[Depends(require_api_key)])


@router.get("/status")
async def scheduler_status(request: Request) -> dict[str, Any]:
    return get_scheduler(request).get_status()


@router.post("/run/{job}")
async def run_job(job: str, request: Request) -> dict[str, Any]:
    scheduler = get_scheduler(request)
    try:
        run = await scheduler.run_manual(job)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown job: {job}. Available: {', '.join(scheduler.jobs)}",
        )
    return run.model_dump(mode="json")
