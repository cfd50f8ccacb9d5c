"""Stripe checkout session endpoints."""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.app.api.deps import get_services, require_api_key, require_service
from src.app.payments.schedule import PaymentScheduleService

router = APIRouter(prefix="/payments", tags=["payments"], dependencies=[Depends(require_api_key)])


class CreateSessionRequest(BaseModel):
    deal_id: int
    payment_type: Literal["deposit", "rest", "single"] | None = None


@router.post("/sessions")
async def create_session(body: CreateSessionRequest, request: Request) -> dict[str, Any]:
    creator = require_service(request, "payment_sessions")
    result = await creator.create_session(body.deal_id, body.payment_type, trigger="api")
    if not result.success and result.error == "locked":
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A session is already being created for this deal",
        )
    return result.model_dump(mode="json")


@router.post("/sessions/{session_id}/cancel")
async def cancel_session(session_id: str, request: Request) -> dict[str, Any]:
    creator = require_service(request, "payment_sessions")
    return await creator.cancel_session(session_id)


@router.post("/refresh")
async def refresh_sessions(request: Request) -> dict[str, Any]:
    creator = require_service(request, "payment_sessions")
    return await creator.refresh_open_sessions()


@router.get("/deals/{deal_id}/state")
async def deal_payment_state(deal_id: int, request: Request) -> dict[str, Any]:
    """Which Stripe payments the deal still needs under its current schedule."""
    services = get_services(request)
    deal = await services.pipedrive.get_deal(deal_id)
    if not deal:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
    schedule = PaymentScheduleService.determine_schedule(
        deal.get("expected_close_date") or deal.get("close_date")
    )
    state = await services.payment_analyzer.analyze(deal_id, schedule)
    return {
        "deal_id": deal_id,
        "second_payment_date": (
            schedule.second_payment_date.isoformat() if schedule.second_payment_date else None
        ),
        **state.model_dump(mode="json"),
    }
