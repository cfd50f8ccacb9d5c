"""Proforma generation endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from src.app.api.deps import require_api_key, require_service

router = APIRouter(prefix="/invoices", tags=["invoices"], dependencies=[Depends(require_api_key)])


@router.post("/process")
async def process_pending(request: Request) -> dict[str, Any]:
    """Generate proformas for every open deal flagged with the Proforma invoice type."""
    service = require_service(request, "invoices")
    batch = await service.process_pending_invoices()
    return batch.model_dump(mode="json")


@router.post("/{deal_id}")
async def process_deal(deal_id: int, request: Request) -> dict[str, Any]:
    service = require_service(request, "invoices")
    result = await service.process_deal_invoice(deal_id)
    return result.model_dump(mode="json")
