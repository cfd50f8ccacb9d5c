"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import analytics, health, invoices, payments, reminders, scheduler

router = APIRouter(prefix="/api/v1")

router.include_router(health.router)
router.include_router(analytics.router)
router.include_router(reminders.router)
router.include_router(invoices.router)
router.include_router(payments.router)
router.include_router(scheduler.router)
