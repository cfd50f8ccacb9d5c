"""API tests: authentication, service availability and route wiring."""

from __future__ import annotations

from datetime import date, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from src.app.analytics.schemas import MqlDataset, MqlSyncResult, SyncTimestamps
from src.app.invoices.schemas import InvoiceBatchResult, InvoiceResult
from src.app.payments.analyzer import PaymentState, PaymentTypeState
from src.app.payments.schedule import ScheduleType
from src.app.payments.sessions import SessionResult
from src.app.scheduler import OpsScheduler
from src.app.services.base import PipedriveError


@pytest.fixture
def services():
    return SimpleNamespace(
        pipedrive=MagicMock(get_deal=AsyncMock(return_value={})),
        sendpulse=None,
        wfirma=MagicMock(),
        calendar=None,
        mql_repository=MagicMock(
            fetch_lead_payloads=AsyncMock(return_value=[]),
            fetch_snapshots=AsyncMock(return_value=[]),
        ),
        mql_sync=MagicMock(),
        mql_report=MagicMock(),
        meet_reminders=None,
        proforma_reminders=MagicMock(),
        invoices=MagicMock(),
        payment_sessions=MagicMock(),
        payment_analyzer=MagicMock(),
    )


@pytest.fixture
def app_with_services(app, services):
    app.state.services = services
    return app


# ── Auth and availability ──────────────────────────────────────────────────


class TestAuth:
    async def test_missing_key_rejected(self, app_with_services):
        transport = ASGITransport(app=app_with_services)
        async with AsyncClient(transport=transport, base_url="http://test") as anon:
            response = await anon.post("/api/v1/invoices/process")
        assert response.status_code == 401

    async def test_wrong_key_rejected(self, client, app_with_services):
        response = await client.post("/api/v1/invoices/process", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    async def test_health_needs_no_key(self, app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as anon:
            response = await anon.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "X-Request-ID" in response.headers


class TestAvailability:
    async def test_services_not_initialized(self, client):
        response = await client.post("/api/v1/invoices/process")
        assert response.status_code == 503

    async def test_disabled_integration(self, client, app_with_services):
        response = await client.post("/api/v1/reminders/calendar-scan")
        assert response.status_code == 503
        assert response.json()["detail"] == "meet_reminders not configured"

    async def test_scheduler_not_running(self, client):
        response = await client.get("/api/v1/scheduler/status")
        assert response.status_code == 503


# ── Invoices ───────────────────────────────────────────────────────────────


class TestInvoiceRoutes:
    async def test_process_batch(self, client, services, app_with_services):
        services.invoices.process_pending_invoices = AsyncMock(
            return_value=InvoiceBatchResult(
                total=1,
                successful=1,
                results=[InvoiceResult(success=True, deal_id=5, invoice_id="77")],
            )
        )
        response = await client.post("/api/v1/invoices/process")

        assert response.status_code == 200
        body = response.json()
        assert body["successful"] == 1
        assert body["results"][0]["invoice_id"] == "77"

    async def test_process_single_deal(self, client, services, app_with_services):
        services.invoices.process_deal_invoice = AsyncMock(
            return_value=InvoiceResult(success=False, deal_id=9, error="missing email")
        )
        response = await client.post("/api/v1/invoices/9")

        assert response.json()["error"] == "missing email"
        services.invoices.process_deal_invoice.assert_awaited_once_with(9)

    async def test_integration_error_maps_to_502(self, client, services, app_with_services):
        services.invoices.process_deal_invoice = AsyncMock(
            side_effect=PipedriveError("Pipedrive: HTTP 500", status_code=500)
        )
        response = await client.post("/api/v1/invoices/9")
        assert response.status_code == 502
        assert "Pipedrive" in response.json()["detail"]


# ── Payments ───────────────────────────────────────────────────────────────


class TestPaymentRoutes:
    async def test_create_session(self, client, services, app_with_services):
        services.payment_sessions.create_session = AsyncMock(
            return_value=SessionResult(success=True, deal_id=3, session_id="cs_1", amount=1000.0)
        )
        response = await client.post(
            "/api/v1/payments/sessions", json={"deal_id": 3, "payment_type": "deposit"}
        )

        assert response.status_code == 200
        assert response.json()["session_id"] == "cs_1"
        services.payment_sessions.create_session.assert_awaited_once_with(3, "deposit", trigger="api")

    async def test_locked_session_conflict(self, client, services, app_with_services):
        services.payment_sessions.create_session = AsyncMock(
            return_value=SessionResult(success=False, deal_id=3, error="locked")
        )
        response = await client.post("/api/v1/payments/sessions", json={"deal_id": 3})
        assert response.status_code == 409

    async def test_invalid_payment_type(self, client, app_with_services):
        response = await client.post(
            "/api/v1/payments/sessions", json={"deal_id": 3, "payment_type": "bonus"}
        )
        assert response.status_code == 422

    async def test_deal_state(self, client, services, app_with_services):
        close_date = date.today() + timedelta(days=90)
        services.pipedrive.get_deal = AsyncMock(
            return_value={"id": 3, "expected_close_date": close_date.isoformat()}
        )
        services.payment_analyzer.analyze = AsyncMock(
            return_value=PaymentState(
                schedule=ScheduleType.SPLIT,
                deposit=PaymentTypeState(exists=True, paid=True),
                rest=PaymentTypeState(),
                single=PaymentTypeState(),
                needs_rest=True,
                total_payments=1,
            )
        )
        response = await client.get("/api/v1/payments/deals/3/state")

        body = response.json()
        assert response.status_code == 200
        assert body["needs_rest"] is True
        assert body["second_payment_date"] is not None

    async def test_deal_state_not_found(self, client, app_with_services):
        response = await client.get("/api/v1/payments/deals/3/state")
        assert response.status_code == 404


# ── Analytics ──────────────────────────────────────────────────────────────


class TestAnalyticsRoutes:
    async def test_summary(self, client, services, app_with_services):
        services.mql_report.get_monthly_summary = AsyncMock(return_value=MqlDataset.empty(2025))
        response = await client.get("/api/v1/analytics/mql-summary", params={"year": 2025})

        body = response.json()
        assert body["year"] == 2025
        assert len(body["months"]) == 12
        assert "leads" not in body

    async def test_year_validated(self, client, app_with_services):
        response = await client.get("/api/v1/analytics/mql-summary", params={"year": 1999})
        assert response.status_code == 422

    async def test_sync(self, client, services, app_with_services):
        services.mql_sync.run = AsyncMock(
            return_value=MqlSyncResult(year=2025, months=[], sync=SyncTimestamps(), repeats={"2025-02": 1})
        )
        response = await client.post("/api/v1/analytics/mql-sync", params={"year": 2025})

        body = response.json()
        assert body["success"] is True
        assert body["repeats"] == {"2025-02": 1}

    async def test_repeat_deals(self, client, app_with_services):
        response = await client.post("/api/v1/analytics/repeat-deals", params={"year": 2025})
        assert response.json() == {"success": True, "year": 2025, "updated": 0, "repeats": {}}


# ── Reminders ──────────────────────────────────────────────────────────────


class TestReminderRoutes:
    async def test_upcoming_proforma(self, client, services, app_with_services):
        services.proforma_reminders.find_all_upcoming_tasks = AsyncMock(return_value=[])
        response = await client.get("/api/v1/reminders/proforma")
        assert response.json() == {"count": 0, "tasks": []}


# ── Scheduler ──────────────────────────────────────────────────────────────


class TestSchedulerRoutes:
    async def test_manual_run(self, client, app):
        app.state.scheduler = OpsScheduler({"mql_sync": AsyncMock(return_value={"year": 2025})})
        response = await client.post("/api/v1/scheduler/run/mql_sync")

        body = response.json()
        assert body["status"] == "success"
        assert body["trigger"] == "manual"

    async def test_unknown_job(self, client, app):
        app.state.scheduler = OpsScheduler({"mql_sync": AsyncMock()})
        response = await client.post("/api/v1/scheduler/run/nope")

        assert response.status_code == 404
        assert "Available: mql_sync" in response.json()["detail"]

    async def test_status(self, client, app):
        app.state.scheduler = OpsScheduler({"mql_sync": AsyncMock()})
        response = await client.get("/api/v1/scheduler/status")
        assert response.json()["running"] is False
