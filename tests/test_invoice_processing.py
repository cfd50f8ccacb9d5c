"""Tests for proforma generation from Pipedrive deals.

Pipedrive, wFirma, the bank account resolver and the proforma repository are mocks.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.app.invoices.processing import (
    EMAIL_SUBJECT,
    INVOICE_TYPE_DONE,
    InvoiceProcessingService,
    get_customer_email,
    invoice_type_of,
    prepare_contractor_data,
    select_product,
)
from src.app.services.base import WfirmaError
from src.app.services.wfirma import BankAccount, Contractor

FIELD = "invoice_type_key"


def _deal(**overrides) -> dict:
    deal = {
        "id": 7,
        "title": "Coliving Lisbon",
        "value": 1200,
        "currency": "EUR",
        "expected_close_date": "2030-01-20",
        FIELD: "70",
    }
    deal.update(overrides)
    return deal


PERSON = {"id": 3, "name": "Anna Nowak", "email": [{"value": "anna@x.io", "primary": True}]}


@pytest.fixture
def deps():
    pipedrive = MagicMock()
    pipedrive.get_deal_with_related_data = AsyncMock(return_value=(_deal(), PERSON, None))
    pipedrive.get_deal_products = AsyncMock(
        return_value=[{"name": "Coliving Lisbon June", "item_price": 600, "quantity": 2}]
    )
    pipedrive.get_deals = AsyncMock(
        return_value={"deals": [_deal(), _deal(id=8, **{FIELD: "73"}), _deal(id=9, **{FIELD: None})]}
    )
    pipedrive.update_deal = AsyncMock()

    wfirma = MagicMock()
    wfirma.find_contractor_by_email = AsyncMock(return_value=Contractor(id="c-1", email="anna@x.io"))
    wfirma.create_contractor = AsyncMock(return_value=Contractor(id="c-2"))
    wfirma.create_proforma = AsyncMock(return_value=("inv-1", "PRO 5/2025"))
    wfirma.send_invoice_by_email = AsyncMock()
    wfirma.find_label_by_name = AsyncMock(return_value=None)
    wfirma.create_label = AsyncMock(return_value="lab-1")
    wfirma.assign_label_to_document = AsyncMock()

    bank_accounts = MagicMock()
    bank_accounts.is_supported = MagicMock(side_effect=lambda c: (c or "").upper() in {"PLN", "EUR"})
    bank_accounts.supported_currencies = ["EUR", "PLN"]
    bank_accounts.get_for_currency = AsyncMock(return_value=BankAccount(id="acc-eur", name="EUR"))

    proformas = MagicMock()
    proformas.save_proforma = AsyncMock()
    return pipedrive, wfirma, bank_accounts, proformas


@pytest.fixture
def service(deps) -> InvoiceProcessingService:
    pipedrive, wfirma, bank_accounts, proformas = deps
    return InvoiceProcessingService(pipedrive, wfirma, bank_accounts, proformas, FIELD)


# ── Helpers ────────────────────────────────────────────────────────────────


class TestHelpers:
    def test_invoice_type_only_proforma(self):
        assert invoice_type_of({FIELD: "70"}, FIELD) == 70
        assert invoice_type_of({FIELD: 73}, FIELD) is None
        assert invoice_type_of({FIELD: "abc"}, FIELD) is None
        assert invoice_type_of({}, FIELD) is None

    def test_email_person_then_org(self):
        assert get_customer_email(None, {"email": "org@x.io"}) == "org@x.io"
        assert get_customer_email({"email": []}, {"primary_email": "p@x.io"}) == "p@x.io"
        assert get_customer_email(None, None) is None

    def test_contractor_from_organization(self):
        data = prepare_contractor_data(
            PERSON, {"name": "ACME", "business_id": "PL123", "country": "Poland"}, "anna@x.io"
        )
        assert data.name == "ACME"
        assert data.type == "company"
        assert data.zip == "80-000"
        assert data.city == "Gdańsk"
        assert data.country == "PL"

    def test_contractor_from_person_abroad(self):
        person = {"first_name": "Jan", "last_name": "Kowal", "postal_address_country": "Germany"}
        data = prepare_contractor_data(person, None, "jan@x.io")
        assert data.name == "Jan Kowal"
        assert data.country == "DE"
        assert data.city == ""

    def test_contractor_without_parties(self):
        assert prepare_contractor_data(None, None, "x@x.io").name == "Unknown Customer"

    def test_product_from_deal_line(self):
        product = select_product(_deal(), [{"product": {"name": "Nested"}, "sum": 900, "quantity": 0}])
        assert product.name == "Nested"
        assert product.price == 900
        assert product.quantity == 1

    def test_product_fallback_to_deal(self):
        product = select_product(_deal(title=None, value=0), [])
        assert product.name == "Camp / Tourist service"
        assert product.price == 1


# ── Single deal ────────────────────────────────────────────────────────────


class TestProcessDealInvoice:
    async def test_happy_path(self, service, deps):
        pipedrive, wfirma, _, proformas = deps
        result = await service.process_deal_invoice(7)

        assert result.success is True
        assert result.invoice_id == "inv-1"
        assert result.invoice_number == "PRO 5/2025"

        xml_body = wfirma.create_proforma.await_args.args[0]
        invoice = ET.fromstring(xml_body).find("invoices/invoice")
        assert invoice.findtext("contractor/id") == "c-1"
        assert invoice.findtext("company_account_id") == "acc-eur"
        assert invoice.findtext("currency") == "EUR"
        content = invoice.find("invoicecontents/invoicecontent")
        assert content.findtext("name") == "Coliving Lisbon June"
        assert content.findtext("brutto") == "1200.0"

        email_call = wfirma.send_invoice_by_email.await_args
        assert email_call.args == ("inv-1", "anna@x.io")
        assert email_call.kwargs["subject"] == EMAIL_SUBJECT
        assert "PRO 5/2025" in email_call.kwargs["body"]

        wfirma.create_label.assert_awaited_once_with("Coliving Lisbon")
        wfirma.assign_label_to_document.assert_awaited_once_with("lab-1", "inv-1")
        proformas.save_proforma.assert_awaited_once()
        pipedrive.update_deal.assert_awaited_once_with(7, {FIELD: INVOICE_TYPE_DONE})

    async def test_missing_email(self, service, deps):
        deps[0].get_deal_with_related_data.return_value = (_deal(), {"name": "No Mail"}, None)
        result = await service.process_deal_invoice(7)
        assert result.success is False
        assert result.error == "Customer email is required for invoice creation"
        deps[1].create_proforma.assert_not_awaited()

    async def test_unsupported_currency(self, service, deps):
        deps[0].get_deal_with_related_data.return_value = (_deal(currency="USD"), PERSON, None)
        result = await service.process_deal_invoice(7)
        assert result.error == "Invalid currency: USD. Supported currencies: EUR, PLN"

    async def test_zero_value(self, service, deps):
        deps[0].get_deal_with_related_data.return_value = (_deal(value=0), PERSON, None)
        result = await service.process_deal_invoice(7)
        assert result.error == "Deal value must be greater than 0"

    async def test_creates_contractor_when_missing(self, service, deps):
        wfirma = deps[1]
        wfirma.find_contractor_by_email.return_value = None
        await service.process_deal_invoice(7)
        created = wfirma.create_contractor.await_args.args[0]
        assert created["email"] == "anna@x.io"
        assert created["name"] == "Anna Nowak"

    async def test_wfirma_failure_leaves_trigger(self, service, deps):
        pipedrive, wfirma, _, _ = deps
        wfirma.create_proforma.side_effect = WfirmaError("Bad contractor")
        result = await service.process_deal_invoice(7)
        assert result.success is False
        assert "Bad contractor" in result.error
        pipedrive.update_deal.assert_not_awaited()

    async def test_email_failure_does_not_fail_invoice(self, service, deps):
        pipedrive, wfirma, _, _ = deps
        wfirma.send_invoice_by_email.side_effect = WfirmaError("smtp")
        result = await service.process_deal_invoice(7)
        assert result.success is True
        pipedrive.update_deal.assert_awaited_once()

    async def test_existing_label_reused(self, service, deps):
        wfirma = deps[1]
        wfirma.find_label_by_name.return_value = "lab-9"
        await service.process_deal_invoice(7)
        wfirma.create_label.assert_not_awaited()
        wfirma.assign_label_to_document.assert_awaited_once_with("lab-9", "inv-1")

    async def test_deal_load_failure(self, service, deps):
        deps[0].get_deal_with_related_data.side_effect = RuntimeError("timeout")
        result = await service.process_deal_invoice(7)
        assert result.error == "Failed to get deal data: timeout"


# ── Batch ──────────────────────────────────────────────────────────────────


class TestProcessPending:
    async def test_only_flagged_deals_processed(self, service):
        service.process_deal_invoice = AsyncMock(
            side_effect=lambda deal_id: _ok(deal_id)
        )
        batch = await service.process_pending_invoices()
        assert batch.total == 1
        assert batch.successful == 1
        service.process_deal_invoice.assert_awaited_once_with(7)

    async def test_crash_counted_as_error(self, service):
        service.process_deal_invoice = AsyncMock(side_effect=RuntimeError("boom"))
        batch = await service.process_pending_invoices()
        assert batch.errors == 1
        assert batch.results[0].error == "boom"

    async def test_bank_accounts_reloaded_per_batch(self, service, deps):
        service.process_deal_invoice = AsyncMock(side_effect=lambda deal_id: _ok(deal_id))
        await service.process_pending_invoices()
        await service.process_pending_invoices()
        assert deps[2].refresh.call_count == 2


def _ok(deal_id: int):
    from src.app.invoices.schemas import InvoiceResult

    return InvoiceResult(success=True, deal_id=deal_id, invoice_id="x")
