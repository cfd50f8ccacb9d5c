"""Unit tests for the wFirma client, proforma XML builder and bank account resolver."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import date
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.app.invoices.bank_accounts import BankAccountResolver
from src.app.invoices.schemas import ProformaProduct
from src.app.invoices.xml import balance_due_date, build_proforma_xml, schedule_description
from src.app.services.base import WfirmaError
from src.app.services.wfirma import (
    BankAccount,
    WfirmaClient,
    build_api_document,
    normalize_zip,
    parse_response,
    to_xml,
)

BASE = "https://api2.wfirma.pl"


def _xml_response(method: str, path: str, text: str, status: int = 200) -> httpx.Response:
    return httpx.Response(status, text=text, request=httpx.Request(method, f"{BASE}{path}"))


@pytest.fixture
def wfirma() -> WfirmaClient:
    return WfirmaClient("app", "access", "secret", "123")


# ── XML helpers ────────────────────────────────────────────────────────────


class TestXmlHelpers:
    def test_nested_document(self):
        root = build_api_document(
            "tags", "tag", {"id": "5", "object": {"id": "77", "type": "invoices"}, "skip": None}
        )
        assert root.findtext("tags/tag/id") == "5"
        assert root.findtext("tags/tag/object/type") == "invoices"
        assert root.find("tags/tag/skip").text is None

    def test_text_is_escaped(self):
        xml = to_xml(build_api_document("contractors", "contractor", {"name": "A & B <Ltd>"}))
        assert xml.startswith('<?xml version="1.0" encoding="UTF-8"?>')
        assert "A &amp; B &lt;Ltd&gt;" in xml

    def test_error_status_raises_with_message(self):
        text = "<api><status><code>ERROR</code><message>Bad contractor</message></status></api>"
        with pytest.raises(WfirmaError, match="Bad contractor"):
            parse_response(text)

    def test_unparseable_raises(self):
        with pytest.raises(WfirmaError, match="unparseable"):
            parse_response("<api><oops>")

    def test_ok_status_returns_root(self):
        root = parse_response("<api><status><code>OK</code></status></api>")
        assert root.tag == "api"


class TestNormalizeZip:
    def test_polish_zip_kept(self):
        assert normalize_zip("80-001", "pl") == ("80-001", "PL")

    def test_five_digits_reformatted(self):
        assert normalize_zip("80001", "PL") == ("80-001", "PL")

    def test_foreign_country_defaults(self):
        assert normalize_zip("10115", "DE") == ("00-000", "PL")

    def test_missing_zip_defaults(self):
        assert normalize_zip(None, None) == ("00-000", "PL")


# ── Client ─────────────────────────────────────────────────────────────────


class TestWfirmaClient:
    def test_keys_required(self):
        with pytest.raises(ValueError):
            WfirmaClient("", "access", "secret", "123")

    async def test_find_contractor_by_email_case_insensitive(self, wfirma):
        text = (
            "<api><contractors>"
            "<contractor><id>1</id><email>other@x.io</email></contractor>"
            "<contractor><id>2</id><name>Anna</name><email>Anna@X.io</email></contractor>"
            "</contractors><status><code>OK</code></status></api>"
        )
        mock_get = AsyncMock(return_value=_xml_response("GET", "/contractors/find", text))
        with patch.object(httpx.AsyncClient, "get", mock_get):
            contractor = await wfirma.find_contractor_by_email("anna@x.io")

        assert contractor is not None
        assert contractor.id == "2"
        assert mock_get.call_args.kwargs["params"]["company_id"] == "123"

    async def test_create_proforma_returns_id_and_number(self, wfirma):
        text = (
            "<api><invoices><invoice><id>555</id><fullnumber>PRO 12/2025</fullnumber></invoice>"
            "</invoices><status><code>OK</code></status></api>"
        )
        mock_post = AsyncMock(return_value=_xml_response("POST", "/invoices/add", text))
        with patch.object(httpx.AsyncClient, "post", mock_post):
            invoice_id, number = await wfirma.create_proforma("<api/>")
        assert (invoice_id, number) == ("555", "PRO 12/2025")

    async def test_create_proforma_without_id_raises(self, wfirma):
        text = "<api><invoices><invoice></invoice></invoices><status><code>OK</code></status></api>"
        mock_post = AsyncMock(return_value=_xml_response("POST", "/invoices/add", text))
        with patch.object(httpx.AsyncClient, "post", mock_post):
            with pytest.raises(WfirmaError, match="no id"):
                await wfirma.create_proforma("<api/>")

    async def test_bank_accounts_parsed(self, wfirma):
        text = (
            "<api><company_accounts>"
            "<company_account><id>1</id><name>PLN account</name><currency>pln</currency>"
            "<accepted>1</accepted></company_account>"
            "<company_account><id>2</id></company_account>"
            "</company_accounts><status><code>OK</code></status></api>"
        )
        mock_get = AsyncMock(return_value=_xml_response("GET", "/company_accounts/find", text))
        with patch.object(httpx.AsyncClient, "get", mock_get):
            accounts = await wfirma.get_bank_accounts()

        assert len(accounts) == 1
        assert accounts[0].currency == "PLN"
        assert accounts[0].accepted is True

    async def test_send_invoice_email_parameters(self, wfirma):
        ok = "<api><status><code>OK</code></status></api>"
        mock_post = AsyncMock(return_value=_xml_response("POST", "/invoices/send/9", ok))
        with patch.object(httpx.AsyncClient, "post", mock_post):
            await wfirma.send_invoice_by_email("9", email="a@x.io", subject="S", body="B")

        sent = ET.fromstring(mock_post.call_args.kwargs["content"].decode("utf-8"))
        params = {
            p.findtext("name"): p.findtext("value")
            for p in sent.iter("parameter")
        }
        assert params["email"] == "a@x.io"
        assert params["subject"] == "S"
        assert params["page"] == "invoice"


# ── Proforma XML ───────────────────────────────────────────────────────────


class TestProformaXml:
    def test_balance_due_date_one_month_before_close(self):
        assert balance_due_date("2025-07-15", date(2025, 5, 1)) == date(2025, 6, 15)

    def test_balance_due_date_none_when_not_after_issue(self):
        assert balance_due_date("2025-06-01", date(2025, 5, 10)) is None

    def test_balance_due_date_none_without_close(self):
        assert balance_due_date(None, date(2025, 5, 10)) is None

    def test_split_schedule_description(self):
        text = schedule_description(1000, "EUR", date(2025, 5, 4), date(2025, 6, 15))
        assert "50% предоплата (500.00 EUR)" in text
        assert "50% остаток (500.00 EUR) до 2025-06-15" in text

    def test_full_schedule_description(self):
        text = schedule_description(1000, "PLN", date(2025, 5, 4), None)
        assert text == "График платежей: 100% оплата (1000.00 PLN) до 2025-05-04."

    def test_document_fields(self):
        xml = build_proforma_xml(
            contractor_id="42",
            product=ProformaProduct(name="Coliving", quantity=2),
            amount=1500.0,
            currency="EUR",
            bank_account=BankAccount(id="7", name="EUR account", currency="EUR"),
            expected_close="2025-08-20",
            issue_date=date(2025, 5, 1),
        )
        root = ET.fromstring(xml)
        invoice = root.find("invoices/invoice")
        assert invoice.findtext("type") == "proforma"
        assert invoice.findtext("payment_date") == "2025-05-04"
        assert invoice.findtext("company_account_id") == "7"
        assert invoice.findtext("contractor/id") == "42"
        content = invoice.find("invoicecontents/invoicecontent")
        assert content.findtext("count") == "2"
        assert content.findtext("brutto") == "1500.0"
        assert content.findtext("vat_code_id") == "230"
        assert "2025-07-20" in invoice.findtext("description")


# ── Bank accounts ──────────────────────────────────────────────────────────


class TestBankAccountResolver:
    @pytest.fixture
    def accounts(self):
        return [
            BankAccount(id="1", name="Rachunek PLN", currency="PLN", accepted=True),
            BankAccount(id="2", name="Wise EUR (main)", currency="EUR"),
            BankAccount(id="3", name="Backup USD", currency="USD", accepted=False),
            BankAccount(id="4", name="Primary USD", currency="USD", accepted=True),
        ]

    def _resolver(self, accounts, names, fallback=""):
        wfirma = AsyncMock()
        wfirma.get_bank_accounts = AsyncMock(return_value=accounts)
        return BankAccountResolver(wfirma, names, fallback), wfirma

    async def test_exact_name(self, accounts):
        resolver, _ = self._resolver(accounts, {"PLN": "Rachunek PLN"})
        assert (await resolver.get_for_currency("pln")).id == "1"

    async def test_first_word_partial_match(self, accounts):
        resolver, _ = self._resolver(accounts, {"EUR": "Wise EUR"})
        assert (await resolver.get_for_currency("EUR")).id == "2"

    async def test_accepted_in_currency_preferred(self, accounts):
        resolver, _ = self._resolver(accounts, {"USD": "Dollar account"})
        assert (await resolver.get_for_currency("USD")).id == "4"

    async def test_fallback_id(self, accounts):
        resolver, _ = self._resolver(accounts, {"GBP": "Pound account"}, fallback="99")
        account = await resolver.get_for_currency("GBP")
        assert account.id == "99"
        assert account.currency == "GBP"

    async def test_unsupported_currency(self, accounts):
        resolver, wfirma = self._resolver(accounts, {"PLN": "Rachunek PLN"})
        assert await resolver.get_for_currency("CHF") is None
        assert resolver.is_supported("chf") is False
        wfirma.get_bank_accounts.assert_not_awaited()

    async def test_accounts_cached(self, accounts):
        resolver, wfirma = self._resolver(accounts, {"PLN": "Rachunek PLN", "EUR": "Wise EUR"})
        await resolver.get_for_currency("PLN")
        await resolver.get_for_currency("EUR")
        assert wfirma.get_bank_accounts.await_count == 1
        assert resolver.supported_currencies == ["EUR", "PLN"]

    async def test_refresh_reloads_accounts(self, accounts):
        resolver, wfirma = self._resolver(accounts, {"EUR": "Wise EUR"})
        assert (await resolver.get_for_currency("EUR")).id == "2"

        wfirma.get_bank_accounts.return_value = [BankAccount(id="7", name="Wise EUR (new)", currency="EUR")]
        resolver.refresh()

        assert (await resolver.get_for_currency("EUR")).id == "7"
        assert wfirma.get_bank_accounts.await_count == 2
