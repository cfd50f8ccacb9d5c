"""Proforma generation for Pipedrive deals.

A salesperson sets the deal's "Invoice type" field to Proforma. The hourly
job picks those deals up and, for each one:

1. validates email, currency, value and bank account
2. finds or creates the wFirma contractor (organization before person)
3. posts the proforma and emails it to the customer
4. tags the proforma with a label named after the product
5. records the proforma locally and flips the field to Done

The field is flipped only after wFirma returned an invoice id, so a failed
run is retried on the next tick.
"""

from __future__ import annotations

from datetime import date
from typing import Any

import structlog

from src.app.core.phone import normalize_country_code
from src.app.invoices.bank_accounts import BankAccountResolver
from src.app.invoices.repository import ProformaRepository
from src.app.invoices.schemas import (
    ContractorData,
    InvoiceBatchResult,
    InvoiceResult,
    ProformaProduct,
)
from src.app.invoices.xml import build_proforma_xml
from src.app.services.pipedrive import PipedriveClient
from src.app.services.wfirma import Contractor, WfirmaClient

logger = structlog.get_logger(__name__)

INVOICE_TYPE_PROFORMA = 70
INVOICE_TYPE_DONE = 73
VALID_INVOICE_TYPES = {INVOICE_TYPE_PROFORMA}
OPEN_DEALS_LIMIT = 500
LABEL_MAX_LENGTH = 16

EMAIL_SUBJECT = "COMOON /  INVOICE  / Комьюнити для удаленщиков"
EMAIL_BODY = (
    "Привет. Внимательно посмотри, пожалуйста, сроки оплаты и график платежей. "
    "А также обязательно в назначении платежа укажи номер инвойса - {number}."
)
DEFAULT_PRODUCT_NAME = "Camp / Tourist service"
DEFAULT_CITY = "Gdańsk"
DEFAULT_ZIP = "00-000"


def _first_email(entity: dict[str, Any] | None) -> str | None:
    if not entity:
        return None
    emails = entity.get("email")
    if isinstance(emails, list):
        for entry in emails:
            value = entry.get("value") if isinstance(entry, dict) else entry
            if value:
                return value
    elif isinstance(emails, str) and emails:
        return emails
    return entity.get("primary_email") or None


def get_customer_email(
    person: dict[str, Any] | None, organization: dict[str, Any] | None
) -> str | None:
    return _first_email(person) or _first_email(organization)


def invoice_type_of(deal: dict[str, Any], field_key: str) -> int | None:
    raw = deal.get(field_key)
    if raw in (None, ""):
        return None
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value in VALID_INVOICE_TYPES else None


def prepare_contractor_data(
    person: dict[str, Any] | None,
    organization: dict[str, Any] | None,
    email: str,
) -> ContractorData:
    if organization:
        business_id = organization.get("business_id") or ""
        return ContractorData(
            name=organization.get("name") or email,
            email=email,
            address=organization.get("address") or "",
            zip=organization.get("zip") or "80-000",
            city=organization.get("city") or DEFAULT_CITY,
            country=normalize_country_code(organization.get("country")) or "PL",
            business_id=business_id,
            type="company" if business_id else "person",
        )

    if person:
        country = normalize_country_code(person.get("postal_address_country")) or "PL"
        name = person.get("name") or " ".join(
            part for part in (person.get("first_name"), person.get("last_name")) if part
        )
        return ContractorData(
            name=name or email,
            email=email,
            address=person.get("postal_address") or person.get("postal_address_route") or "",
            zip=person.get("postal_address_postal_code") or DEFAULT_ZIP,
            city=person.get("postal_address_locality") or (DEFAULT_CITY if country == "PL" else ""),
            country=country,
        )

    return ContractorData(name="Unknown Customer", email=email, city=DEFAULT_CITY)


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def select_product(deal: dict[str, Any], deal_products: list[dict[str, Any]]) -> ProformaProduct:
    """First deal product, else a single line named after the deal."""
    total = _as_float(deal.get("value"))
    fallback_name = deal.get("title") or DEFAULT_PRODUCT_NAME

    if deal_products:
        line = deal_products[0]
        nested = line.get("product") if isinstance(line.get("product"), dict) else {}
        return ProformaProduct(
            name=line.get("name") or nested.get("name") or fallback_name,
            price=_as_float(line.get("item_price")) or _as_float(line.get("sum")) or total,
            quantity=_as_float(line.get("quantity")) or 1,
            unit=line.get("unit") or nested.get("unit") or "szt.",
        )

    return ProformaProduct(name=fallback_name, price=total if total > 0 else 1)


class InvoiceProcessingService:
    """Args:
        pipedrive: Pipedrive client.
        wfirma: wFirma client.
        bank_accounts: Currency to company account resolver.
        proformas: Local proforma storage (None skips recording).
        invoice_type_field: Deal custom-field key of the "Invoice type" field.
    """

    def __init__(
        self,
        pipedrive: PipedriveClient,
        wfirma: WfirmaClient,
        bank_accounts: BankAccountResolver,
        proformas: ProformaRepository | None,
        invoice_type_field: str,
    ) -> None:
        self._pipedrive = pipedrive
        self._wfirma = wfirma
        self._bank_accounts = bank_accounts
        self._proformas = proformas
        self._invoice_type_field = invoice_type_field

    async def get_pending_deals(self) -> list[dict[str, Any]]:
        page = await self._pipedrive.get_deals(limit=OPEN_DEALS_LIMIT, start=0, status="open")
        return [
            deal
            for deal in page["deals"]
            if invoice_type_of(deal, self._invoice_type_field) is not None
        ]

    async def process_pending_invoices(self) -> InvoiceBatchResult:
        self._bank_accounts.refresh()
        deals = await self.get_pending_deals()
        logger.info("invoices.pending_found", count=len(deals))

        batch = InvoiceBatchResult(total=len(deals))
        for deal in deals:
            try:
                result = await self.process_deal_invoice(deal["id"])
            except Exception as exc:
                logger.error("invoices.deal_crashed", deal_id=deal.get("id"), error=str(exc))
                result = InvoiceResult(success=False, deal_id=deal["id"], error=str(exc))
            batch.results.append(result)
            if result.success:
                batch.successful += 1
            else:
                batch.errors += 1

        logger.info(
            "invoices.batch_completed",
            total=batch.total,
            successful=batch.successful,
            errors=batch.errors,
        )
        return batch

    async def process_deal_invoice(self, deal_id: int) -> InvoiceResult:
        log = logger.bind(deal_id=deal_id)
        try:
            deal, person, organization = await self._pipedrive.get_deal_with_related_data(deal_id)
        except Exception as exc:
            log.error("invoices.deal_load_failed", error=str(exc))
            return InvoiceResult(success=False, deal_id=deal_id, error=f"Failed to get deal data: {exc}")

        error = await self.validate_deal(deal, person, organization)
        if error:
            log.warning("invoices.validation_failed", error=error)
            return InvoiceResult(success=False, deal_id=deal_id, error=error)

        email = get_customer_email(person, organization)
        currency = deal["currency"]
        contractor_data = prepare_contractor_data(person, organization, email)

        try:
            contractor = await self.find_or_create_contractor(contractor_data)
            products = await self._pipedrive.get_deal_products(deal_id)
            product = select_product(deal, products)
            amount = _as_float(deal.get("value")) or 1
            bank_account = await self._bank_accounts.get_for_currency(currency)

            xml_body = build_proforma_xml(
                contractor_id=contractor.id,
                product=product,
                amount=amount,
                currency=currency,
                bank_account=bank_account,
                expected_close=deal.get("expected_close_date"),
            )
            invoice_id, invoice_number = await self._wfirma.create_proforma(xml_body)
        except Exception as exc:
            log.error("invoices.proforma_failed", error=str(exc))
            return InvoiceResult(success=False, deal_id=deal_id, error=str(exc))

        log = log.bind(invoice_id=invoice_id)
        log.info("invoices.proforma_created", invoice_number=invoice_number, amount=amount, currency=currency)

        # The proforma exists from here on; follow-up failures are logged only.
        try:
            await self._wfirma.send_invoice_by_email(
                invoice_id,
                email,
                subject=EMAIL_SUBJECT,
                body=EMAIL_BODY.format(number=invoice_number or invoice_id),
            )
        except Exception as exc:
            log.warning("invoices.email_failed", error=str(exc))

        await self.ensure_label(invoice_id, product.name or deal.get("title") or "")

        if self._proformas is not None:
            try:
                await self._proformas.save_proforma(
                    proforma_id=invoice_id,
                    deal_id=deal_id,
                    fullnumber=invoice_number,
                    currency=currency,
                    total=amount,
                    buyer_name=contractor_data.name,
                    buyer_email=email,
                    issued_at=date.today(),
                )
            except Exception as exc:
                log.warning("invoices.record_failed", error=str(exc))

        try:
            await self._pipedrive.update_deal(deal_id, {self._invoice_type_field: INVOICE_TYPE_DONE})
        except Exception as exc:
            log.warning("invoices.trigger_clear_failed", error=str(exc))

        return InvoiceResult(
            success=True,
            deal_id=deal_id,
            invoice_id=invoice_id,
            invoice_number=invoice_number,
        )

    async def validate_deal(
        self,
        deal: dict[str, Any],
        person: dict[str, Any] | None,
        organization: dict[str, Any] | None,
    ) -> str | None:
        """Return an error message, or None when the deal can be invoiced."""
        if not get_customer_email(person, organization):
            return "Customer email is required for invoice creation"
        currency = deal.get("currency")
        if not self._bank_accounts.is_supported(currency):
            supported = ", ".join(self._bank_accounts.supported_currencies)
            return f"Invalid currency: {currency}. Supported currencies: {supported}"
        if _as_float(deal.get("value")) <= 0:
            return "Deal value must be greater than 0"
        if await self._bank_accounts.get_for_currency(currency) is None:
            return f"Bank account for currency {currency} is not configured"
        return None

    async def find_or_create_contractor(self, data: ContractorData) -> Contractor:
        existing = await self._wfirma.find_contractor_by_email(data.email)
        if existing is not None:
            logger.info("invoices.contractor_found", contractor_id=existing.id)
            return existing
        return await self._wfirma.create_contractor(data.model_dump())

    async def ensure_label(self, invoice_id: str, source_name: str) -> str | None:
        """Find or create the product label and attach it to the proforma."""
        name = source_name.strip()[:LABEL_MAX_LENGTH].strip()
        if not name:
            return None
        try:
            label_id = await self._wfirma.find_label_by_name(name)
            if label_id is None:
                label_id = await self._wfirma.create_label(name)
                logger.info("invoices.label_created", label_id=label_id, name=name)
            await self._wfirma.assign_label_to_document(label_id, invoice_id)
        except Exception as exc:
            logger.warning("invoices.label_failed", invoice_id=invoice_id, error=str(exc))
            return None
        return label_id
