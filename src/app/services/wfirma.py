"""Async client for the wFirma invoicing API (XML in, XML out).

wFirma authenticates with accessKey/secretKey/appKey headers and scopes every
call to a company_id query parameter. Request bodies are built with
ElementTree (which escapes text), responses are parsed the same way.
A response with <status><code>ERROR</code> raises WfirmaError carrying the
API's <message>.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from typing import Any

import httpx
import structlog
from pydantic import BaseModel

from src.app.services.base import WfirmaError, integration_retry, raise_for_api_status

logger = structlog.get_logger(__name__)

POLISH_ZIP_RE = re.compile(r"^\d{2}-\d{3}$")
DEFAULT_ZIP = "00-000"
DEFAULT_CITY = "Gdańsk"


class Contractor(BaseModel):
    id: str
    name: str = ""
    email: str = ""
    zip: str = ""
    city: str = ""
    country: str = ""


class BankAccount(BaseModel):
    id: str
    name: str
    currency: str = "PLN"
    number: str = ""
    bank_name: str = ""
    accepted: bool = False


# ── XML helpers ──────────────────────────────────────────────────────────────


def build_api_document(collection: str, item: str, fields: dict[str, Any]) -> ET.Element:
    """Build ``<api><collection><item>fields</item></collection></api>``.

    Nested dicts become nested elements; lists of dicts repeat the child tag
    named by the dict's single key (see proforma invoicecontents).
    """
    root = ET.Element("api")
    container = ET.SubElement(root, collection)
    node = ET.SubElement(container, item)
    _append_fields(node, fields)
    return root


def _append_fields(parent: ET.Element, fields: dict[str, Any]) -> None:
    for key, value in fields.items():
        child = ET.SubElement(parent, key)
        if isinstance(value, dict):
            _append_fields(child, value)
        elif isinstance(value, list):
            for entry in value:
                _append_fields(child, entry)
        elif value is not None:
            child.text = _format_value(value)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def to_xml(root: ET.Element) -> str:
    return '<?xml version="1.0" encoding="UTF-8"?>' + ET.tostring(root, encoding="unicode")


def parse_response(text: str) -> ET.Element:
    """Parse a wFirma XML response and raise WfirmaError on status ERROR."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise WfirmaError(f"unparseable XML response: {exc}", details=text[:500]) from exc

    code = root.findtext("status/code") or root.findtext(".//code")
    if code and code.strip().upper() == "ERROR":
        message = root.findtext("status/message") or root.findtext(".//message") or "Unknown error"
        raise WfirmaError(message, details=text[:2000])
    if "CONTROLLER NOT FOUND" in text:
        raise WfirmaError("endpoint not found", details=text[:500])
    return root


def normalize_zip(zip_code: str | None, country: str | None) -> tuple[str, str]:
    """wFirma only validates Polish postal codes; everything else becomes 00-000/PL."""
    country_value = (country or "PL").upper()
    zip_value = (zip_code or DEFAULT_ZIP).strip()
    if not POLISH_ZIP_RE.match(zip_value):
        digits = re.sub(r"\D", "", zip_value)
        zip_value = f"{digits[:2]}-{digits[2:]}" if len(digits) == 5 else DEFAULT_ZIP
    if country_value != "PL":
        return DEFAULT_ZIP, "PL"
    return zip_value, country_value


# ── Client ───────────────────────────────────────────────────────────────────


class WfirmaClient:
    """wFirma API client.

    Args:
        app_key: wFirma application key.
        access_key: API access key.
        secret_key: API secret key.
        company_id: Company identifier appended to every request.
        base_url: API root (default https://api2.wfirma.pl).
    """

    TIMEOUT = 15.0

    def __init__(
        self,
        app_key: str,
        access_key: str,
        secret_key: str,
        company_id: str,
        base_url: str = "https://api2.wfirma.pl",
    ) -> None:
        if not (app_key and access_key and secret_key):
            raise ValueError("WFIRMA_APP_KEY, WFIRMA_ACCESS_KEY and WFIRMA_SECRET_KEY must be set")
        self._company_id = company_id
        self._base_url = base_url.rstrip("/")
        self._headers = {
            "Content-Type": "application/xml",
            "Accept": "application/xml",
            "accessKey": access_key,
            "secretKey": secret_key,
            "appKey": app_key,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self._headers, timeout=self.TIMEOUT)

    def _params(self) -> dict[str, str]:
        return {
            "inputFormat": "xml",
            "outputFormat": "xml",
            "company_id": self._company_id,
        }

    async def _post(self, path: str, body: str = "") -> ET.Element:
        async with self._client() as client:
            response = await client.post(
                f"{self._base_url}{path}",
                params=self._params(),
                content=body.encode("utf-8"),
            )
        raise_for_api_status(response, WfirmaError)
        return parse_response(response.text)

    @integration_retry
    async def _find(self, path: str) -> ET.Element:
        async with self._client() as client:
            response = await client.get(f"{self._base_url}{path}", params=self._params())
        raise_for_api_status(response, WfirmaError)
        return parse_response(response.text)

    # ── Contractors ──────────────────────────────────────────────────────

    async def find_contractor_by_email(self, email: str) -> Contractor | None:
        root = await self._find("/contractors/find")
        wanted = email.strip().lower()
        for node in root.iter("contractor"):
            if (node.findtext("email") or "").strip().lower() == wanted:
                return Contractor(
                    id=node.findtext("id") or "",
                    name=node.findtext("name") or "",
                    email=node.findtext("email") or email,
                    zip=node.findtext("zip") or "",
                    city=node.findtext("city") or "",
                    country=node.findtext("country") or "",
                )
        return None

    async def create_contractor(self, data: dict[str, Any]) -> Contractor:
        zip_value, country_value = normalize_zip(data.get("zip"), data.get("country"))
        document = build_api_document(
            "contractors",
            "contractor",
            {
                "name": data.get("name") or data.get("email"),
                "email": data.get("email"),
                "address": data.get("address") or "",
                "zip": zip_value,
                "city": data.get("city") or DEFAULT_CITY,
                "country": country_value,
                "nip": data.get("business_id") or "",
                "type": data.get("type") or "person",
                "company_id": self._company_id,
            },
        )
        root = await self._post("/contractors/add", to_xml(document))
        contractor_id = root.findtext(".//contractor/id") or root.findtext(".//id")
        if not contractor_id:
            raise WfirmaError("contractor created but no id returned")
        logger.info("wfirma.contractor_created", contractor_id=contractor_id)
        return Contractor(
            id=contractor_id,
            name=data.get("name") or "",
            email=data.get("email") or "",
            zip=zip_value,
            city=data.get("city") or DEFAULT_CITY,
            country=country_value,
        )

    # ── Bank accounts ────────────────────────────────────────────────────

    async def get_bank_accounts(self) -> list[BankAccount]:
        root = await self._find("/company_accounts/find")
        accounts: list[BankAccount] = []
        for node in root.iter("company_account"):
            account_id = node.findtext("id")
            name = node.findtext("name")
            if not account_id or not name:
                continue
            accounts.append(
                BankAccount(
                    id=account_id,
                    name=name,
                    currency=(node.findtext("currency") or "PLN").upper(),
                    number=node.findtext("number") or "",
                    bank_name=node.findtext("bank_name") or "",
                    accepted=(node.findtext("accepted") or "").strip() in ("1", "true"),
                )
            )
        return accounts

    # ── Invoices ─────────────────────────────────────────────────────────

    async def create_proforma(self, xml_body: str) -> tuple[str, str | None]:
        """POST a proforma document. Returns (invoice_id, invoice_number)."""
        root = await self._post("/invoices/add", xml_body)
        invoice = root.find(".//invoice")
        scope = invoice if invoice is not None else root
        invoice_id = scope.findtext("id")
        if not invoice_id:
            raise WfirmaError("proforma created but no id returned")
        number = (
            scope.findtext("fullnumber")
            or scope.findtext("invoice_number")
            or scope.findtext("number")
        )
        logger.info("wfirma.proforma_created", invoice_id=invoice_id, number=number)
        return invoice_id, number

    async def send_invoice_by_email(
        self,
        invoice_id: str,
        email: str | None = None,
        subject: str = "Otrzymałeś fakturę",
        body: str = "Przesyłam fakturę",
    ) -> None:
        root = ET.Element("api")
        invoices = ET.SubElement(root, "invoices")
        parameters = ET.SubElement(invoices, "parameters")
        params: list[tuple[str, str]] = []
        if email:
            params.append(("email", email))
        params.extend(
            [
                ("subject", subject),
                ("page", "invoice"),
                ("leaflet", "0"),
                ("duplicate", "0"),
                ("body", body),
            ]
        )
        for name, value in params:
            parameter = ET.SubElement(parameters, "parameter")
            ET.SubElement(parameter, "name").text = name
            ET.SubElement(parameter, "value").text = value

        await self._post(f"/invoices/send/{invoice_id}", to_xml(root))
        logger.info("wfirma.invoice_emailed", invoice_id=invoice_id, has_email=bool(email))

    # ── Labels (tags) ────────────────────────────────────────────────────

    async def find_label_by_name(self, name: str) -> str | None:
        """Return the tag id for an exact (case-insensitive) name, or None."""
        root = await self._find("/tags/find")
        wanted = name.strip().lower()
        for node in root.iter("tag"):
            if (node.findtext("name") or "").strip().lower() == wanted:
                return node.findtext("id")
        return None

    async def create_label(self, name: str) -> str:
        document = build_api_document(
            "tags",
            "tag",
            {
                "name": name,
                "invoice": "1",
                "good": "1",
                "color_background": "ec7000",
                "color_text": "fff0e1",
                "visibility": "visible",
            },
        )
        root = await self._post("/tags/add", to_xml(document))
        label_id = root.findtext(".//tag/id") or root.findtext(".//id")
        if not label_id:
            raise WfirmaError("label created but no id returned")
        return label_id

    async def assign_label_to_document(
        self, label_id: str, document_id: str, object_type: str = "invoices"
    ) -> None:
        document = build_api_document(
            "tags",
            "tag",
            {"id": label_id, "object": {"id": document_id, "type": object_type}},
        )
        await self._post("/tags/assign", to_xml(document))
