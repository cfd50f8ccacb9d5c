"""Pydantic models for proforma generation."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ContractorData(BaseModel):
    """Buyer details sent to wFirma when a contractor has to be created."""

    name: str
    email: str
    address: str = ""
    zip: str = "00-000"
    city: str = ""
    country: str = "PL"
    business_id: str = ""
    type: str = "person"


class ProformaProduct(BaseModel):
    name: str
    price: float
    quantity: float = 1
    unit: str = "szt."


class InvoiceResult(BaseModel):
    success: bool
    deal_id: int
    invoice_id: str | None = None
    invoice_number: str | None = None
    error: str | None = None


class InvoiceBatchResult(BaseModel):
    total: int = 0
    successful: int = 0
    errors: int = 0
    results: list[InvoiceResult] = Field(default_factory=list)
