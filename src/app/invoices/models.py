"""Invoicing persistence models.

- ProformaModel: proforma documents issued in wFirma for a Pipedrive deal
- PaymentModel: bank statement lines, incoming (proforma payments) and outgoing (expenses)
- PnlManualEntryModel: hand-entered P&L amounts per month and category
"""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class ProformaModel(Base):
    """A wFirma proforma. ``id`` is the wFirma document id."""

    __tablename__ = "proformas"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    pipedrive_deal_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    fullnumber: Mapped[str | None] = mapped_column(String(100), nullable=True)
    issued_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="PLN", server_default="PLN")
    total: Mapped[float] = mapped_column(Float, default=0.0, server_default="0")
    buyer_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    buyer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class PaymentModel(Base):
    """A bank payment. ``direction`` is "in" or "out"; rejected matches are ignored."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    direction: Mapped[str] = mapped_column(String(3), default="in", server_default="in")
    proforma_id: Mapped[str | None] = mapped_column(
        String(64), ForeignKey("proformas.id"), index=True, nullable=True
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="PLN", server_default="PLN")
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    operation_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expense_category_id: Mapped[int | None] = mapped_column(Integer, index=True, nullable=True)
    manual_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class PnlManualEntryModel(Base):
    __tablename__ = "pnl_manual_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[str] = mapped_column(String(20), default="expense", server_default="expense")
    expense_category_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount_pln: Mapped[float] = mapped_column(Float, default=0.0, server_default="0")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
