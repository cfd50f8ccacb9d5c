"""Async access to proformas and the payments matched to them."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import date

import structlog
from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.invoices.models import PaymentModel, ProformaModel

logger = structlog.get_logger(__name__)


class ProformaRepository:
    """Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def get_active_proformas(self, deal_id: int) -> list[ProformaModel]:
        """Non-deleted proformas for a deal, newest first."""
        async for session in self._session_factory():
            stmt = (
                select(ProformaModel)
                .where(
                    ProformaModel.pipedrive_deal_id == int(deal_id),
                    ProformaModel.deleted_at.is_(None),
                )
                .order_by(ProformaModel.created_at.desc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
        return []

    async def get_payments(self, proforma_ids: list[str]) -> list[PaymentModel]:
        """Payments matched to any of the proformas, oldest first, rejected ones excluded."""
        if not proforma_ids:
            return []
        async for session in self._session_factory():
            stmt = (
                select(PaymentModel)
                .where(
                    PaymentModel.proforma_id.in_(proforma_ids),
                    or_(
                        PaymentModel.manual_status.is_(None),
                        PaymentModel.manual_status != "rejected",
                    ),
                )
                .order_by(PaymentModel.payment_date.asc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
        return []

    async def save_proforma(
        self,
        proforma_id: str,
        deal_id: int,
        fullnumber: str | None,
        currency: str,
        total: float,
        buyer_name: str | None,
        buyer_email: str | None,
        issued_at: date,
    ) -> None:
        """Record a proforma issued by this service (idempotent on id)."""
        stmt = insert(ProformaModel).values(
            id=proforma_id,
            pipedrive_deal_id=int(deal_id),
            fullnumber=fullnumber,
            currency=currency,
            total=total,
            buyer_name=buyer_name,
            buyer_email=buyer_email,
            issued_at=issued_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={"fullnumber": stmt.excluded.fullnumber, "total": stmt.excluded.total},
        )
        async for session in self._session_factory():
            await session.execute(stmt)
            await session.commit()
        logger.info("proforma_repository.saved", proforma_id=proforma_id, deal_id=deal_id)
