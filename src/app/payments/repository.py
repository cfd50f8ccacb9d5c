"""Async storage for Stripe checkout sessions and their lifecycle."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.payments.models import StripePaymentModel

logger = structlog.get_logger(__name__)

STATUS_CREATED = "created"
STATUS_PAID = "paid"
STATUS_EXPIRED = "expired"
STATUS_CANCELED = "canceled"
TERMINAL_STATUSES = frozenset({STATUS_PAID, STATUS_EXPIRED, STATUS_CANCELED})


class StripePaymentRepository:
    """Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create_payment(
        self,
        deal_id: int,
        session_id: str,
        checkout_url: str | None,
        payment_type: str,
        payment_schedule: str,
        amount: float,
        currency: str,
        trigger: str,
        metadata: dict[str, Any] | None = None,
    ) -> StripePaymentModel:
        row = StripePaymentModel(
            deal_id=int(deal_id),
            session_id=session_id,
            checkout_url=checkout_url,
            payment_type=payment_type,
            payment_schedule=payment_schedule,
            amount=amount,
            currency=currency,
            status=STATUS_CREATED,
            payment_status="unpaid",
            trigger=trigger,
            metadata_json=metadata or {},
        )
        async for session in self._session_factory():
            session.add(row)
            await session.commit()
            await session.refresh(row)
        logger.info("stripe_payments.created", deal_id=deal_id, session_id=session_id)
        return row

    async def get_by_session_id(self, session_id: str) -> StripePaymentModel | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(StripePaymentModel).where(StripePaymentModel.session_id == session_id)
            )
            return result.scalar_one_or_none()
        return None

    async def list_for_deal(self, deal_id: int) -> list[StripePaymentModel]:
        async for session in self._session_factory():
            result = await session.execute(
                select(StripePaymentModel)
                .where(StripePaymentModel.deal_id == int(deal_id))
                .order_by(StripePaymentModel.created_at.asc())
            )
            return list(result.scalars().all())
        return []

    async def list_open(self, limit: int = 100) -> list[StripePaymentModel]:
        async for session in self._session_factory():
            result = await session.execute(
                select(StripePaymentModel)
                .where(StripePaymentModel.status == STATUS_CREATED)
                .order_by(StripePaymentModel.created_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())
        return []

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def _transition(
        self, session_id: str, status: str, extra: dict[str, Any] | None = None
    ) -> bool:
        """Move a created session to ``status``. Returns whether a row changed.

        The WHERE clause only matches rows still in ``created``, so terminal
        rows and repeats of the same transition are left alone.
        """
        values: dict[str, Any] = {"status": status, **(extra or {})}
        async for session in self._session_factory():
            result = await session.execute(
                update(StripePaymentModel)
                .where(
                    StripePaymentModel.session_id == session_id,
                    StripePaymentModel.status == STATUS_CREATED,
                )
                .values(**values)
            )
            await session.commit()
            changed = (result.rowcount or 0) > 0
            if changed:
                logger.info("stripe_payments.status_changed", session_id=session_id, status=status)
            else:
                logger.debug("stripe_payments.transition_ignored", session_id=session_id, status=status)
            return changed
        return False

    async def mark_paid(self, session_id: str, paid_at: datetime | None = None) -> bool:
        return await self._transition(
            session_id,
            STATUS_PAID,
            {"payment_status": "paid", "paid_at": paid_at or datetime.now(timezone.utc)},
        )

    async def mark_expired(self, session_id: str) -> bool:
        return await self._transition(session_id, STATUS_EXPIRED)

    async def mark_canceled(self, session_id: str) -> bool:
        return await self._transition(session_id, STATUS_CANCELED)
