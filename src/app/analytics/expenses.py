"""Monthly marketing spend in PLN.

Sums outgoing bank payments in the configured marketing expense categories
(converted to PLN at the NBP mid rate) plus manual P&L expense entries in
the same categories.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import date

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.analytics.normalizer import get_month_key, month_keys
from src.app.analytics.schemas import ExpensesResult
from src.app.invoices.models import PaymentModel, PnlManualEntryModel
from src.app.services.base import ExchangeRateError
from src.app.services.exchange_rates import ExchangeRateClient

logger = structlog.get_logger(__name__)

PAYMENTS_LIMIT = 5000


class MarketingExpenseClient:
    """Args:
        session_factory: Async callable that yields AsyncSession instances.
        category_ids: Expense category ids counted as marketing.
        rates: PLN conversion client; a fresh one per instance by default.
            Its cache is cleared at the start of every run so rates never
            outlive one aggregation.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        category_ids: list[int],
        rates: ExchangeRateClient | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._category_ids = list(category_ids)
        self._rates = rates or ExchangeRateClient()

    async def get_marketing_expenses(self, year: int) -> ExpensesResult:
        self._rates.clear_cache()
        months = {key: 0.0 for key in month_keys(year)}
        if not self._category_ids:
            logger.warning("expenses.no_categories_configured", year=year)
            return ExpensesResult(year=year, months=months, total=0.0)

        for payment in await self._load_payments(year):
            month_key = get_month_key(payment.operation_date)
            if month_key not in months:
                continue
            amount = await self._amount_pln(payment)
            if amount and amount > 0:
                months[month_key] += amount

        for entry in await self._load_manual_entries(year):
            if not 1 <= entry.month <= 12:
                continue
            months[f"{year}-{entry.month:02d}"] += float(entry.amount_pln or 0)

        months = {key: round(value, 2) for key, value in months.items()}
        return ExpensesResult(year=year, months=months, total=round(sum(months.values()), 2))

    async def _load_payments(self, year: int) -> list[PaymentModel]:
        async for session in self._session_factory():
            stmt = (
                select(PaymentModel)
                .where(
                    PaymentModel.direction == "out",
                    PaymentModel.expense_category_id.in_(self._category_ids),
                    PaymentModel.operation_date >= date(year, 1, 1),
                    PaymentModel.operation_date <= date(year, 12, 31),
                )
                .limit(PAYMENTS_LIMIT)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
        return []

    async def _load_manual_entries(self, year: int) -> list[PnlManualEntryModel]:
        async for session in self._session_factory():
            stmt = select(PnlManualEntryModel).where(
                PnlManualEntryModel.entry_type == "expense",
                PnlManualEntryModel.year == year,
                PnlManualEntryModel.expense_category_id.in_(self._category_ids),
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
        return []

    async def _amount_pln(self, payment: PaymentModel) -> float | None:
        amount = abs(float(payment.amount or 0))
        if not amount:
            return None
        currency = (payment.currency or "PLN").upper()
        if currency == "PLN":
            return amount
        try:
            return await self._rates.to_pln(amount, currency)
        except ExchangeRateError as exc:
            logger.warning(
                "expenses.conversion_failed",
                payment_id=str(payment.id),
                currency=currency,
                error=str(exc),
            )
            return None
