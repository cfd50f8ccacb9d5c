"""Decides which Stripe payments a deal still needs.

Stored sessions are grouped into deposit, rest and single payments by
their ``payment_type`` (legacy names included). A session counts as active
while it is still ``created``.
"""

from __future__ import annotations

from pydantic import BaseModel

from src.app.payments.models import StripePaymentModel
from src.app.payments.repository import STATUS_CREATED, StripePaymentRepository
from src.app.payments.schedule import PaymentSchedule, ScheduleType

DEPOSIT_TYPES = frozenset({"deposit", "first"})
REST_TYPES = frozenset({"rest", "second", "final"})
SINGLE_TYPES = frozenset({"single", "payment", ""})


class PaymentTypeState(BaseModel):
    exists: bool = False
    paid: bool = False
    active: bool = False


class PaymentState(BaseModel):
    schedule: ScheduleType
    deposit: PaymentTypeState
    rest: PaymentTypeState
    single: PaymentTypeState
    needs_deposit: bool = False
    needs_rest: bool = False
    needs_single: bool = False
    total_payments: int = 0


def _state_for(rows: list[StripePaymentModel], types: frozenset[str]) -> PaymentTypeState:
    matching = [row for row in rows if (row.payment_type or "").lower() in types]
    return PaymentTypeState(
        exists=bool(matching),
        paid=any(row.payment_status == "paid" for row in matching),
        active=any(row.status == STATUS_CREATED for row in matching),
    )


def _present(state: PaymentTypeState) -> bool:
    return state.paid or state.active


def analyze_rows(rows: list[StripePaymentModel], schedule: PaymentSchedule) -> PaymentState:
    deposit = _state_for(rows, DEPOSIT_TYPES)
    rest = _state_for(rows, REST_TYPES)
    single = _state_for(rows, SINGLE_TYPES)
    state = PaymentState(
        schedule=schedule.schedule,
        deposit=deposit,
        rest=rest,
        single=single,
        total_payments=len(rows),
    )

    if schedule.schedule == ScheduleType.SPLIT:
        state.needs_deposit = not _present(deposit) and not _present(single)
        state.needs_rest = deposit.paid and not _present(rest)
    else:
        state.needs_single = not any(_present(s) for s in (deposit, rest, single))
    return state


class PaymentStateAnalyzer:
    def __init__(self, repository: StripePaymentRepository) -> None:
        self._repository = repository

    async def analyze(self, deal_id: int, schedule: PaymentSchedule) -> PaymentState:
        rows = await self._repository.list_for_deal(deal_id)
        return analyze_rows(rows, schedule)
