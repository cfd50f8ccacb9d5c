"""Payment schedule rules shared by Stripe sessions, proformas and reminders.

A deal whose expected close date is at least 30 days away is paid 50/50:
a deposit now and the rest one month before the close date. Anything
closer, or without a usable date, is paid in full.
"""

from __future__ import annotations

import calendar
import math
from datetime import date, datetime, timezone
from enum import Enum

from pydantic import BaseModel

SPLIT_THRESHOLD_DAYS = 30


class ScheduleType(str, Enum):
    SPLIT = "50/50"
    FULL = "100%"


class PaymentSchedule(BaseModel):
    schedule: ScheduleType
    second_payment_date: date | None = None
    days_until_close: int | None = None


def shift_months(value: date, months: int) -> date:
    """Move a date by whole months, clamping to the last day of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def parse_date(value: str | date | datetime | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


class PaymentScheduleService:
    @staticmethod
    def determine_schedule(
        expected_close: str | date | datetime | None,
        today: date | None = None,
    ) -> PaymentSchedule:
        close = parse_date(expected_close)
        if close is None:
            return PaymentSchedule(schedule=ScheduleType.FULL)

        today = today or datetime.now(timezone.utc).date()
        days = math.ceil((close - today).days)
        if days >= SPLIT_THRESHOLD_DAYS:
            return PaymentSchedule(
                schedule=ScheduleType.SPLIT,
                second_payment_date=shift_months(close, -1),
                days_until_close=days,
            )
        return PaymentSchedule(schedule=ScheduleType.FULL, days_until_close=days)
