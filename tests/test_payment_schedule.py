"""Unit tests for the 50/50 vs 100% payment schedule rules."""

from __future__ import annotations

from datetime import date, datetime

import pytest

from src.app.payments.schedule import (
    PaymentScheduleService,
    ScheduleType,
    parse_date,
    shift_months,
)

TODAY = date(2025, 5, 1)


class TestShiftMonths:
    def test_back_one_month(self):
        assert shift_months(date(2025, 7, 15), -1) == date(2025, 6, 15)

    def test_clamps_to_month_end(self):
        assert shift_months(date(2025, 3, 31), -1) == date(2025, 2, 28)

    def test_crosses_year_boundary(self):
        assert shift_months(date(2025, 1, 10), -1) == date(2024, 12, 10)
        assert shift_months(date(2024, 12, 10), 1) == date(2025, 1, 10)


class TestParseDate:
    def test_pipedrive_timestamp_truncated(self):
        assert parse_date("2025-06-01 12:00:00") == date(2025, 6, 1)

    def test_datetime(self):
        assert parse_date(datetime(2025, 6, 1, 9, 30)) == date(2025, 6, 1)

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_unparseable(self, value):
        assert parse_date(value) is None


class TestDetermineSchedule:
    def test_far_close_is_split(self):
        schedule = PaymentScheduleService.determine_schedule("2025-07-15", today=TODAY)
        assert schedule.schedule == ScheduleType.SPLIT
        assert schedule.second_payment_date == date(2025, 6, 15)
        assert schedule.days_until_close == 75

    def test_exactly_thirty_days_is_split(self):
        schedule = PaymentScheduleService.determine_schedule(date(2025, 5, 31), today=TODAY)
        assert schedule.schedule == ScheduleType.SPLIT

    def test_near_close_is_full(self):
        schedule = PaymentScheduleService.determine_schedule("2025-05-20", today=TODAY)
        assert schedule.schedule == ScheduleType.FULL
        assert schedule.second_payment_date is None
        assert schedule.days_until_close == 19

    def test_missing_close_is_full(self):
        schedule = PaymentScheduleService.determine_schedule(None, today=TODAY)
        assert schedule.schedule == ScheduleType.FULL
        assert schedule.days_until_close is None

    def test_schedule_values(self):
        assert ScheduleType.SPLIT.value == "50/50"
        assert ScheduleType.FULL.value == "100%"
