"""Pydantic schemas for reminder jobs."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, Field


class ReminderType(str, Enum):
    THIRTY_MIN = "30min"
    FIVE_MIN = "5min"


class ContactType(str, Enum):
    TELEGRAM = "telegram"
    SMS = "sms"


class ReminderTask(BaseModel):
    """A single reminder to deliver at ``scheduled_time``."""

    task_id: str
    event_id: str
    event_summary: str | None = None
    client_email: str
    sendpulse_id: str | None = None
    phone_number: str | None = None
    contact_type: ContactType
    meet_link: str
    meeting_time: datetime
    reminder_type: ReminderType
    scheduled_time: datetime
    sent: bool = False
    sent_at: datetime | None = None


class ScanSummary(BaseModel):
    success: bool
    run_id: str
    trigger: str
    events_scanned: int = 0
    meet_events_found: int = 0
    tasks_created: int = 0
    clients_matched: int = 0
    clients_skipped: int = 0
    error: str | None = None


class ProcessSummary(BaseModel):
    success: bool
    run_id: str
    trigger: str
    tasks_processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None


class ProformaReminderTask(BaseModel):
    """An open deal whose first half is paid and second half is not."""

    deal_id: int
    deal_title: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    proforma_number: str
    second_payment_date: date
    second_payment_amount: float
    currency: str = "PLN"
    bank_account_number: str | None = None
    days_until_second_payment: int
    is_date_reached: bool
    expected_close_date: date


class ProformaProcessResult(BaseModel):
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    errors: list[dict[str, str | int | None]] = Field(default_factory=list)
