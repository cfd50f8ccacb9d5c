"""Second-payment reminders for deals paid by proforma on a 50/50 schedule.

A deal qualifies when it is open, closes at least 30 days out, has an
active proforma, and its bank payments cover the deposit but not the rest.
Reminders go out by Telegram on the day the second payment falls due (or
the day after); older overdue tasks are assumed to have been reminded.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

import structlog

from src.app.invoices.bank_accounts import BankAccountResolver
from src.app.invoices.repository import ProformaRepository
from src.app.payments.schedule import ScheduleType, PaymentScheduleService, parse_date
from src.app.reminders.messages import proforma_reminder_text
from src.app.reminders.schemas import ProformaProcessResult, ProformaReminderTask
from src.app.services.pipedrive import PipedriveClient
from src.app.services.sendpulse import MessageResult, SendPulseClient

logger = structlog.get_logger(__name__)

PAID_TOLERANCE = 0.9
MAX_DAYS_OVERDUE = 1
OPEN_DEALS_LIMIT = 500


def _primary_email(person: dict[str, Any] | None) -> str | None:
    if not person:
        return None
    emails = person.get("email")
    if isinstance(emails, list):
        for entry in emails:
            value = entry.get("value") if isinstance(entry, dict) else entry
            if value:
                return value
        return None
    return emails or None


class ProformaSecondPaymentReminderService:
    """Args:
        pipedrive: Pipedrive client.
        sendpulse: Telegram delivery; None reports every send as failed.
        proformas: Proforma and payment storage.
        bank_accounts: Resolves the account number printed in the reminder.
        sendpulse_id_field: Person custom-field key holding the SendPulse id.
    """

    def __init__(
        self,
        pipedrive: PipedriveClient,
        sendpulse: SendPulseClient | None,
        proformas: ProformaRepository,
        bank_accounts: BankAccountResolver,
        sendpulse_id_field: str,
    ) -> None:
        self._pipedrive = pipedrive
        self._sendpulse = sendpulse
        self._proformas = proformas
        self._bank_accounts = bank_accounts
        self._sendpulse_id_field = sendpulse_id_field

    async def find_all_upcoming_tasks(self, today: date | None = None) -> list[ProformaReminderTask]:
        self._bank_accounts.refresh()
        today = today or datetime.now(timezone.utc).date()
        page = await self._pipedrive.get_deals(limit=OPEN_DEALS_LIMIT, start=0, status="open")

        tasks: list[ProformaReminderTask] = []
        for deal in page["deals"]:
            try:
                task = await self.build_task(deal, today)
            except Exception as exc:
                logger.warning("proforma_reminders.deal_failed", deal_id=deal.get("id"), error=str(exc))
                continue
            if task is not None:
                tasks.append(task)

        tasks.sort(key=lambda t: t.second_payment_date)
        return tasks

    async def build_task(self, deal: dict[str, Any], today: date) -> ProformaReminderTask | None:
        close_date = parse_date(deal.get("expected_close_date") or deal.get("close_date"))
        if close_date is None:
            return None
        schedule = PaymentScheduleService.determine_schedule(close_date, today)
        if schedule.schedule != ScheduleType.SPLIT:
            return None
        second_date = schedule.second_payment_date

        proformas = await self._proformas.get_active_proformas(deal["id"])
        if not proformas:
            return None
        payments = await self._proformas.get_payments([p.id for p in proformas])
        if not payments:
            return None

        value = float(deal.get("value") or 0)
        expected_first = value / 2
        expected_second = value / 2
        first_total = sum(
            float(p.amount or 0) for p in payments if p.payment_date and p.payment_date < second_date
        )
        second_total = sum(
            float(p.amount or 0) for p in payments if p.payment_date and p.payment_date >= second_date
        )

        first_paid = first_total >= expected_first * PAID_TOLERANCE
        date_reached = second_date <= today
        if date_reached:
            second_paid = second_total >= expected_second * PAID_TOLERANCE
        else:
            second_paid = first_total + second_total >= value * PAID_TOLERANCE

        if not first_paid or second_paid:
            return None

        _, person, _ = await self._pipedrive.get_deal_with_related_data(deal["id"])
        currency = deal.get("currency") or "PLN"
        account = await self._bank_accounts.get_for_currency(currency)
        proforma = proformas[0]

        return ProformaReminderTask(
            deal_id=deal["id"],
            deal_title=deal.get("title"),
            customer_email=_primary_email(person),
            customer_name=(person or {}).get("name"),
            proforma_number=proforma.fullnumber or f"CO-PROF {proforma.id}/{today.year}",
            second_payment_date=second_date,
            second_payment_amount=expected_second,
            currency=currency,
            bank_account_number=account.number if account and account.number else None,
            days_until_second_payment=(second_date - today).days,
            is_date_reached=date_reached,
            expected_close_date=close_date,
        )

    async def send_reminder(self, task: ProformaReminderTask) -> MessageResult:
        if self._sendpulse is None:
            return MessageResult(success=False, error="SendPulse not available")

        _, person, _ = await self._pipedrive.get_deal_with_related_data(task.deal_id)
        raw_id = (person or {}).get(self._sendpulse_id_field)
        sendpulse_id = str(raw_id).strip() if raw_id is not None else ""
        if not sendpulse_id:
            logger.warning("proforma_reminders.no_sendpulse_id", deal_id=task.deal_id)
            return MessageResult(success=False, error="SendPulse ID not found")

        result = await self._sendpulse.send_telegram_message(sendpulse_id, proforma_reminder_text(task))
        if result.success:
            logger.info(
                "proforma_reminders.sent",
                deal_id=task.deal_id,
                proforma_number=task.proforma_number,
            )
        return result

    async def process_all_deals(
        self,
        trigger: str = "manual",
        run_id: str | None = None,
        today: date | None = None,
    ) -> ProformaProcessResult:
        run_id = run_id or str(uuid.uuid4())
        today = today or datetime.now(timezone.utc).date()
        result = ProformaProcessResult()
        log = logger.bind(run_id=run_id, trigger=trigger)

        try:
            tasks = await self.find_all_upcoming_tasks(today)
        except Exception as exc:
            log.error("proforma_reminders.failed", error=str(exc))
            result.errors.append({"deal_id": None, "error": str(exc)})
            return result

        due = [task for task in tasks if task.is_date_reached]
        for task in due:
            days_overdue = (today - task.second_payment_date).days
            if days_overdue > MAX_DAYS_OVERDUE:
                result.skipped += 1
                continue

            result.processed += 1
            try:
                send_result = await self.send_reminder(task)
            except Exception as exc:
                result.errors.append({"deal_id": task.deal_id, "error": str(exc)})
                continue
            if send_result.success:
                result.sent += 1
            else:
                result.errors.append(
                    {"deal_id": task.deal_id, "error": send_result.error or "Unknown error"}
                )

        log.info(
            "proforma_reminders.processed",
            total_tasks=len(tasks),
            due=len(due),
            processed=result.processed,
            sent=result.sent,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result
