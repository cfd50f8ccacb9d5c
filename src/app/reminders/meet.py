"""Google Meet call reminders.

Two jobs:
- daily_calendar_scan(): reads the next 30 days of the company calendar,
  matches client attendees to Pipedrive persons, and stores a 30-minute and
  a 5-minute reminder task per client.
- process_scheduled_reminders(): runs every minute and delivers tasks that
  fell due in the last 5 minutes.

Delivery goes to Telegram when the person has a SendPulse id, otherwise to
the person's phone by SMS.
"""

from __future__ import annotations

import uuid
from datetime import datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from src.app.core.phone import (
    get_country_from_person,
    is_valid_e164,
    mask_phone,
    normalize_phone_number,
)
from src.app.reminders.messages import meet_reminder_text
from src.app.reminders.repository import ReminderTaskRepository
from src.app.reminders.schemas import (
    ContactType,
    ProcessSummary,
    ReminderTask,
    ReminderType,
    ScanSummary,
)
from src.app.services.gsuite.calendar import GoogleCalendarService, MeetEvent
from src.app.services.pipedrive import PipedriveClient
from src.app.services.sendpulse import MessageResult, SendPulseClient

logger = structlog.get_logger(__name__)

SCAN_DAYS_AHEAD = 30
DELIVERY_WINDOW = timedelta(minutes=5)
REMINDER_OFFSETS: dict[ReminderType, timedelta] = {
    ReminderType.THIRTY_MIN: timedelta(minutes=30),
    ReminderType.FIVE_MIN: timedelta(minutes=5),
}


def build_task_id(event_id: str, email: str, reminder_type: ReminderType) -> str:
    return f"{event_id}:{email}:{reminder_type.value}"


class GoogleMeetReminderService:
    """Args:
        calendar: Company calendar reader.
        pipedrive: Pipedrive client for person lookups.
        sendpulse: Delivery client; None leaves tasks undelivered.
        repository: Reminder task storage.
        sendpulse_id_field: Person custom-field key holding the SendPulse id.
    """

    def __init__(
        self,
        calendar: GoogleCalendarService,
        pipedrive: PipedriveClient,
        sendpulse: SendPulseClient | None,
        repository: ReminderTaskRepository,
        sendpulse_id_field: str,
    ) -> None:
        self._calendar = calendar
        self._pipedrive = pipedrive
        self._sendpulse = sendpulse
        self._repository = repository
        self._sendpulse_id_field = sendpulse_id_field
        # Task ids delivered by this process; guards against a slow mark_sent.
        self._sent_cache: set[str] = set()

    # ── Calendar scan ────────────────────────────────────────────────────

    async def daily_calendar_scan(
        self,
        trigger: str = "manual",
        run_id: str | None = None,
        now: datetime | None = None,
    ) -> ScanSummary:
        run_id = run_id or str(uuid.uuid4())
        now = now or datetime.now(timezone.utc)
        log = logger.bind(run_id=run_id, trigger=trigger)
        log.info("meet_reminders.scan_started")

        summary = ScanSummary(success=True, run_id=run_id, trigger=trigger)
        try:
            tz = ZoneInfo(self._calendar.timezone)
            local_now = now.astimezone(tz)
            time_min = datetime.combine(local_now.date(), time.min, tzinfo=tz)
            time_max = datetime.combine(
                local_now.date() + timedelta(days=SCAN_DAYS_AHEAD), time.max, tzinfo=tz
            )

            events = await self._calendar.list_events(time_min, time_max)
            meet_events = self._calendar.filter_meet_events(events, now)
            summary.events_scanned = len(events)
            summary.meet_events_found = len(meet_events)

            for meet_event in meet_events:
                for email in meet_event.client_emails:
                    try:
                        created = await self._schedule_for_client(meet_event, email, now)
                    except Exception as exc:
                        log.error(
                            "meet_reminders.client_failed",
                            event_id=meet_event.event.get("id"),
                            email=email,
                            error=str(exc),
                        )
                        summary.clients_skipped += 1
                        continue
                    if created is None:
                        summary.clients_skipped += 1
                        continue
                    summary.clients_matched += 1
                    summary.tasks_created += created
        except Exception as exc:
            log.error("meet_reminders.scan_failed", error=str(exc))
            return ScanSummary(success=False, run_id=run_id, trigger=trigger, error=str(exc))

        log.info("meet_reminders.scan_completed", **summary.model_dump(exclude={"run_id", "trigger"}))
        return summary

    async def _schedule_for_client(
        self, meet_event: MeetEvent, email: str, now: datetime
    ) -> int | None:
        """Store reminder tasks for one attendee. None means the client was skipped."""
        person = await self.find_person_by_email(email)
        if person is None:
            logger.warning("meet_reminders.person_not_found", email=email)
            return None

        sendpulse_id = self.get_sendpulse_id(person)
        phone = self.get_phone_number(person)
        if not sendpulse_id and not phone:
            logger.warning("meet_reminders.no_contact_channel", person_id=person.get("id"))
            return None

        contact_type = ContactType.TELEGRAM if sendpulse_id else ContactType.SMS
        event = meet_event.event
        created = 0
        for reminder_type, offset in REMINDER_OFFSETS.items():
            scheduled = meet_event.start - offset
            if scheduled <= now:
                continue
            await self._repository.upsert_task(
                ReminderTask(
                    task_id=build_task_id(event["id"], email, reminder_type),
                    event_id=event["id"],
                    event_summary=event.get("summary") or "Meeting",
                    client_email=email,
                    sendpulse_id=sendpulse_id,
                    phone_number=phone,
                    contact_type=contact_type,
                    meet_link=meet_event.meet_link,
                    meeting_time=meet_event.start,
                    reminder_type=reminder_type,
                    scheduled_time=scheduled,
                )
            )
            created += 1

        logger.info(
            "meet_reminders.tasks_created",
            event_id=event["id"],
            contact_type=contact_type.value,
            phone=mask_phone(phone),
            count=created,
        )
        return created

    async def find_person_by_email(self, email: str) -> dict[str, Any] | None:
        items = await self._pipedrive.search_persons(email, fields="email", exact_match=True, limit=1)
        if not items or not items[0].get("id"):
            return None
        # Search results carry no custom fields; fetch the full person.
        return await self._pipedrive.get_person(items[0]["id"])

    def get_sendpulse_id(self, person: dict[str, Any]) -> str | None:
        raw = person.get(self._sendpulse_id_field)
        if raw is None:
            return None
        value = str(raw).strip()
        return value or None

    @staticmethod
    def get_phone_number(person: dict[str, Any]) -> str | None:
        """First phone on the person that normalizes to valid E.164."""
        phones = person.get("phone") or []
        if isinstance(phones, (str, dict)):
            phones = [phones]
        country = get_country_from_person(person)
        for entry in phones:
            raw = entry.get("value") if isinstance(entry, dict) else entry
            if not raw or not isinstance(raw, str):
                continue
            normalized = normalize_phone_number(raw, country)
            if normalized and is_valid_e164(normalized):
                return normalized
            logger.warning("meet_reminders.phone_rejected", phone=mask_phone(raw))
        return None

    # ── Delivery ─────────────────────────────────────────────────────────

    async def process_scheduled_reminders(
        self,
        trigger: str = "manual",
        run_id: str | None = None,
        now: datetime | None = None,
    ) -> ProcessSummary:
        run_id = run_id or str(uuid.uuid4())
        now = now or datetime.now(timezone.utc)
        summary = ProcessSummary(success=True, run_id=run_id, trigger=trigger)

        try:
            tasks = await self._repository.get_due_tasks(now - DELIVERY_WINDOW, now)
        except Exception as exc:
            logger.error("meet_reminders.load_failed", run_id=run_id, error=str(exc))
            return ProcessSummary(success=False, run_id=run_id, trigger=trigger, error=str(exc))

        for task in tasks:
            if task.task_id in self._sent_cache:
                summary.skipped += 1
                continue
            summary.tasks_processed += 1
            result = await self.send_reminder(task)
            if not result.success:
                summary.failed += 1
                logger.error(
                    "meet_reminders.send_failed",
                    run_id=run_id,
                    task_id=task.task_id,
                    error=result.error,
                )
                continue
            await self._repository.mark_sent(task.task_id, datetime.now(timezone.utc))
            self._sent_cache.add(task.task_id)
            summary.sent += 1
            logger.info(
                "meet_reminders.sent",
                run_id=run_id,
                task_id=task.task_id,
                channel=task.contact_type.value,
            )

        if tasks:
            logger.info("meet_reminders.processed", **summary.model_dump(exclude={"trigger"}))
        return summary

    async def send_reminder(self, task: ReminderTask) -> MessageResult:
        if self._sendpulse is None:
            return MessageResult(success=False, error="SendPulse client not available")

        text = meet_reminder_text(task.contact_type, task.reminder_type, task.meet_link)
        if task.contact_type == ContactType.TELEGRAM and task.sendpulse_id:
            return await self._sendpulse.send_telegram_message(task.sendpulse_id, text)
        if task.contact_type == ContactType.SMS and task.phone_number:
            return await self._sendpulse.send_sms(task.phone_number, text)
        return MessageResult(success=False, error="No valid contact method")
