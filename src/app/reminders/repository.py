"""Async storage for Google Meet reminder tasks."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.reminders.models import GoogleMeetReminderModel
from src.app.reminders.schemas import ContactType, ReminderTask, ReminderType

logger = structlog.get_logger(__name__)


class ReminderTaskRepository:
    """Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def upsert_task(self, task: ReminderTask) -> None:
        """Insert a task, or refresh its schedule and contact if it already exists.

        ``sent``/``sent_at`` are never touched here, so rescanning a calendar
        does not re-arm a delivered reminder.
        """
        values = task.model_dump(exclude={"sent", "sent_at"})
        values["contact_type"] = task.contact_type.value
        values["reminder_type"] = task.reminder_type.value
        stmt = insert(GoogleMeetReminderModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["task_id"],
            set_={
                "event_summary": stmt.excluded.event_summary,
                "sendpulse_id": stmt.excluded.sendpulse_id,
                "phone_number": stmt.excluded.phone_number,
                "contact_type": stmt.excluded.contact_type,
                "meet_link": stmt.excluded.meet_link,
                "meeting_time": stmt.excluded.meeting_time,
                "scheduled_time": stmt.excluded.scheduled_time,
                "updated_at": func.now(),
            },
        )
        async for session in self._session_factory():
            await session.execute(stmt)
            await session.commit()

    async def get_due_tasks(self, window_start: datetime, now: datetime) -> list[ReminderTask]:
        """Unsent tasks scheduled within [window_start, now], earliest first."""
        async for session in self._session_factory():
            stmt = (
                select(GoogleMeetReminderModel)
                .where(
                    GoogleMeetReminderModel.sent.is_(False),
                    GoogleMeetReminderModel.scheduled_time >= window_start,
                    GoogleMeetReminderModel.scheduled_time <= now,
                )
                .order_by(GoogleMeetReminderModel.scheduled_time.asc())
            )
            result = await session.execute(stmt)
            return [_model_to_task(model) for model in result.scalars().all()]
        return []

    async def mark_sent(self, task_id: str, sent_at: datetime) -> None:
        async for session in self._session_factory():
            stmt = (
                update(GoogleMeetReminderModel)
                .where(GoogleMeetReminderModel.task_id == task_id)
                .values(sent=True, sent_at=sent_at, updated_at=func.now())
            )
            await session.execute(stmt)
            await session.commit()


def _model_to_task(model: GoogleMeetReminderModel) -> ReminderTask:
    return ReminderTask(
        task_id=model.task_id,
        event_id=model.event_id,
        event_summary=model.event_summary,
        client_email=model.client_email,
        sendpulse_id=model.sendpulse_id,
        phone_number=model.phone_number,
        contact_type=ContactType(model.contact_type),
        meet_link=model.meet_link,
        meeting_time=model.meeting_time,
        reminder_type=ReminderType(model.reminder_type),
        scheduled_time=model.scheduled_time,
        sent=model.sent,
        sent_at=model.sent_at,
    )
