"""Persisted Google Meet reminder tasks.

One row per (event, client email, reminder type). Rows survive restarts so a
task scheduled yesterday is still delivered by today's process.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


class GoogleMeetReminderModel(Base):
    __tablename__ = "google_meet_reminders"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    task_id: Mapped[str] = mapped_column(String(500), unique=True, nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_summary: Mapped[str | None] = mapped_column(String(500), nullable=True)
    client_email: Mapped[str] = mapped_column(String(320), nullable=False)
    sendpulse_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contact_type: Mapped[str] = mapped_column(String(16), nullable=False)
    meet_link: Mapped[str] = mapped_column(Text, nullable=False)
    meeting_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reminder_type: Mapped[str] = mapped_column(String(8), nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), index=True, nullable=False
    )
    sent: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
