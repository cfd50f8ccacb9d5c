"""Google Calendar access for meeting-reminder scheduling.

Authenticates with OAuth2 user credentials built from a long-lived refresh
token (the company calendar owner granted offline access once). The
google-auth library refreshes the access token transparently on each
request. The synchronous googleapiclient calls run in asyncio.to_thread so
the event loop is not blocked.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import structlog
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from pydantic import BaseModel, ConfigDict

from src.app.services.base import CalendarError

logger = structlog.get_logger(__name__)

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]
TOKEN_URI = "https://oauth2.googleapis.com/token"
MAX_RESULTS = 250
MIN_LEAD_TIME = timedelta(minutes=30)


class MeetEvent(BaseModel):
    """A calendar event that qualifies for client reminders."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    event: dict[str, Any]
    meet_link: str
    client_emails: list[str]
    start: datetime
    end: datetime | None = None
    timezone: str


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GoogleCalendarService:
    """Read-only access to one Google calendar.

    Args:
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        refresh_token: Offline refresh token for the calendar owner.
        calendar_id: Calendar to read (default "primary").
        timezone: IANA timezone passed to the API and used as event fallback.
        internal_domains: Email domains treated as staff, never as clients.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        calendar_id: str = "primary",
        timezone: str = "Europe/Warsaw",
        internal_domains: list[str] | None = None,
    ) -> None:
        if not (client_id and client_secret and refresh_token):
            raise ValueError(
                "GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET and GOOGLE_REFRESH_TOKEN must be set"
            )
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self.calendar_id = calendar_id
        self.timezone = timezone
        self._internal_domains = [d.lower().lstrip("@") for d in (internal_domains or [])]
        self._service: Any = None

    def _build_credentials(self) -> Credentials:
        return Credentials(
            token=None,
            refresh_token=self._refresh_token,
            client_id=self._client_id,
            client_secret=self._client_secret,
            token_uri=TOKEN_URI,
            scopes=CALENDAR_SCOPES,
        )

    def get_calendar_service(self) -> Any:
        """Build the Calendar API v3 resource once and reuse it."""
        if self._service is None:
            logger.info("calendar.building_service", calendar_id=self.calendar_id)
            self._service = build(
                "calendar",
                "v3",
                credentials=self._build_credentials(),
                cache_discovery=False,
            )
        return self._service

    async def list_events(self, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        """Expanded single events in [time_min, time_max], ordered by start."""

        def _list() -> dict[str, Any]:
            return (
                self.get_calendar_service()
                .events()
                .list(
                    calendarId=self.calendar_id,
                    timeMin=time_min.isoformat(),
                    timeMax=time_max.isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    timeZone=self.timezone,
                    maxResults=MAX_RESULTS,
                )
                .execute()
            )

        try:
            result = await asyncio.to_thread(_list)
        except HttpError as exc:
            raise CalendarError(
                f"events.list failed: {exc}",
                status_code=getattr(exc.resp, "status", None),
            ) from exc

        events = result.get("items", [])
        logger.info("calendar.events_fetched", calendar_id=self.calendar_id, count=len(events))
        return events

    # ── Event inspection ─────────────────────────────────────────────────

    @staticmethod
    def extract_meet_link(event: dict[str, Any]) -> str | None:
        """Video entry point from conferenceData, else the legacy hangoutLink."""
        entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
        for entry in entry_points:
            if entry.get("entryPointType") == "video" and entry.get("uri"):
                return entry["uri"]
        return event.get("hangoutLink") or None

    def extract_client_emails(self, event: dict[str, Any]) -> list[str]:
        """Attendee emails excluding the organizer and internal domains."""
        emails: list[str] = []
        for attendee in event.get("attendees") or []:
            email = attendee.get("email")
            if not email or attendee.get("organizer") is True:
                continue
            domain = email.rsplit("@", 1)[-1].lower()
            if domain in self._internal_domains:
                continue
            emails.append(email)
        return emails

    def filter_meet_events(
        self, events: list[dict[str, Any]], now: datetime
    ) -> list[MeetEvent]:
        """Keep timed, live events with a Meet link, client attendees and at
        least 30 minutes of lead time."""
        valid: list[MeetEvent] = []
        for event in events:
            start_info = event.get("start") or {}
            start = _parse_datetime(start_info.get("dateTime"))
            if start is None:
                continue
            if event.get("status") == "cancelled":
                continue
            meet_link = self.extract_meet_link(event)
            if not meet_link:
                continue
            client_emails = self.extract_client_emails(event)
            if not client_emails:
                continue
            if start < now or start - now < MIN_LEAD_TIME:
                logger.debug("calendar.event_too_soon", event_id=event.get("id"))
                continue

            valid.append(
                MeetEvent(
                    event=event,
                    meet_link=meet_link,
                    client_emails=client_emails,
                    start=start,
                    end=_parse_datetime((event.get("end") or {}).get("dateTime")),
                    timezone=start_info.get("timeZone") or self.timezone,
                )
            )

        logger.info("calendar.meet_events_filtered", total=len(events), valid=len(valid))
        return valid
