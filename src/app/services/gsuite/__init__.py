"""Google Workspace integration: Calendar access for Meet reminders.

Exports:
    GoogleCalendarService: Reads today's events using an OAuth refresh token.
    MeetEvent: A calendar event with a Google Meet link and external attendees.
"""

from src.app.services.gsuite.calendar import GoogleCalendarService, MeetEvent

__all__ = ["GoogleCalendarService", "MeetEvent"]
