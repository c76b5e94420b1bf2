"""Google Calendar side of the pipeline."""

from shiftsync.calendar.google import (
    CalendarRequestError,
    CalendarSyncError,
    CalendarTokenRefreshError,
    GoogleCalendarClient,
    GoogleOAuthClient,
    GoogleOAuthCredentials,
)
from shiftsync.calendar.sync import CalendarSync, SyncReport

__all__ = [
    "CalendarRequestError",
    "CalendarSync",
    "CalendarSyncError",
    "CalendarTokenRefreshError",
    "GoogleCalendarClient",
    "GoogleOAuthClient",
    "GoogleOAuthCredentials",
    "SyncReport",
]
