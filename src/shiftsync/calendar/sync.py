"""Write extracted shifts to Google Calendar."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any
from zoneinfo import ZoneInfo

from shiftsync.calendar.google import CalendarSyncError, GoogleCalendarClient
from shiftsync.connectors.metrics import WatcherMetrics
from shiftsync.schedule.filename import WeekWindow
from shiftsync.schedule.models import ShiftRecord

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/Amsterdam"
DEFAULT_SUMMARY_PREFIX = "Kwalitaria"


@dataclass
class SyncReport:
    created: int = 0
    deleted: int = 0
    failed: int = 0


def build_event_body(shift: ShiftRecord, prefix: str, timezone: str) -> dict[str, Any]:
    """Render a shift as a Google Calendar event resource.

    Times are sent as local wall-clock values with an explicit IANA zone.
    """
    return {
        "summary": f"{prefix} - {shift.type}",
        "start": {"dateTime": shift.start.isoformat(), "timeZone": timezone},
        "end": {"dateTime": shift.end.isoformat(), "timeZone": timezone},
    }


class CalendarSync:
    """Creates one event per shift, optionally clearing the week first."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        calendar_id: str,
        *,
        timezone: str = DEFAULT_TIMEZONE,
        summary_prefix: str = DEFAULT_SUMMARY_PREFIX,
        replace_week: bool = True,
        metrics: WatcherMetrics | None = None,
    ) -> None:
        self._client = client
        self._calendar_id = calendar_id
        self._timezone = timezone
        self._zone = ZoneInfo(timezone)
        self._prefix = summary_prefix
        self._replace_week = replace_week
        self._metrics = metrics

    def _record(self, operation: str, status: str) -> None:
        if self._metrics is not None:
            self._metrics.record_calendar_operation(operation, status)

    def _is_own_event(self, event: dict[str, Any]) -> bool:
        summary = event.get("summary")
        return isinstance(summary, str) and summary.startswith(f"{self._prefix} - ")

    async def clear_window(self, window: WeekWindow, report: SyncReport) -> None:
        """Delete previously synced events that start inside ``window``."""
        time_min = datetime.combine(window.start, time.min, tzinfo=self._zone)
        time_max = datetime.combine(window.end_exclusive, time.min, tzinfo=self._zone)
        try:
            events = await self._client.list_events(self._calendar_id, time_min, time_max)
        except CalendarSyncError as exc:
            self._record("list", "error")
            report.failed += 1
            logger.error("Could not list events between %s and %s: %s", time_min, time_max, exc)
            return
        self._record("list", "success")

        for event in events:
            event_id = event.get("id")
            if not isinstance(event_id, str) or not self._is_own_event(event):
                continue
            try:
                await self._client.delete_event(self._calendar_id, event_id)
            except CalendarSyncError as exc:
                self._record("delete", "error")
                report.failed += 1
                logger.error("Error deleting event %s: %s", event_id, exc)
                continue
            self._record("delete", "success")
            report.deleted += 1
            logger.info("Deleted stale event %s (%s)", event_id, event.get("summary"))

    async def sync(
        self,
        shifts: Sequence[ShiftRecord],
        window: WeekWindow | None = None,
    ) -> SyncReport:
        """Create calendar events for ``shifts``.

        Each failure is logged and counted; it never stops the remaining
        events from being written.
        """
        report = SyncReport()
        if self._replace_week and window is not None:
            await self.clear_window(window, report)

        for shift in shifts:
            body = build_event_body(shift, self._prefix, self._timezone)
            try:
                created = await self._client.create_event(self._calendar_id, body)
            except CalendarSyncError as exc:
                self._record("create", "error")
                report.failed += 1
                logger.error("Error creating event %r at %s: %s", body["summary"], shift.start, exc)
                continue
            self._record("create", "success")
            report.created += 1
            logger.info("Event created: %s (%s)", body["summary"], created.get("htmlLink", ""))

        return report
