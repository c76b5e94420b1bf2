"""Parse the date range embedded in a schedule attachment filename.

Schedules are sent as ``Weekplanning (DD-MM-YYYY-DD-MM-YYYY).pdf``. The two
year fields resolve the year of each day column (a week can span New Year),
and the full dates give the window that is cleared before re-syncing.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta

from shiftsync.schedule.models import ExtractionError

_WEEK_RE = re.compile(
    r"Weekplanning \((\d{2})-(\d{2})-(\d{4})-(\d{2})-(\d{2})-(\d{4})\)\.pdf",
)


@dataclass(frozen=True)
class WeekWindow:
    """Half-open date range ``[start, end_exclusive)`` covered by a schedule."""

    start: date
    end_exclusive: date

    def __contains__(self, value: date) -> bool:
        return self.start <= value < self.end_exclusive


def _match(filename: str) -> re.Match[str]:
    match = _WEEK_RE.search(filename)
    if match is None:
        raise ExtractionError(f"filename does not follow the Weekplanning convention: {filename!r}")
    return match


def parse_year_range(filename: str) -> tuple[int, int]:
    """Return ``(start_year, end_year)`` from a Weekplanning filename."""
    match = _match(filename)
    return int(match.group(3)), int(match.group(6))


def parse_week_window(filename: str) -> WeekWindow:
    """Return the week covered by a Weekplanning filename.

    The end is exclusive: the final day of the schedule plus one day, so the
    window includes every shift on the last day.
    """
    match = _match(filename)
    d1, m1, y1, d2, m2, y2 = (int(g) for g in match.groups())
    try:
        start = date(y1, m1, d1)
        end = date(y2, m2, d2)
    except ValueError as exc:
        raise ExtractionError(f"filename contains an invalid date: {filename!r}") from exc
    if end < start:
        raise ExtractionError(f"filename date range ends before it starts: {filename!r}")
    return WeekWindow(start=start, end_exclusive=end + timedelta(days=1))
