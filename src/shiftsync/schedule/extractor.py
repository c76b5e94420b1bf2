"""Walk one schedule row and turn its time-range cells into shift records.

The decoded page is a flat list of text runs in visual order (left to right,
top to bottom). A row is recognised purely geometrically: it starts at the
row label and ends at the first token whose x-coordinate is not to the right
of that label, which means the stream has wrapped to the next row.

Within a row every shift occupies a fixed three-cell block
``(shift type, spacer, time range)``, so the shift type is always the token
two positions before the time range. A layout change in the source document
breaks this silently.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import datetime, timedelta

from shiftsync.schedule.filename import parse_year_range
from shiftsync.schedule.models import DateColumn, PositionedToken, ShiftRecord
from shiftsync.schedule.normalizer import build_date_columns

logger = logging.getLogger(__name__)

TIME_RANGE_RE = re.compile(r"(\d{1,2}):(\d{2})-(\d{1,2}):(\d{2})")

# First token of every page that carries the per-employee schedule table.
SCHEDULE_PAGE_MARKER = "Op naam"

# Offset from the time-range cell back to the shift-type cell.
TYPE_LOOKBACK = 2


def _parse_time_range(text: str) -> tuple[int, int, int, int] | None:
    match = TIME_RANGE_RE.search(text)
    if match is None:
        return None
    start_h, start_m, end_h, end_m = (int(g) for g in match.groups())
    if start_h > 23 or end_h > 23 or start_m > 59 or end_m > 59:
        return None
    return start_h, start_m, end_h, end_m


def extract_shifts(
    tokens: Sequence[PositionedToken],
    date_columns: DateColumn,
    row_label: str,
) -> list[ShiftRecord]:
    """Extract the shifts of ``row_label`` from an ordered token list.

    Never raises for a malformed row; cells that cannot be resolved are
    skipped. Returns an empty list when the row label does not occur.
    """
    shifts: list[ShiftRecord] = []
    row_start_x: float | None = None

    for index, token in enumerate(tokens):
        if row_start_x is None:
            if token.text == row_label:
                row_start_x = token.x
            continue

        if token.x <= row_start_x:
            break

        parsed = _parse_time_range(token.text)
        if parsed is None:
            continue

        day = date_columns.get(token.x)
        if day is None:
            logger.debug("No date column at x=%s for %r, skipping", token.x, token.text)
            continue

        if index < TYPE_LOOKBACK:
            continue
        shift_type = tokens[index - TYPE_LOOKBACK].text

        start_h, start_m, end_h, end_m = parsed
        start = datetime(day.year, day.month, day.day, start_h, start_m)
        end = datetime(day.year, day.month, day.day, end_h, end_m)
        if end == start:
            logger.debug("Zero-length shift %r, skipping", token.text)
            continue
        if end < start:
            # Overnight shift.
            end += timedelta(days=1)

        shifts.append(ShiftRecord(type=shift_type, start=start, end=end))

    return shifts


def select_schedule_page(
    pages: Sequence[Sequence[PositionedToken]],
    row_label: str,
    marker: str = SCHEDULE_PAGE_MARKER,
) -> Sequence[PositionedToken] | None:
    """Return the schedule page that contains ``row_label``.

    A page qualifies when its first token is ``marker`` and any token equals
    the row label. When several pages qualify the last one wins.
    """
    selected: Sequence[PositionedToken] | None = None
    for page in pages:
        if not page or page[0].text != marker:
            continue
        if any(token.text == row_label for token in page):
            selected = page
    return selected


def extract_shifts_from_pages(
    pages: Sequence[Sequence[PositionedToken]],
    filename: str,
    row_label: str,
) -> list[ShiftRecord]:
    """Run page selection, date indexing and row extraction for one document.

    Raises ``ExtractionError`` when the filename does not carry the
    Weekplanning date range. A document without a matching page yields no
    shifts.
    """
    start_year, end_year = parse_year_range(filename)

    page = select_schedule_page(pages, row_label)
    if page is None:
        logger.info("No schedule page for %r in %s", row_label, filename)
        return []

    date_columns = build_date_columns(page, start_year, end_year)
    if not date_columns:
        logger.warning("Schedule page in %s has no day-column headers", filename)
        return []

    shifts = extract_shifts(page, date_columns, row_label)
    logger.info("Extracted %d shift(s) for %r from %s", len(shifts), row_label, filename)
    return shifts
