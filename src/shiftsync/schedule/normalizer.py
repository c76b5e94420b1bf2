"""Build the x-position -> date index from the day-column headers of a page."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date

from shiftsync.schedule.models import DateColumn, PositionedToken

logger = logging.getLogger(__name__)

# "MA (01 - 06)": two-letter day label, then day and month.
HEADER_RE = re.compile(r"\w\w \((\d\d) - (\d\d)\)")


def resolve_year(month: int, start_year: int, end_year: int) -> int:
    """Pick the year for a header month.

    A week that crosses New Year is named with two different years; only
    January columns belong to the later one.
    """
    if start_year != end_year and month == 1:
        return end_year
    return start_year


def build_date_columns(
    tokens: Iterable[PositionedToken],
    start_year: int,
    end_year: int,
) -> DateColumn:
    """Map the x-coordinate of every day-column header to its date.

    Tokens that do not look like a header are ignored. A header with an
    impossible day/month is skipped. Duplicate x-coordinates overwrite the
    earlier entry.
    """
    columns: DateColumn = {}
    for token in tokens:
        match = HEADER_RE.search(token.text)
        if match is None:
            continue
        day = int(match.group(1))
        month = int(match.group(2))
        year = resolve_year(month, start_year, end_year)
        try:
            columns[token.x] = date(year, month, day)
        except ValueError:
            logger.debug("Skipping header with invalid date: %r", token.text)
    return columns
