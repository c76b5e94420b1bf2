"""Shift extraction from the positioned text of the weekly schedule PDF.

The schedule has no machine-readable table structure. Rows and columns are
reconstructed from the x-position of each text run:

- ``normalizer`` maps day-column header x-positions to calendar dates.
- ``extractor`` walks a single employee row and emits ``ShiftRecord`` items.
- ``document`` decodes PDF bytes into per-page ``PositionedToken`` lists.
- ``filename`` parses the year range and week window from the attachment name.
"""

from shiftsync.schedule.extractor import extract_shifts, extract_shifts_from_pages
from shiftsync.schedule.models import ExtractionError, PositionedToken, ShiftRecord
from shiftsync.schedule.normalizer import build_date_columns

__all__ = [
    "ExtractionError",
    "PositionedToken",
    "ShiftRecord",
    "build_date_columns",
    "extract_shifts",
    "extract_shifts_from_pages",
]
