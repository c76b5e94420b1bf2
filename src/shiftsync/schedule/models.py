"""Value types shared by the schedule normalizer and extractor."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

# Column x-position -> calendar date for one schedule page.
DateColumn = dict[float, date]


class ExtractionError(ValueError):
    """Raised when a schedule document does not have the expected shape."""


@dataclass(frozen=True)
class PositionedToken:
    """One text run from a decoded page.

    ``x`` and ``y`` are layout coordinates. They carry no unit but are
    consistent within a page.
    """

    text: str
    x: float
    y: float


@dataclass(frozen=True)
class ShiftRecord:
    """A single shift for the target row.

    ``start`` and ``end`` are naive local datetimes; the calendar layer
    attaches the configured time zone.
    """

    type: str
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError(f"shift start {self.start} must be before end {self.end}")

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }
