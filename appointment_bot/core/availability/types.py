"""Availability types: working-hours template, busy intervals and slots."""

from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from typing import Mapping, Sequence

from appointment_bot.config import parse_hhmm

# Template keys count from Sunday: 0 = Sunday, 1 = Monday, ..., 6 = Saturday
TEMPLATE_DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")


def template_weekday(day: date) -> int:
    """Template key for a calendar date (0 = Sunday)."""
    return day.isoweekday() % 7


def format_display_label(moment: datetime, tz: tzinfo) -> str:
    """Local "dd/mm/yy HH:MM" label, the same shape the date parser reads back."""
    return moment.astimezone(tz).strftime("%d/%m/%y %H:%M")


def format_day_label(moment: datetime, tz: tzinfo) -> str:
    """Local weekday abbreviation ("Mon", "Tue", ...)."""
    return TEMPLATE_DAY_NAMES[template_weekday(moment.astimezone(tz).date())]


@dataclass(frozen=True)
class BusyInterval:
    """A period during which a calendar resource is unavailable."""

    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap test against [start, end)."""
        return start < self.end and end > self.start


@dataclass(frozen=True)
class Slot:
    """An offerable appointment slot."""

    start: datetime
    end: datetime
    day_label: str  # "Mon"
    display_label: str  # "03/09/25 08:00"

    @classmethod
    def from_dict(cls, data: dict) -> "Slot":
        """Create from stored dict."""
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            day_label=data.get("day_label", ""),
            display_label=data.get("display_label", ""),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "day_label": self.day_label,
            "display_label": self.display_label,
        }


class WorkingHoursTemplate:
    """
    Per-weekday open intervals in local time.

    Weekday keys count from Sunday (0 = Sunday, 1 = Monday). A weekday without
    intervals is closed; there is no other notion of closed days.
    """

    def __init__(self, intervals: Mapping[int, Sequence[tuple[time, time]]]):
        self._intervals = {
            int(weekday): sorted(ranges) for weekday, ranges in intervals.items() if ranges
        }

    @classmethod
    def from_config(cls, raw: Mapping[int, Sequence[Sequence[str]]]) -> "WorkingHoursTemplate":
        """Build from the ``{"1": [["08:00", "12:00"]]}`` configuration shape."""
        return cls(
            {
                int(weekday): [(parse_hhmm(opens), parse_hhmm(closes)) for opens, closes in ranges]
                for weekday, ranges in raw.items()
            }
        )

    def for_weekday(self, weekday: int) -> list[tuple[time, time]]:
        """Open intervals for a weekday (empty when closed)."""
        return list(self._intervals.get(weekday, []))

    def for_date(self, day: date) -> list[tuple[time, time]]:
        """Open intervals on a calendar date."""
        return self.for_weekday(template_weekday(day))

    @property
    def open_weekdays(self) -> set[int]:
        return set(self._intervals)

    def is_empty(self) -> bool:
        return not self._intervals
