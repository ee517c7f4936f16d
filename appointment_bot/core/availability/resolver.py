"""
Availability Resolver.

Turns calendar busy time and the weekly working-hours template into
an ordered, capped list of offerable slots.
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Optional, Protocol, Sequence

from appointment_bot.config import get_settings
from appointment_bot.core.availability.types import (
    BusyInterval,
    Slot,
    WorkingHoursTemplate,
    format_day_label,
    format_display_label,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class BusySource(Protocol):
    """Anything that can report busy intervals for a set of calendars."""

    async def list_busy(
        self,
        calendar_ids: Sequence[str],
        day_start: datetime,
        day_end: datetime,
    ) -> list[BusyInterval]: ...


def rank_by_proximity(slots: Sequence[Slot], target: datetime) -> list[Slot]:
    """Sort slots by absolute distance to target; ties stay chronological."""
    return sorted(slots, key=lambda slot: (abs(slot.start - target), slot.start))


class AvailabilityResolver:
    """
    Computes free slots day by day.

    For every day in the window:
    - closed weekdays (absent from the template) produce nothing
    - busy time from all calendars is merged by union
    - each working interval is trimmed by the buffer and sliced into
      fixed-length slots, with no partial trailing slot
    - slots before the advance-notice horizon or overlapping busy time are dropped

    A busy lookup that fails for one day drops that day only.
    """

    def __init__(
        self,
        busy_source: BusySource,
        template: WorkingHoursTemplate,
        calendar_ids: Sequence[str],
        tz: tzinfo,
        slot_minutes: int = 60,
        buffer_minutes: int = 0,
        min_advance: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = _utcnow,
    ):
        if slot_minutes <= 0:
            raise ValueError("slot_minutes must be positive")
        self._busy_source = busy_source
        self._template = template
        self._calendar_ids = list(calendar_ids)
        self._tz = tz
        self._slot_length = timedelta(minutes=slot_minutes)
        self._buffer = timedelta(minutes=buffer_minutes)
        self._min_advance = min_advance
        self._clock = clock

    @property
    def slot_length(self) -> timedelta:
        return self._slot_length

    async def resolve(
        self,
        from_instant: datetime,
        day_span: int,
        per_day_cap: int,
        total_cap: int,
    ) -> list[Slot]:
        """Return up to total_cap chronological slots starting at from_instant.

        Args:
            from_instant: Search start (its local day is the first day scanned)
            day_span: Number of consecutive local days to scan
            per_day_cap: Maximum slots emitted for a single day
            total_cap: Maximum slots emitted overall

        Returns:
            Ordered list of slots (possibly empty)
        """
        if day_span <= 0 or per_day_cap <= 0 or total_cap <= 0:
            return []

        earliest = max(from_instant, self._clock()) + self._min_advance
        first_day = from_instant.astimezone(self._tz).date()
        days = [first_day + timedelta(days=offset) for offset in range(day_span)]
        open_days = [day for day in days if self._template.for_date(day)]

        if not open_days:
            return []

        busy_by_day = await asyncio.gather(*(self._busy_for_day(day) for day in open_days))

        slots: list[Slot] = []
        for day, busy in zip(open_days, busy_by_day):
            if busy is None:
                continue
            for slot in self._slots_for_day(day, busy, earliest)[:per_day_cap]:
                slots.append(slot)
                if len(slots) >= total_cap:
                    return slots

        return slots

    async def is_free(self, start: datetime, end: datetime) -> bool:
        """Check a concrete interval against current busy time.

        Raises whatever the busy source raises; callers decide how to
        treat an unknown answer.
        """
        busy = await self._busy_source.list_busy(self._calendar_ids, start, end)
        return not any(interval.overlaps(start, end) for interval in busy)

    async def _busy_for_day(self, day: date) -> Optional[list[BusyInterval]]:
        """Busy intervals for one local day, or None when the lookup failed."""
        day_start = datetime.combine(day, time.min, tzinfo=self._tz)
        day_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self._tz)
        try:
            return await self._busy_source.list_busy(self._calendar_ids, day_start, day_end)
        except Exception as e:
            logger.warning(
                f"Busy lookup failed for {day.isoformat()} "
                f"(calendars={self._calendar_ids}): {e} - skipping day"
            )
            return None

    def _slots_for_day(
        self,
        day: date,
        busy: Sequence[BusyInterval],
        earliest: datetime,
    ) -> list[Slot]:
        slots: list[Slot] = []

        for opens, closes in self._template.for_date(day):
            window_start = (
                datetime.combine(day, opens, tzinfo=self._tz).astimezone(timezone.utc)
                + self._buffer
            )
            window_end = (
                datetime.combine(day, closes, tzinfo=self._tz).astimezone(timezone.utc)
                - self._buffer
            )

            cursor = window_start
            while cursor + self._slot_length <= window_end:
                start, end = cursor, cursor + self._slot_length
                cursor = end

                if start < earliest:
                    continue
                if any(interval.overlaps(start, end) for interval in busy):
                    continue

                slots.append(
                    Slot(
                        start=start,
                        end=end,
                        day_label=format_day_label(start, self._tz),
                        display_label=format_display_label(start, self._tz),
                    )
                )

        return slots


def build_resolver(busy_source: BusySource) -> AvailabilityResolver:
    """Build a resolver from application settings."""
    settings = get_settings()
    return AvailabilityResolver(
        busy_source=busy_source,
        template=WorkingHoursTemplate.from_config(settings.working_hours),
        calendar_ids=settings.busy_calendar_ids,
        tz=settings.tz,
        slot_minutes=settings.slot_minutes,
        buffer_minutes=settings.buffer_minutes,
        min_advance=timedelta(hours=settings.min_advance_hours),
    )
