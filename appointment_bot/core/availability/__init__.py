"""
Availability Module

Working-hours template, busy intervals, slot generation and
proximity ranking.

Usage:
    from appointment_bot.core.availability import build_resolver, rank_by_proximity

    resolver = build_resolver(calendar_client)
    slots = await resolver.resolve(now, day_span=5, per_day_cap=8, total_cap=20)
    nearest = rank_by_proximity(slots, target)[:6]
"""

from appointment_bot.core.availability.types import (
    BusyInterval,
    Slot,
    WorkingHoursTemplate,
)
from appointment_bot.core.availability.resolver import (
    AvailabilityResolver,
    BusySource,
    build_resolver,
    rank_by_proximity,
)

__all__ = [
    "BusyInterval",
    "Slot",
    "WorkingHoursTemplate",
    "AvailabilityResolver",
    "BusySource",
    "build_resolver",
    "rank_by_proximity",
]
