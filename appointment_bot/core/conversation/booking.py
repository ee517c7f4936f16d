"""
Calendar side effects of a conversation: booking and cancellation.

Both run as background tasks after the reply is decided. They never
raise: failures are logged and reported in the returned result.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta, tzinfo
from typing import Optional, Sequence

from appointment_bot.core.availability.resolver import AvailabilityResolver
from appointment_bot.core.conversation.datetime_parser import parse_numeric
from appointment_bot.core.conversation.extractors import (
    ExtractionInput,
    PatientDetails,
    extract_details,
)
from appointment_bot.core.phone import format_phone, mask_phone
from appointment_bot.infra.google_calendar import CalendarError, GoogleCalendarClient

logger = logging.getLogger(__name__)

CANCEL_WINDOW = timedelta(minutes=30)


@dataclass
class BookingResult:
    """Outcome of a confirmation side effect."""

    created: bool
    reason: str  # created | busy | unparseable | unknown_availability | error
    event_id: Optional[str] = None
    details: Optional[PatientDetails] = None


@dataclass
class CancellationResult:
    """Outcome of a cancellation side effect."""

    cancelled: bool
    reason: str  # cancelled | unparseable | not_found | error
    event_id: Optional[str] = None


def build_event_summary(details: PatientDetails, date_label: str) -> str:
    phone = format_phone(details.phone) if details.phone else details.phone
    return (
        f"Appointment [{date_label}] - Patient {details.name} - "
        f"phone {phone} ({details.modality})"
    )


def build_event_description(details: PatientDetails) -> str:
    return "\n".join(
        [
            f"Name: {details.name}",
            f"Age: {details.age}",
            f"Phone: {details.phone}",
            f"Reason: {details.reason}",
            f"Modality: {details.modality}",
            "Booked via WhatsApp assistant.",
        ]
    )


class BookingService:
    """Creates the calendar event behind a confirmation phrase."""

    def __init__(
        self,
        calendar: GoogleCalendarClient,
        resolver: AvailabilityResolver,
        tz: tzinfo,
        reasons: Sequence[str],
        location: str = "",
    ):
        self.calendar = calendar
        self.resolver = resolver
        self.tz = tz
        self.reasons = list(reasons)
        self.location = location

    async def book(self, confirmed_label: str, extraction: ExtractionInput) -> BookingResult:
        """
        Book the slot a confirmation phrase names.

        The slot is re-checked against live busy time first; a slot taken
        since it was offered is silently not booked.

        Args:
            confirmed_label: "dd/mm/yy HH:MM" from the confirmation phrase
            extraction: Conversation texts and sender metadata

        Returns:
            BookingResult
        """
        parsed = parse_numeric(confirmed_label, self.tz, duration=self.resolver.slot_length)
        if not parsed.found:
            logger.warning(f"Confirmation without a parseable date/time: {confirmed_label!r}")
            return BookingResult(created=False, reason="unparseable")

        try:
            free = await self.resolver.is_free(parsed.start, parsed.end)
        except Exception as e:
            logger.error(f"Availability re-check failed for {confirmed_label}: {e}")
            return BookingResult(created=False, reason="unknown_availability")

        if not free:
            logger.warning(f"Slot {confirmed_label} became busy before booking; no event created")
            return BookingResult(created=False, reason="busy")

        details = extract_details(extraction, self.reasons)
        local_start = parsed.start.astimezone(self.tz)

        try:
            event = await self.calendar.create_event(
                summary=build_event_summary(details, local_start.strftime("%d/%m/%y")),
                description=build_event_description(details),
                start=parsed.start,
                end=parsed.end,
                location=self.location or None,
                private_properties={
                    "patientPhone": details.phone,
                    "patientName": details.name,
                    "modality": details.modality,
                    "reason": details.reason,
                },
            )
        except CalendarError as e:
            logger.error(f"Event creation failed for {mask_phone(details.phone)} at {confirmed_label}: {e}")
            return BookingResult(created=False, reason="error", details=details)

        logger.info(f"Booked {confirmed_label} for {mask_phone(details.phone)} (event {event.id})")
        return BookingResult(created=True, reason="created", event_id=event.id, details=details)


async def cancel_from_message(
    text: str,
    calendar: GoogleCalendarClient,
    tz: tzinfo,
    calendar_id: Optional[str] = None,
    window: timedelta = CANCEL_WINDOW,
) -> CancellationResult:
    """
    Cancel the appointment a message refers to.

    Parses the date/time in the text and deletes the first live event
    starting within +/- window of it.
    """
    normalized = (text or "").lower().replace(",", " ")
    parsed = parse_numeric(normalized, tz)
    if not parsed.found:
        return CancellationResult(cancelled=False, reason="unparseable")

    try:
        events = await calendar.list_events(calendar_id, parsed.start - window, parsed.start + window)
        target = next((event for event in events if not event.is_cancelled), None)
        if target is None:
            logger.info(f"No event to cancel near {parsed.start.isoformat()}")
            return CancellationResult(cancelled=False, reason="not_found")

        await calendar.delete_event(calendar_id, target.id)
    except CalendarError as e:
        logger.error(f"Cancellation near {parsed.start.isoformat()} failed: {e}")
        return CancellationResult(cancelled=False, reason="error")

    logger.info(f"Cancelled event {target.id} at {parsed.start.isoformat()}")
    return CancellationResult(cancelled=True, reason="cancelled", event_id=target.id)
