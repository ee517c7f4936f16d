"""
Appointment source for reminders.

Appointments are the events on the clinic calendar. Events booked by the
assistant carry patientPhone/patientName/modality in their private
extended properties; hand-made events are read heuristically.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Optional

from appointment_bot.core.conversation.extractors import detect_modality
from appointment_bot.core.phone import normalize_phone
from appointment_bot.infra.google_calendar import CalendarEvent, GoogleCalendarClient

logger = logging.getLogger(__name__)

_DESCRIPTION_PHONE = re.compile(r"(?:\+?55)?\D?\(?\d{2}\)?\D?\d{4,5}\D?\d{4}\b")
_SUMMARY_NAME = re.compile(r"\bpatient\s+(.+?)(?:\s+-\s+|\s*\(|$)", re.IGNORECASE)


@dataclass
class Appointment:
    """A calendar appointment as the reminder dispatcher sees it."""

    id: str
    patient_name: str
    phone: Optional[str]
    start: datetime
    modality: str = ""
    location: str = ""
    status: str = "confirmed"
    calendar_id: Optional[str] = None
    private_properties: dict[str, str] = field(default_factory=dict)

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"


def extract_phone(event: CalendarEvent) -> Optional[str]:
    """Phone from private properties, then description, then attendees."""
    phone = normalize_phone(event.private_properties.get("patientPhone"))
    if phone:
        return phone

    match = _DESCRIPTION_PHONE.search(event.description or "")
    if match:
        phone = normalize_phone(match.group(0))
        if phone:
            return phone

    for attendee in event.attendees:
        for key in ("comment", "displayName", "email"):
            phone = normalize_phone(attendee.get(key))
            if phone:
                return phone

    return None


def infer_modality(event: CalendarEvent) -> str:
    """Modality from private properties, else keywords in summary/description."""
    if event.private_properties.get("modality"):
        return event.private_properties["modality"]
    return detect_modality(f"{event.summary} {event.description}") or ""


def infer_name(event: CalendarEvent) -> str:
    if event.private_properties.get("patientName"):
        return event.private_properties["patientName"]
    match = _SUMMARY_NAME.search(event.summary or "")
    if match:
        return match.group(1).strip()
    return (event.summary or "").strip()


class CalendarAppointmentSource:
    """Reads appointments from a Google Calendar."""

    def __init__(
        self,
        calendar: GoogleCalendarClient,
        tz: tzinfo,
        calendar_id: Optional[str] = None,
        default_location: str = "",
    ):
        self.calendar = calendar
        self.tz = tz
        self.calendar_id = calendar_id or calendar.calendar_id
        self.default_location = default_location

    async def list_appointments(self, start: datetime, end: datetime) -> list[Appointment]:
        """
        Timed events starting in [start, end), chronological.

        All-day events are not appointments and are skipped.

        Raises:
            CalendarError: If the calendar cannot be read
        """
        events = await self.calendar.list_events(self.calendar_id, start, end)
        appointments = []

        for event in events:
            if event.all_day or event.start is None:
                continue
            if not start <= event.start < end:
                continue
            appointments.append(
                Appointment(
                    id=event.id,
                    patient_name=infer_name(event),
                    phone=extract_phone(event),
                    start=event.start,
                    modality=infer_modality(event),
                    location=event.location or self.default_location,
                    status=event.status,
                    calendar_id=self.calendar_id,
                    private_properties=dict(event.private_properties),
                )
            )

        appointments.sort(key=lambda a: a.start)
        return appointments
