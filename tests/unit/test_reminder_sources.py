"""Tests for reminder appointment sources and templates."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from appointment_bot.core.reminders import (
    CalendarAppointmentSource,
    build_template_key,
    render_template,
    target_day_span,
)
from appointment_bot.core.reminders.sources import extract_phone, infer_modality, infer_name
from appointment_bot.infra.google_calendar import CalendarEvent

TZ = ZoneInfo("America/Sao_Paulo")
DAY_START = datetime(2025, 9, 2, 0, 0, tzinfo=TZ)
DAY_END = datetime(2025, 9, 3, 0, 0, tzinfo=TZ)


def event(id: str, hour: int, **kwargs) -> CalendarEvent:
    return CalendarEvent(id=id, start=datetime(2025, 9, 2, hour, 0, tzinfo=TZ), **kwargs)


class TestTemplate:
    def test_template_key(self):
        assert build_template_key(1, 9, 0) == "reminder_d1_h9m0"
        assert build_template_key(2, 18, 30) == "reminder_d2_h18m30"

    def test_target_day_span(self):
        now = datetime(2025, 9, 2, 2, 0, tzinfo=timezone.utc)  # still 01/09 locally

        start, end = target_day_span(now, 1, TZ)

        assert start == DAY_START
        assert end == DAY_END

    def test_render_template(self):
        text = render_template(
            "Hi {{ name }}, {{date}} at {{time}}. {{unknown}} Bye",
            {"name": "Ana", "date": "02/09/2025", "time": "08:00"},
        )

        assert text == "Hi Ana, 02/09/2025 at 08:00. Bye"


class TestEventReading:
    def test_private_properties_win(self):
        evt = event(
            "e1",
            8,
            summary="Appointment - Patient Someone - phone (11) 91111-2222",
            private_properties={
                "patientPhone": "5511987654321",
                "patientName": "Ana Souza",
                "modality": "telemedicine",
            },
        )

        assert extract_phone(evt) == "5511987654321"
        assert infer_name(evt) == "Ana Souza"
        assert infer_modality(evt) == "telemedicine"

    def test_hand_made_event(self):
        evt = event(
            "e2",
            9,
            summary="Patient Bruno Lima - follow-up",
            description="Whatsapp: (11) 98765-4321\nIn person",
        )

        assert extract_phone(evt) == "5511987654321"
        assert infer_name(evt) == "Bruno Lima"
        assert infer_modality(evt) == "in-person"

    def test_phone_from_attendee(self):
        evt = event("e3", 10, attendees=[{"email": "x@example.com", "comment": "11 98765-4321"}])

        assert extract_phone(evt) == "5511987654321"

    def test_no_phone(self):
        assert extract_phone(event("e4", 10, description="no contact")) is None


class TestCalendarAppointmentSource:
    @pytest.mark.asyncio
    async def test_lists_timed_events_in_window(self):
        calendar = MagicMock()
        calendar.calendar_id = "primary"
        calendar.list_events = AsyncMock(
            return_value=[
                event("late", 15, private_properties={"patientPhone": "11987654321"}),
                CalendarEvent(id="holiday", start=DAY_START, all_day=True),
                event("early", 8, location="Room 2"),
                CalendarEvent(id="next-day", start=DAY_END),
            ]
        )
        source = CalendarAppointmentSource(calendar, TZ, default_location="Rua A, 10")

        appointments = await source.list_appointments(DAY_START, DAY_END)

        assert [a.id for a in appointments] == ["early", "late"]
        assert appointments[0].location == "Room 2"
        assert appointments[1].location == "Rua A, 10"
        assert appointments[1].phone == "5511987654321"
        assert appointments[0].phone is None
        assert appointments[0].calendar_id == "primary"
        calendar.list_events.assert_awaited_once_with("primary", DAY_START, DAY_END)
