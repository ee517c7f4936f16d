"""Tests for the Google Calendar client."""

from datetime import datetime, timezone
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest
from googleapiclient.errors import HttpError

from appointment_bot.core.availability import BusyInterval
from appointment_bot.infra.google_calendar import (
    CalendarConfigError,
    CalendarError,
    CalendarEvent,
    GoogleCalendarClient,
)

TZ = ZoneInfo("America/Sao_Paulo")
DAY_START = datetime(2025, 9, 1, 0, 0, tzinfo=TZ)
DAY_END = datetime(2025, 9, 2, 0, 0, tzinfo=TZ)


def http_error(status: int = 500) -> HttpError:
    resp = MagicMock(status=status, reason="Server Error")
    return HttpError(resp, b'{"error": {"message": "backend error"}}')


class TestCalendarEvent:
    """Test API resource parsing."""

    def test_timed_event(self):
        event = CalendarEvent.from_api(
            {
                "id": "evt-1",
                "summary": "Appointment",
                "start": {"dateTime": "2025-09-01T08:00:00-03:00"},
                "end": {"dateTime": "2025-09-01T09:00:00-03:00"},
                "extendedProperties": {"private": {"patientPhone": "5511987654321"}},
            },
            TZ,
        )

        assert event.start == datetime(2025, 9, 1, 11, 0, tzinfo=timezone.utc)
        assert event.all_day is False
        assert event.private_properties == {"patientPhone": "5511987654321"}
        assert event.is_cancelled is False

    def test_all_day_event(self):
        event = CalendarEvent.from_api(
            {"id": "evt-2", "start": {"date": "2025-09-01"}, "end": {"date": "2025-09-02"}},
            TZ,
        )

        assert event.all_day is True
        assert event.start == DAY_START

    def test_cancelled(self):
        assert CalendarEvent.from_api({"id": "x", "status": "cancelled"}, TZ).is_cancelled


class TestGoogleCalendarClient:
    """Test API calls against a mocked service."""

    @pytest.fixture
    def service(self):
        return MagicMock()

    @pytest.fixture
    def client(self, service):
        return GoogleCalendarClient(calendar_id="primary", tz=TZ, service=service)

    @pytest.mark.asyncio
    async def test_list_busy_merges_calendars(self, client, service):
        service.freebusy.return_value.query.return_value.execute.return_value = {
            "calendars": {
                "primary": {
                    "busy": [{"start": "2025-09-01T12:30:00Z", "end": "2025-09-01T13:30:00Z"}]
                },
                "blocks": {
                    "busy": [{"start": "2025-09-01T17:00:00Z", "end": "2025-09-01T21:00:00Z"}]
                },
            }
        }

        busy = await client.list_busy(["primary", "blocks"], DAY_START, DAY_END)

        assert busy == [
            BusyInterval(
                datetime(2025, 9, 1, 12, 30, tzinfo=timezone.utc),
                datetime(2025, 9, 1, 13, 30, tzinfo=timezone.utc),
            ),
            BusyInterval(
                datetime(2025, 9, 1, 17, 0, tzinfo=timezone.utc),
                datetime(2025, 9, 1, 21, 0, tzinfo=timezone.utc),
            ),
        ]
        body = service.freebusy.return_value.query.call_args.kwargs["body"]
        assert body["items"] == [{"id": "primary"}, {"id": "blocks"}]
        assert body["timeMin"] == DAY_START.isoformat()

    @pytest.mark.asyncio
    async def test_list_busy_calendar_error(self, client, service):
        service.freebusy.return_value.query.return_value.execute.return_value = {
            "calendars": {"primary": {"errors": [{"reason": "notFound"}]}}
        }

        with pytest.raises(CalendarError):
            await client.list_busy(["primary"], DAY_START, DAY_END)

    @pytest.mark.asyncio
    async def test_http_error_wrapped(self, client, service):
        service.freebusy.return_value.query.return_value.execute.side_effect = http_error()

        with pytest.raises(CalendarError):
            await client.list_busy(["primary"], DAY_START, DAY_END)

    @pytest.mark.asyncio
    async def test_list_events_follows_pages(self, client, service):
        list_call = service.events.return_value.list
        list_call.return_value.execute.side_effect = [
            {"items": [{"id": "a"}], "nextPageToken": "page-2"},
            {"items": [{"id": "b"}]},
        ]

        events = await client.list_events(None, DAY_START, DAY_END)

        assert [event.id for event in events] == ["a", "b"]
        first, second = list_call.call_args_list
        assert first.kwargs["calendarId"] == "primary"
        assert first.kwargs["singleEvents"] is True
        assert "pageToken" not in first.kwargs
        assert second.kwargs["pageToken"] == "page-2"

    @pytest.mark.asyncio
    async def test_create_event(self, client, service):
        insert = service.events.return_value.insert
        insert.return_value.execute.return_value = {
            "id": "evt-9",
            "start": {"dateTime": "2025-09-01T08:00:00-03:00"},
            "end": {"dateTime": "2025-09-01T09:00:00-03:00"},
        }

        event = await client.create_event(
            summary="Appointment",
            description="Name: Ana",
            start=datetime(2025, 9, 1, 8, 0, tzinfo=TZ),
            end=datetime(2025, 9, 1, 9, 0, tzinfo=TZ),
            location="Rua A, 10",
            private_properties={"patientPhone": "5511987654321"},
        )

        assert event.id == "evt-9"
        body = insert.call_args.kwargs["body"]
        assert body["transparency"] == "opaque"
        assert body["visibility"] == "private"
        assert body["location"] == "Rua A, 10"
        assert body["extendedProperties"] == {"private": {"patientPhone": "5511987654321"}}
        assert body["start"]["timeZone"] == "America/Sao_Paulo"

    @pytest.mark.asyncio
    async def test_delete_and_patch(self, client, service):
        events = service.events.return_value
        events.delete.return_value.execute.return_value = ""
        events.patch.return_value.execute.return_value = {"id": "evt-1"}

        await client.delete_event(None, "evt-1")
        patched = await client.patch_event("other", "evt-1", {"summary": "x"})

        assert events.delete.call_args.kwargs["eventId"] == "evt-1"
        assert events.delete.call_args.kwargs["calendarId"] == "primary"
        assert events.patch.call_args.kwargs["calendarId"] == "other"
        assert patched.id == "evt-1"

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        settings = MagicMock(
            google_calendar_id="primary",
            tz=TZ,
            google_client_id="",
            google_client_secret="",
            google_refresh_token="",
        )

        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("appointment_bot.infra.google_calendar.get_settings", lambda: settings)
            client = GoogleCalendarClient()

            with pytest.raises(CalendarConfigError):
                await client.list_busy(["primary"], DAY_START, DAY_END)
