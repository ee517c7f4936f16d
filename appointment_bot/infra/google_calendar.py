"""
Google Calendar Client

Async wrapper over the Google Calendar v3 API exposing the calendar
capability the scheduling engine needs:
- free/busy lookup merged across calendars
- event listing, creation, deletion and patching

The Google client library is blocking, so every call runs in a worker
thread via asyncio.to_thread.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, tzinfo
from typing import Any, Callable, Optional, Sequence

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from appointment_bot.config import get_settings
from appointment_bot.core.availability.types import BusyInterval

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


class CalendarError(Exception):
    """Raised when a Google Calendar call fails."""
    pass


class CalendarConfigError(CalendarError):
    """Raised when Google Calendar credentials are missing."""
    pass


def _parse_instant(value: dict, tz: tzinfo) -> tuple[Optional[datetime], bool]:
    """Parse an event start/end object. Returns (instant, all_day)."""
    if not value:
        return None, False
    if value.get("dateTime"):
        return datetime.fromisoformat(value["dateTime"]), False
    if value.get("date"):
        return datetime.combine(date.fromisoformat(value["date"]), time.min, tzinfo=tz), True
    return None, False


@dataclass
class CalendarEvent:
    """Calendar event as seen by the scheduling engine."""

    id: str
    summary: str = ""
    description: str = ""
    location: str = ""
    status: str = "confirmed"
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    private_properties: dict[str, str] = field(default_factory=dict)
    attendees: list[dict] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict, tz: tzinfo) -> "CalendarEvent":
        """Create from a Calendar API event resource."""
        start, all_day = _parse_instant(data.get("start", {}), tz)
        end, _ = _parse_instant(data.get("end", {}), tz)
        extended = data.get("extendedProperties") or {}
        return cls(
            id=data.get("id", ""),
            summary=data.get("summary", "") or "",
            description=data.get("description", "") or "",
            location=data.get("location", "") or "",
            status=data.get("status", "confirmed"),
            start=start,
            end=end,
            all_day=all_day,
            private_properties=dict(extended.get("private") or {}),
            attendees=list(data.get("attendees") or []),
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"


class GoogleCalendarClient:
    """
    Google Calendar v3 client authenticated with an OAuth refresh token.

    The API service is built lazily so that a missing credential only
    fails the operation that needs it.
    """

    def __init__(
        self,
        calendar_id: Optional[str] = None,
        tz: Optional[tzinfo] = None,
        service: Any = None,
    ):
        """Initialize client.

        Args:
            calendar_id: Calendar where events are created (defaults to settings)
            tz: Timezone used for all-day events and event times
            service: Prebuilt API service (for testing)
        """
        settings = get_settings()
        self.calendar_id = calendar_id or settings.google_calendar_id
        self.tz = tz or settings.tz
        self._service = service

    def _get_service(self) -> Any:
        """Get or build the Calendar API service."""
        if self._service is None:
            settings = get_settings()
            if not (
                settings.google_client_id
                and settings.google_client_secret
                and settings.google_refresh_token
            ):
                raise CalendarConfigError(
                    "Missing Google credentials (GOOGLE_CLIENT_ID, "
                    "GOOGLE_CLIENT_SECRET, GOOGLE_REFRESH_TOKEN)"
                )
            credentials = Credentials(
                token=None,
                refresh_token=settings.google_refresh_token,
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
                token_uri=settings.google_token_uri,
                scopes=SCOPES,
            )
            self._service = build(
                "calendar", "v3", credentials=credentials, cache_discovery=False
            )
        return self._service

    async def _call(self, operation: str, make_request: Callable[[Any], Any]) -> Any:
        """Build and execute a request in a worker thread."""
        service = self._get_service()

        def _execute() -> Any:
            return make_request(service).execute()

        try:
            return await asyncio.to_thread(_execute)
        except HttpError as e:
            logger.error(f"Google Calendar {operation} failed: {e}")
            raise CalendarError(f"{operation} failed: {e}") from e

    # === Free/busy ===

    async def list_busy(
        self,
        calendar_ids: Sequence[str],
        day_start: datetime,
        day_end: datetime,
    ) -> list[BusyInterval]:
        """Busy intervals across all calendars (union).

        Raises:
            CalendarError: If the query fails or any calendar reports an error
        """
        body = {
            "timeMin": day_start.isoformat(),
            "timeMax": day_end.isoformat(),
            "items": [{"id": calendar_id} for calendar_id in calendar_ids],
        }
        data = await self._call("freebusy.query", lambda s: s.freebusy().query(body=body))

        intervals: list[BusyInterval] = []
        for calendar_id, calendar in (data.get("calendars") or {}).items():
            if calendar.get("errors"):
                raise CalendarError(
                    f"freebusy.query reported errors for {calendar_id}: {calendar['errors']}"
                )
            for busy in calendar.get("busy") or []:
                try:
                    intervals.append(
                        BusyInterval(
                            start=datetime.fromisoformat(busy["start"]),
                            end=datetime.fromisoformat(busy["end"]),
                        )
                    )
                except (KeyError, ValueError):
                    logger.warning(f"Ignoring malformed busy entry from {calendar_id}: {busy}")

        return intervals

    # === Events ===

    async def list_events(
        self,
        calendar_id: Optional[str],
        time_min: datetime,
        time_max: datetime,
        query: Optional[str] = None,
        max_results: int = 250,
    ) -> list[CalendarEvent]:
        """List single events between time_min and time_max, ordered by start."""
        calendar_id = calendar_id or self.calendar_id
        events: list[CalendarEvent] = []
        page_token: Optional[str] = None

        while True:
            params: dict[str, Any] = {
                "calendarId": calendar_id,
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "singleEvents": True,
                "orderBy": "startTime",
                "showDeleted": False,
                "maxResults": max_results,
            }
            if query:
                params["q"] = query
            if page_token:
                params["pageToken"] = page_token

            data = await self._call("events.list", lambda s: s.events().list(**params))
            events.extend(CalendarEvent.from_api(item, self.tz) for item in data.get("items", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                return events

    async def create_event(
        self,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        location: Optional[str] = None,
        private_properties: Optional[dict[str, str]] = None,
    ) -> CalendarEvent:
        """Create an opaque, private event on the appointments calendar."""
        body: dict[str, Any] = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": str(self.tz)},
            "end": {"dateTime": end.isoformat(), "timeZone": str(self.tz)},
            "transparency": "opaque",
            "visibility": "private",
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 60},
                ],
            },
        }
        if location:
            body["location"] = location
        if private_properties:
            body["extendedProperties"] = {"private": private_properties}

        data = await self._call(
            "events.insert",
            lambda s: s.events().insert(
                calendarId=self.calendar_id, body=body, sendUpdates="none"
            ),
        )
        logger.info(f"Calendar event created: {data.get('id')} at {start.isoformat()}")
        return CalendarEvent.from_api(data, self.tz)

    async def delete_event(self, calendar_id: Optional[str], event_id: str) -> None:
        """Delete an event."""
        calendar_id = calendar_id or self.calendar_id
        await self._call(
            "events.delete",
            lambda s: s.events().delete(
                calendarId=calendar_id, eventId=event_id, sendUpdates="all"
            ),
        )
        logger.info(f"Calendar event deleted: {event_id}")

    async def patch_event(
        self,
        calendar_id: Optional[str],
        event_id: str,
        fields: dict[str, Any],
    ) -> CalendarEvent:
        """Patch selected fields of an event."""
        calendar_id = calendar_id or self.calendar_id
        data = await self._call(
            "events.patch",
            lambda s: s.events().patch(calendarId=calendar_id, eventId=event_id, body=fields),
        )
        return CalendarEvent.from_api(data, self.tz)


# Singleton
_client: Optional[GoogleCalendarClient] = None


def get_calendar_client() -> GoogleCalendarClient:
    """Get singleton GoogleCalendarClient."""
    global _client
    if _client is None:
        _client = GoogleCalendarClient()
    return _client
