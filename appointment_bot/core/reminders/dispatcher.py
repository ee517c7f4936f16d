"""
Idempotent Reminder Dispatcher.

Daily job: find the appointments of the target day that have no ledger
record for the template key yet, then send their reminders one at a time
with a human-like pause, recording each outcome before moving on.

A crash mid-batch therefore leaves processed appointments marked and
only the unprocessed ones eligible on the next run.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable, Optional, Protocol

from appointment_bot.core.phone import mask_phone
from appointment_bot.core.reminders.ledger import LedgerError, ReminderLedger
from appointment_bot.core.reminders.sources import Appointment
from appointment_bot.core.reminders.template import render_template, target_day_span
from appointment_bot.infra.google_calendar import CalendarError, GoogleCalendarClient
from appointment_bot.infra.messaging import MessagingConfigError, MessagingError, ZApiGateway
from appointment_bot.models.database import ReminderStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class AppointmentSource(Protocol):
    async def list_appointments(self, start: datetime, end: datetime) -> list[Appointment]: ...


@dataclass
class DispatchSummary:
    """Counters for one dispatcher run."""

    template_key: str
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    candidates: int = 0
    selected: int = 0
    sent: int = 0
    failed: int = 0
    skipped_no_phone: int = 0
    skipped_recorded: int = 0
    skipped_cancelled: int = 0
    aborted: Optional[str] = None
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.aborted is None


class ReminderDispatcher:
    """
    Sends reminders at most once per (appointment, template key).

    The loop is strictly sequential. The randomized delay before each
    send mimics a person sending messages by hand.
    """

    def __init__(
        self,
        source: AppointmentSource,
        ledger: ReminderLedger,
        gateway: ZApiGateway,
        tz: tzinfo,
        message_template: str,
        location: str = "",
        delay_range: tuple[float, float] = (2.0, 6.0),
        calendar: Optional[GoogleCalendarClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize dispatcher.

        Args:
            source: Where appointments come from
            ledger: Reminder ledger
            gateway: Messaging gateway
            tz: Timezone of the target day and rendered times
            message_template: Text with {{name}} {{date}} {{time}} {{modality}} {{location}}
            location: Location used when an appointment has none
            delay_range: (min, max) seconds waited before each send
            calendar: When set, sent reminders are also flagged on the event
            sleep: Delay function (injected for tests)
            rng: Random source for delays (injected for tests)
            clock: Current time source (injected for tests)
        """
        low, high = delay_range
        if low < 0 or high < low:
            raise ValueError(f"Invalid delay range {delay_range}")
        self.source = source
        self.ledger = ledger
        self.gateway = gateway
        self.tz = tz
        self.message_template = message_template
        self.location = location
        self.delay_range = (low, high)
        self.calendar = calendar
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._clock = clock

    def render(self, appointment: Appointment) -> str:
        local_start = appointment.start.astimezone(self.tz)
        location = appointment.location or self.location
        return render_template(
            self.message_template,
            {
                "name": appointment.patient_name,
                "date": local_start.strftime("%d/%m/%Y"),
                "time": local_start.strftime("%H:%M"),
                "modality": appointment.modality,
                "location": f"Location: {location}." if location else "",
            },
        )

    async def run_once(self, template_key: str, days_before: int, batch_limit: int) -> DispatchSummary:
        """
        Run one dispatch cycle.

        Args:
            template_key: Idempotency domain (encodes the schedule)
            days_before: How many days ahead the target day is
            batch_limit: Maximum sends in this run

        Returns:
            DispatchSummary (aborted is set on configuration or selection errors)
        """
        summary = DispatchSummary(template_key=template_key)

        try:
            self.gateway.check_config()
        except MessagingConfigError as e:
            logger.error(f"Reminder run {template_key} aborted: {e}")
            summary.aborted = str(e)
            return summary

        start, end = target_day_span(self._clock(), days_before, self.tz)
        summary.window_start, summary.window_end = start, end

        try:
            appointments = await self.source.list_appointments(start, end)
            selected = await self._select(appointments, template_key, summary)
        except (CalendarError, LedgerError) as e:
            logger.error(f"Reminder selection for {template_key} failed: {e}")
            summary.aborted = str(e)
            return summary

        batch = selected[:batch_limit]
        summary.selected = len(batch)
        logger.info(
            f"{len(batch)} reminder(s) to send for {start.date().isoformat()} ({template_key}); "
            f"{len(selected) - len(batch)} over the batch limit"
        )

        for appointment in batch:
            try:
                await self._process(appointment, template_key, summary)
            except LedgerError as e:
                logger.error(f"Reminder run {template_key} stopped, ledger unavailable: {e}")
                summary.aborted = str(e)
                break

        logger.info(
            f"Reminder run {template_key} done: sent={summary.sent} failed={summary.failed} "
            f"no_phone={summary.skipped_no_phone} already_recorded={summary.skipped_recorded}"
        )
        return summary

    async def _select(
        self,
        appointments: list[Appointment],
        template_key: str,
        summary: DispatchSummary,
    ) -> list[Appointment]:
        summary.candidates = len(appointments)
        live: list[Appointment] = []

        for appointment in appointments:
            if appointment.is_cancelled:
                summary.skipped_cancelled += 1
                continue
            if not appointment.phone:
                summary.skipped_no_phone += 1
                logger.warning(
                    f"Appointment {appointment.id} at {appointment.start.isoformat()} "
                    f"has no phone; reminder skipped"
                )
                continue
            live.append(appointment)

        recorded = await self.ledger.recorded_ids(template_key, [a.id for a in live])
        summary.skipped_recorded = len(recorded)

        selected = [a for a in live if a.id not in recorded]
        selected.sort(key=lambda a: a.start)
        return selected

    async def _process(self, appointment: Appointment, template_key: str, summary: DispatchSummary) -> None:
        await self._sleep(self._rng.uniform(*self.delay_range))

        message = self.render(appointment)
        try:
            result = await self.gateway.send_text(appointment.phone, message)
        except MessagingError as e:
            summary.failed += 1
            summary.failures.append(appointment.id)
            logger.error(
                f"Reminder for appointment {appointment.id} to {mask_phone(appointment.phone)} "
                f"failed: {e.detail()}"
            )
            await self.ledger.record(
                appointment.id,
                template_key,
                ReminderStatus.ERROR,
                error_detail=e.detail(),
                phone=appointment.phone,
            )
            return

        await self.ledger.record(
            appointment.id,
            template_key,
            ReminderStatus.SUCCESS,
            message_id=result.message_id,
            phone=appointment.phone,
        )
        summary.sent += 1
        logger.info(f"Reminder sent for appointment {appointment.id} to {mask_phone(appointment.phone)}")

        await self._mark_event(appointment, template_key)

    async def _mark_event(self, appointment: Appointment, template_key: str) -> None:
        """Flag the calendar event as reminded. The ledger stays authoritative."""
        if self.calendar is None:
            return
        private = {**appointment.private_properties, template_key: "1"}
        try:
            await self.calendar.patch_event(
                appointment.calendar_id,
                appointment.id,
                {"extendedProperties": {"private": private}},
            )
        except CalendarError as e:
            logger.warning(f"Could not flag event {appointment.id} as reminded: {e}")
