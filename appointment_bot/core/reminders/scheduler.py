"""
Reminder scheduling.

Wires the dispatcher from settings and arms it on a daily cron in the
clinic timezone.
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from appointment_bot.config import get_settings
from appointment_bot.core.reminders.dispatcher import DispatchSummary, ReminderDispatcher
from appointment_bot.core.reminders.ledger import InMemoryReminderLedger, SqlReminderLedger
from appointment_bot.core.reminders.sources import CalendarAppointmentSource
from appointment_bot.core.reminders.template import build_template_key
from appointment_bot.infra.google_calendar import get_calendar_client
from appointment_bot.infra.messaging import get_messaging_gateway

logger = logging.getLogger(__name__)

REMINDER_JOB_ID = "daily_reminders"


def current_template_key() -> str:
    """Template key for the configured reminder schedule."""
    settings = get_settings()
    return build_template_key(
        settings.reminder_days_before, settings.reminder_hour, settings.reminder_minute
    )


def build_dispatcher() -> ReminderDispatcher:
    """Build a dispatcher from application settings."""
    settings = get_settings()
    calendar = get_calendar_client()

    if settings.database_url:
        ledger = SqlReminderLedger()
    else:
        logger.warning("DATABASE_URL not set, reminder ledger kept in memory")
        ledger = InMemoryReminderLedger()

    return ReminderDispatcher(
        source=CalendarAppointmentSource(
            calendar,
            tz=settings.tz,
            default_location=settings.clinic_location,
        ),
        ledger=ledger,
        gateway=get_messaging_gateway(),
        tz=settings.tz,
        message_template=settings.reminder_message,
        location=settings.clinic_location,
        delay_range=(settings.human_delay_min_seconds, settings.human_delay_max_seconds),
        calendar=calendar if settings.reminder_mark_calendar else None,
    )


async def run_reminders_once(dispatcher: Optional[ReminderDispatcher] = None) -> DispatchSummary:
    """Run the configured reminder job once."""
    settings = get_settings()
    dispatcher = dispatcher or build_dispatcher()
    return await dispatcher.run_once(
        current_template_key(),
        days_before=settings.reminder_days_before,
        batch_limit=settings.reminder_batch_limit,
    )


def create_reminder_scheduler(dispatcher: Optional[ReminderDispatcher] = None) -> AsyncIOScheduler:
    """
    Create (not start) a scheduler running the reminder job daily.

    Fires at reminder_hour:reminder_minute in the clinic timezone. A run
    still in progress when the next one is due is not overlapped.
    """
    settings = get_settings()
    dispatcher = dispatcher or build_dispatcher()

    scheduler = AsyncIOScheduler(timezone=settings.tz)
    scheduler.add_job(
        run_reminders_once,
        CronTrigger(hour=settings.reminder_hour, minute=settings.reminder_minute, timezone=settings.tz),
        args=[dispatcher],
        id=REMINDER_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(
        f"Reminders scheduled daily at {settings.reminder_hour:02d}:{settings.reminder_minute:02d} "
        f"{settings.timezone} ({current_template_key()})"
    )
    return scheduler
