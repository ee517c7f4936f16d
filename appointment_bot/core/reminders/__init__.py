"""
Reminders Module

Daily, idempotent appointment reminders over WhatsApp.

Usage:
    from appointment_bot.core.reminders import run_reminders_once

    summary = await run_reminders_once()
    print(summary.sent, summary.failed)
"""

from appointment_bot.core.reminders.dispatcher import DispatchSummary, ReminderDispatcher
from appointment_bot.core.reminders.ledger import (
    InMemoryReminderLedger,
    LedgerError,
    SqlReminderLedger,
)
from appointment_bot.core.reminders.scheduler import (
    build_dispatcher,
    create_reminder_scheduler,
    current_template_key,
    run_reminders_once,
)
from appointment_bot.core.reminders.sources import Appointment, CalendarAppointmentSource
from appointment_bot.core.reminders.template import (
    build_template_key,
    render_template,
    target_day_span,
)

__all__ = [
    "Appointment",
    "CalendarAppointmentSource",
    "DispatchSummary",
    "InMemoryReminderLedger",
    "LedgerError",
    "ReminderDispatcher",
    "SqlReminderLedger",
    "build_dispatcher",
    "build_template_key",
    "create_reminder_scheduler",
    "current_template_key",
    "render_template",
    "run_reminders_once",
    "target_day_span",
]
