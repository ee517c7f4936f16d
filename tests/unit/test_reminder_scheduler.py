"""Tests for reminder scheduling."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger

from appointment_bot.config import settings
from appointment_bot.core.reminders import (
    DispatchSummary,
    create_reminder_scheduler,
    current_template_key,
    run_reminders_once,
)
from appointment_bot.core.reminders.scheduler import REMINDER_JOB_ID
from appointment_bot.main import start_reminder_scheduler


class TestReminderScheduler:
    def test_template_key_follows_settings(self):
        expected = (
            f"reminder_d{settings.reminder_days_before}"
            f"_h{settings.reminder_hour}m{settings.reminder_minute}"
        )

        assert current_template_key() == expected

    @pytest.mark.asyncio
    async def test_run_once_uses_configured_schedule(self):
        dispatcher = MagicMock()
        dispatcher.run_once = AsyncMock(return_value=DispatchSummary(template_key="k"))

        summary = await run_reminders_once(dispatcher)

        assert summary.ok
        dispatcher.run_once.assert_awaited_once_with(
            current_template_key(),
            days_before=settings.reminder_days_before,
            batch_limit=settings.reminder_batch_limit,
        )

    def test_daily_job_is_armed_once(self):
        dispatcher = MagicMock()

        scheduler = create_reminder_scheduler(dispatcher)
        job = scheduler.get_job(REMINDER_JOB_ID)

        assert job is not None
        assert isinstance(job.trigger, CronTrigger)
        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.args == (dispatcher,)
        assert len(scheduler.get_jobs()) == 1


class TestApiReminderSchedule:
    """Test arming the daily job in the API process."""

    def test_daily_schedule_armed_when_enabled(self, monkeypatch):
        scheduler = MagicMock()
        factory = MagicMock(return_value=scheduler)
        monkeypatch.setattr(settings, "reminders_enabled", True)
        monkeypatch.setattr(settings, "reminder_run_now", False)
        monkeypatch.setattr("appointment_bot.main.create_reminder_scheduler", factory)

        assert start_reminder_scheduler() is scheduler
        scheduler.start.assert_called_once_with()

    def test_run_now_never_arms_schedule(self, monkeypatch):
        factory = MagicMock()
        monkeypatch.setattr(settings, "reminders_enabled", True)
        monkeypatch.setattr(settings, "reminder_run_now", True)
        monkeypatch.setattr("appointment_bot.main.create_reminder_scheduler", factory)

        assert start_reminder_scheduler() is None
        factory.assert_not_called()

    def test_disabled_reminders(self, monkeypatch):
        factory = MagicMock()
        monkeypatch.setattr(settings, "reminders_enabled", False)
        monkeypatch.setattr("appointment_bot.main.create_reminder_scheduler", factory)

        assert start_reminder_scheduler() is None
        factory.assert_not_called()
