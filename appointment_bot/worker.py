"""
Reminder worker.

Standalone process for the daily reminder job:

    python -m appointment_bot.worker

With REMINDER_RUN_NOW=1 it runs the job once and exits (status 0 on a
completed run, 1 when the run aborted); the schedule is never armed.
Otherwise it arms the daily cron and runs until interrupted.
"""

import asyncio
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from appointment_bot.config import settings
from appointment_bot.core.reminders import (
    build_dispatcher,
    create_reminder_scheduler,
    run_reminders_once,
)
from appointment_bot.infra.database import close_db, init_db
from appointment_bot.infra.messaging import get_messaging_gateway
from appointment_bot.main import setup_logging

logger = logging.getLogger(__name__)


async def _prepare_ledger() -> None:
    if settings.is_development and settings.database_url:
        try:
            await init_db()
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Database init skipped: {e}")


async def run_once() -> int:
    """Run the reminder job once. Returns the process exit code."""
    await _prepare_ledger()
    try:
        summary = await run_reminders_once(build_dispatcher())
    finally:
        await get_messaging_gateway().close()
        await close_db()

    if not summary.ok:
        logger.error(f"Reminder run aborted: {summary.aborted}")
        return 1
    return 0


async def run_forever() -> None:
    """Arm the daily schedule and wait until cancelled."""
    await _prepare_ledger()
    scheduler = create_reminder_scheduler()
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await get_messaging_gateway().close()
        await close_db()


def main() -> None:
    setup_logging()

    if settings.reminder_run_now:
        logger.info("REMINDER_RUN_NOW set: running reminders once")
        sys.exit(asyncio.run(run_once()))

    try:
        asyncio.run(run_forever())
    except KeyboardInterrupt:
        logger.info("Reminder worker stopped")


if __name__ == "__main__":
    main()
