"""
Reminder ledger.

Append-only record of reminder send attempts. The dispatcher consults it
before sending and writes to it after every attempt.
"""

import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from appointment_bot.infra.database import get_db_context
from appointment_bot.models.database import ReminderRecord, ReminderStatus

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Raised when the ledger cannot be read or written."""
    pass


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ReminderLedger(Protocol):
    """Storage for reminder attempts."""

    async def recorded_ids(self, template_key: str, appointment_ids: Iterable[str]) -> set[str]:
        """Ids among appointment_ids that already have any record for template_key."""
        ...

    async def record(
        self,
        appointment_id: str,
        template_key: str,
        status: ReminderStatus,
        message_id: Optional[str] = None,
        error_detail: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> None:
        ...


class SqlReminderLedger:
    """Ledger stored in the reminder_records table."""

    def __init__(
        self,
        session_scope: Callable[[], AbstractAsyncContextManager[AsyncSession]] = get_db_context,
    ):
        """Initialize ledger.

        Args:
            session_scope: Factory of committing session contexts (defaults to get_db_context)
        """
        self._scope = session_scope

    async def recorded_ids(self, template_key: str, appointment_ids: Iterable[str]) -> set[str]:
        ids = list(appointment_ids)
        if not ids:
            return set()

        try:
            async with self._scope() as db:
                result = await db.execute(
                    select(ReminderRecord.appointment_id)
                    .where(ReminderRecord.template_key == template_key)
                    .where(ReminderRecord.appointment_id.in_(ids))
                    .distinct()
                )
                return set(result.scalars().all())
        except SQLAlchemyError as e:
            raise LedgerError(f"Reminder ledger read failed: {e}") from e

    async def record(
        self,
        appointment_id: str,
        template_key: str,
        status: ReminderStatus,
        message_id: Optional[str] = None,
        error_detail: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> None:
        """
        Append a record.

        A second success for the same pair violates the partial unique
        index; it is logged and dropped since the pair is already done.
        """
        try:
            async with self._scope() as db:
                db.add(
                    ReminderRecord(
                        appointment_id=appointment_id,
                        template_key=template_key,
                        status=status,
                        sent_at=_utcnow(),
                        phone=phone,
                        message_id=message_id,
                        error_detail=error_detail,
                    )
                )
        except IntegrityError:
            logger.warning(
                f"Duplicate success for appointment {appointment_id} ({template_key}) not recorded"
            )
        except SQLAlchemyError as e:
            raise LedgerError(f"Reminder ledger write failed: {e}") from e

    async def list_records(self, template_key: Optional[str] = None) -> list[ReminderRecord]:
        """All records, optionally filtered by template key, oldest first."""
        async with self._scope() as db:
            query = select(ReminderRecord).order_by(ReminderRecord.sent_at)
            if template_key:
                query = query.where(ReminderRecord.template_key == template_key)
            result = await db.execute(query)
            return list(result.scalars().all())


@dataclass
class LedgerEntry:
    appointment_id: str
    template_key: str
    status: ReminderStatus
    sent_at: datetime
    message_id: Optional[str] = None
    error_detail: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class InMemoryReminderLedger:
    """Process-local ledger for tests and database-less runs."""

    entries: list[LedgerEntry] = field(default_factory=list)

    async def recorded_ids(self, template_key: str, appointment_ids: Iterable[str]) -> set[str]:
        wanted = set(appointment_ids)
        return {
            entry.appointment_id
            for entry in self.entries
            if entry.template_key == template_key and entry.appointment_id in wanted
        }

    async def record(
        self,
        appointment_id: str,
        template_key: str,
        status: ReminderStatus,
        message_id: Optional[str] = None,
        error_detail: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> None:
        if status == ReminderStatus.SUCCESS and any(
            entry.appointment_id == appointment_id
            and entry.template_key == template_key
            and entry.status == ReminderStatus.SUCCESS
            for entry in self.entries
        ):
            logger.warning(
                f"Duplicate success for appointment {appointment_id} ({template_key}) not recorded"
            )
            return
        self.entries.append(
            LedgerEntry(
                appointment_id=appointment_id,
                template_key=template_key,
                status=status,
                sent_at=_utcnow(),
                message_id=message_id,
                error_detail=error_detail,
                phone=phone,
            )
        )

    def successes(self, template_key: str) -> list[LedgerEntry]:
        return [
            entry
            for entry in self.entries
            if entry.template_key == template_key and entry.status == ReminderStatus.SUCCESS
        ]
