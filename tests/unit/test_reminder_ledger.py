"""Tests for the SQL reminder ledger (in-memory SQLite)."""

from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from appointment_bot.core.reminders import InMemoryReminderLedger, LedgerError, SqlReminderLedger
from appointment_bot.models.database import Base, ReminderStatus

KEY = "reminder_d1_h9m0"


@pytest_asyncio.fixture
async def session_scope():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, expire_on_commit=False)

    @asynccontextmanager
    async def scope():
        session = factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    yield scope
    await engine.dispose()


class TestSqlReminderLedger:
    """Test the database-backed ledger."""

    @pytest.fixture
    def ledger(self, session_scope):
        return SqlReminderLedger(session_scope=session_scope)

    @pytest.mark.asyncio
    async def test_recorded_ids_include_errors(self, ledger):
        await ledger.record("a", KEY, ReminderStatus.SUCCESS, message_id="msg-1", phone="5511987654321")
        await ledger.record("b", KEY, ReminderStatus.ERROR, error_detail="rejected")

        assert await ledger.recorded_ids(KEY, ["a", "b", "c"]) == {"a", "b"}
        assert await ledger.recorded_ids("reminder_d2_h9m0", ["a", "b"]) == set()
        assert await ledger.recorded_ids(KEY, []) == set()

    @pytest.mark.asyncio
    async def test_errors_may_repeat(self, ledger):
        await ledger.record("a", KEY, ReminderStatus.ERROR, error_detail="first")
        await ledger.record("a", KEY, ReminderStatus.ERROR, error_detail="second")
        await ledger.record("a", KEY, ReminderStatus.SUCCESS)

        records = await ledger.list_records(KEY)
        assert sorted(r.status.value for r in records) == ["error", "error", "success"]

    @pytest.mark.asyncio
    async def test_second_success_is_dropped(self, ledger):
        await ledger.record("a", KEY, ReminderStatus.SUCCESS, message_id="msg-1")
        await ledger.record("a", KEY, ReminderStatus.SUCCESS, message_id="msg-2")

        records = await ledger.list_records(KEY)
        assert len(records) == 1
        assert records[0].message_id == "msg-1"

    @pytest.mark.asyncio
    async def test_database_error_becomes_ledger_error(self):
        @asynccontextmanager
        async def broken_scope():
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))
            yield MagicMock()

        ledger = SqlReminderLedger(session_scope=broken_scope)

        with pytest.raises(LedgerError):
            await ledger.recorded_ids(KEY, ["a"])
        with pytest.raises(LedgerError):
            await ledger.record("a", KEY, ReminderStatus.SUCCESS)


class TestInMemoryReminderLedger:
    @pytest.mark.asyncio
    async def test_same_rules(self):
        ledger = InMemoryReminderLedger()

        await ledger.record("a", KEY, ReminderStatus.ERROR)
        await ledger.record("a", KEY, ReminderStatus.SUCCESS)
        await ledger.record("a", KEY, ReminderStatus.SUCCESS)

        assert len(ledger.entries) == 2
        assert len(ledger.successes(KEY)) == 1
        assert await ledger.recorded_ids(KEY, ["a", "b"]) == {"a"}
