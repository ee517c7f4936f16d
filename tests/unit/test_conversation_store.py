"""Tests for conversation sessions and their store."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from appointment_bot.core.availability import Slot
from appointment_bot.core.conversation import (
    ConversationSession,
    ConversationStage,
    ConversationStore,
    can_transition,
)
from appointment_bot.core.conversation.models import MAX_HISTORY_MESSAGES, MAX_MESSAGE_CHARS
from appointment_bot.core.conversation.store import CONVERSATION_PREFIX

PHONE = "5511987654321"
T0 = datetime(2025, 9, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def no_redis():
    return None


class TestConversationSession:
    """Test the session model."""

    def test_history_is_bounded(self):
        session = ConversationSession(phone=PHONE)

        for i in range(MAX_HISTORY_MESSAGES + 5):
            session.add_message("patient", f"message {i}")

        assert len(session.history) == MAX_HISTORY_MESSAGES
        assert session.history[0]["content"] == "message 5"

    def test_long_messages_are_truncated(self):
        session = ConversationSession(phone=PHONE)

        session.add_message("assistant", "x" * (MAX_MESSAGE_CHARS + 100))

        assert len(session.history[0]["content"]) == MAX_MESSAGE_CHARS

    def test_unknown_role_rejected(self):
        session = ConversationSession(phone=PHONE)

        with pytest.raises(ValueError):
            session.add_message("doctor", "hi")

    def test_render_context(self):
        session = ConversationSession(phone=PHONE)
        session.add_message("patient", "Hi")
        session.add_message("assistant", "Hello!")
        session.add_message("system-context", "Available: ...")

        assert session.render_context() == "Patient: Hi\nAssistant: Hello!\nSystem: Available: ..."

    def test_json_round_trip_keeps_offer(self):
        start = datetime(2025, 9, 1, 11, 0, tzinfo=timezone.utc)
        slot = Slot(start, start + timedelta(hours=1), "Mon", "01/09/25 08:00")
        session = ConversationSession(
            phone=PHONE,
            stage=ConversationStage.AWAITING_SLOT_CHOICE,
            offer_from_iso=T0.isoformat(),
            last_slots=[slot],
            last_list_at=T0,
        )

        restored = ConversationSession.from_json(session.to_json())

        assert restored.stage == ConversationStage.AWAITING_SLOT_CHOICE
        assert restored.offer_from == T0
        assert restored.last_list_at == T0
        assert restored.find_offered_slot(start) == slot
        assert restored.find_offered_slot(T0) is None


class TestStageTransitions:
    def test_valid_transitions(self):
        assert can_transition(ConversationStage.IDLE, ConversationStage.AWAITING_SLOT_CHOICE)
        assert can_transition(
            ConversationStage.AWAITING_SLOT_CHOICE, ConversationStage.AWAITING_SLOT_CHOICE
        )
        assert can_transition(ConversationStage.CONFIRMED, ConversationStage.IDLE)

    def test_invalid_transitions(self):
        assert not can_transition(ConversationStage.IDLE, ConversationStage.COLLECTING_DETAILS)
        assert not can_transition(ConversationStage.CONFIRMED, ConversationStage.CONFIRMED)


class TestConversationStoreMemory:
    """Test the in-process store (Redis unavailable)."""

    @pytest.fixture
    def clock(self):
        return Clock()

    @pytest.fixture
    def store(self, clock):
        return ConversationStore(ttl_seconds=1800, clock=clock, redis_getter=no_redis)

    @pytest.mark.asyncio
    async def test_session_creates_and_saves(self, store):
        async with store.session(PHONE) as session:
            session.add_message("patient", "hello")

        loaded = await store.load(PHONE)
        assert loaded is not None
        assert loaded.history == [{"role": "patient", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_session_expires_after_ttl(self, store, clock):
        async with store.session(PHONE) as session:
            session.add_message("patient", "hello")

        clock.advance(seconds=1799)
        assert await store.load(PHONE) is not None

        clock.advance(seconds=1)
        assert await store.load(PHONE) is None

    @pytest.mark.asyncio
    async def test_expired_session_restarts_fresh(self, store, clock):
        async with store.session(PHONE) as session:
            session.stage = ConversationStage.AWAITING_SLOT_CHOICE

        clock.advance(hours=1)

        async with store.session(PHONE) as session:
            assert session.stage == ConversationStage.IDLE
            assert session.history == []

    @pytest.mark.asyncio
    async def test_save_refreshes_ttl(self, store, clock):
        async with store.session(PHONE):
            pass
        clock.advance(seconds=1500)
        async with store.session(PHONE):
            pass
        clock.advance(seconds=1500)

        assert await store.load(PHONE) is not None

    @pytest.mark.asyncio
    async def test_discard_skips_save(self, store):
        async with store.session(PHONE) as session:
            session.add_message("patient", "hello")
        async with store.session(PHONE) as session:
            await store.discard(PHONE)
            session.add_message("patient", "reset")

        assert await store.load(PHONE) is None

    @pytest.mark.asyncio
    async def test_reset(self, store):
        async with store.session(PHONE):
            pass

        assert await store.reset(PHONE) is True
        assert await store.reset(PHONE) is False

    @pytest.mark.asyncio
    async def test_turns_for_one_phone_are_serialized(self, store):
        order = []

        async def turn(label: str, delay: float):
            async with store.session(PHONE) as session:
                order.append(f"{label}-start")
                await asyncio.sleep(delay)
                session.add_message("patient", label)
                order.append(f"{label}-end")

        await asyncio.gather(turn("a", 0.02), turn("b", 0))

        assert order == ["a-start", "a-end", "b-start", "b-end"]
        session = await store.load(PHONE)
        assert [m["content"] for m in session.history] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_sweep_evicts_expired(self, store, clock):
        async with store.session(PHONE):
            pass
        async with store.session("5511911112222"):
            pass

        clock.advance(seconds=1800)

        assert await store.sweep() == 2
        assert store._memory == {}
        assert store._locks == {}

    @pytest.mark.asyncio
    async def test_sweep_skips_locked_sessions(self, store, clock):
        async with store.session(PHONE):
            pass
        clock.advance(hours=1)

        async with store._locked(PHONE):
            assert await store.sweep() == 0
            assert PHONE in store._memory

        assert await store.sweep() == 1

    @pytest.mark.asyncio
    async def test_sweep_keeps_lock_while_a_turn_is_queued(self, store):
        """A reset turn followed by a sweep must not let two later turns overlap."""
        active = 0
        peak = 0
        inside = asyncio.Event()
        release = asyncio.Event()
        later_turns = []

        async def turn(hold: bool = False):
            nonlocal active, peak
            async with store.session(PHONE):
                active += 1
                peak = max(peak, active)
                if hold:
                    inside.set()
                    await release.wait()
                    await store.discard(PHONE)
                await asyncio.sleep(0.01)
                active -= 1

        async def reset_turn():
            await turn(hold=True)
            await store.sweep()
            later_turns.append(asyncio.create_task(turn()))

        first = asyncio.create_task(reset_turn())
        await inside.wait()
        queued = asyncio.create_task(turn())
        await asyncio.sleep(0)
        release.set()

        await first
        await asyncio.gather(queued, *later_turns)

        assert peak == 1
        assert store._lock_users == {}


class TestConversationStoreRedis:
    """Test the Redis-backed path."""

    @pytest.fixture
    def mock_redis(self):
        mock = AsyncMock()
        mock.get = AsyncMock(return_value=None)
        mock.setex = AsyncMock()
        mock.delete = AsyncMock(return_value=1)
        return mock

    @pytest.fixture
    def store(self, mock_redis):
        async def getter():
            return mock_redis

        return ConversationStore(ttl_seconds=1800, clock=Clock(), redis_getter=getter)

    @pytest.mark.asyncio
    async def test_save_uses_setex(self, store, mock_redis):
        async with store.session(PHONE) as session:
            session.add_message("patient", "hello")

        mock_redis.setex.assert_called_once()
        key, ttl, payload = mock_redis.setex.call_args.args
        assert key == f"{CONVERSATION_PREFIX}{PHONE}"
        assert ttl == 1800
        assert ConversationSession.from_json(payload).history[0]["content"] == "hello"

    @pytest.mark.asyncio
    async def test_load_reads_redis(self, store, mock_redis):
        existing = ConversationSession(
            phone=PHONE, stage=ConversationStage.COLLECTING_DETAILS, updated_at=T0
        )
        mock_redis.get = AsyncMock(return_value=existing.to_json())

        session = await store.load(PHONE)

        assert session.stage == ConversationStage.COLLECTING_DETAILS

    @pytest.mark.asyncio
    async def test_redis_error_falls_back_to_memory(self, store, mock_redis):
        async with store.session(PHONE) as session:
            session.add_message("patient", "hello")

        mock_redis.get = AsyncMock(side_effect=RedisConnectionError("down"))

        session = await store.load(PHONE)

        assert session is not None
        assert session.history[0]["content"] == "hello"
