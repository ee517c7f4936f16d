"""
Conversation session store.

Sessions live in Redis under scheduler:v1:conversation:{phone} with a
SETEX TTL, and are mirrored in process so the store keeps working when
Redis is down. The in-process copy enforces the same TTL against an
injected clock and is swept periodically.

Turns for one phone are serialized with a per-phone asyncio.Lock.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from appointment_bot.config import settings
from appointment_bot.core.conversation.models import ConversationSession
from appointment_bot.core.phone import mask_phone
from appointment_bot.infra.redis import APP_PREFIX, RedisClient, get_redis

logger = logging.getLogger(__name__)

CONVERSATION_PREFIX = f"{APP_PREFIX}conversation:"


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class ConversationStore:
    """
    Keyed session storage with TTL eviction and per-key serialization.

    Usage:
        async with store.session(phone) as session:
            session.add_message("patient", text)
    """

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = _utcnow,
        redis_getter: Callable[[], Awaitable[Optional[Redis]]] = get_redis,
    ):
        self._ttl = timedelta(seconds=ttl_seconds or settings.session_ttl_seconds)
        self._clock = clock
        self._get_redis = redis_getter
        self._memory: dict[str, ConversationSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._discarded: set[str] = set()

    def _key(self, phone: str) -> str:
        """Generate Redis key."""
        return f"{CONVERSATION_PREFIX}{phone}"

    @asynccontextmanager
    async def _locked(self, phone: str) -> AsyncIterator[None]:
        """Hold the phone's lock, counting holders and waiters so sweep() keeps it."""
        lock = self._locks.get(phone)
        if lock is None:
            lock = self._locks[phone] = asyncio.Lock()
        self._lock_users[phone] = self._lock_users.get(phone, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[phone] - 1
            if remaining:
                self._lock_users[phone] = remaining
            else:
                del self._lock_users[phone]

    def _in_use(self, phone: str) -> bool:
        return self._lock_users.get(phone, 0) > 0

    def _expired(self, session: ConversationSession) -> bool:
        return self._clock() - session.updated_at >= self._ttl

    async def _redis(self) -> Optional[Redis]:
        return await self._get_redis()

    # === Raw access (caller holds the lock or does not need it) ===

    async def load(self, phone: str) -> Optional[ConversationSession]:
        """
        Load a live session.

        Returns:
            ConversationSession or None if absent or expired
        """
        session: Optional[ConversationSession] = None
        redis = await self._redis()

        if redis:
            try:
                data = await redis.get(self._key(phone))
                if data:
                    session = ConversationSession.from_json(data)
            except RedisError as e:
                logger.warning(
                    f"Redis read failed for {mask_phone(phone)}, using in-memory copy: {e}"
                )
                RedisClient.mark_disconnected()
                session = self._memory.get(phone)
        else:
            session = self._memory.get(phone)

        if session is not None and self._expired(session):
            logger.debug(f"Session expired for {mask_phone(phone)}")
            self._memory.pop(phone, None)
            return None

        return session

    async def save(self, session: ConversationSession) -> None:
        """Persist a session and refresh its TTL."""
        session.updated_at = self._clock()
        self._memory[session.phone] = session

        redis = await self._redis()
        if redis is None:
            return

        try:
            await redis.setex(
                self._key(session.phone),
                int(self._ttl.total_seconds()),
                session.to_json(),
            )
        except RedisError as e:
            logger.warning(
                f"Redis write failed for {mask_phone(session.phone)}, kept in memory only: {e}"
            )
            RedisClient.mark_disconnected()

    async def delete(self, phone: str) -> bool:
        """
        Delete a session.

        Returns:
            True if a session existed
        """
        existed = self._memory.pop(phone, None) is not None

        redis = await self._redis()
        if redis:
            try:
                existed = bool(await redis.delete(self._key(phone))) or existed
            except RedisError as e:
                logger.warning(f"Redis delete failed for {mask_phone(phone)}: {e}")
                RedisClient.mark_disconnected()

        return existed

    # === Serialized access ===

    @asynccontextmanager
    async def session(self, phone: str) -> AsyncIterator[ConversationSession]:
        """
        Hold the phone's lock for one turn.

        Loads the live session (creating a fresh one when absent or
        expired) and saves it on normal exit unless discard() was called.
        """
        async with self._locked(phone):
            session = await self.load(phone)
            if session is None:
                session = ConversationSession(phone=phone, updated_at=self._clock())
                logger.info(f"New conversation for {mask_phone(phone)}")

            self._discarded.discard(phone)
            yield session

            if phone in self._discarded:
                self._discarded.discard(phone)
            else:
                await self.save(session)

    async def discard(self, phone: str) -> None:
        """Delete the session inside a session() block; nothing is saved on exit."""
        self._discarded.add(phone)
        await self.delete(phone)

    async def reset(self, phone: str) -> bool:
        """Delete a session, waiting for any in-flight turn first."""
        async with self._locked(phone):
            return await self.delete(phone)

    # === Eviction ===

    async def sweep(self) -> int:
        """
        Evict expired in-process sessions.

        Sessions whose lock is held or awaited are skipped; they are mid-turn.

        Returns:
            Number of sessions evicted
        """
        evicted = 0
        for phone, session in list(self._memory.items()):
            if self._in_use(phone):
                continue
            if self._expired(session):
                del self._memory[phone]
                self._locks.pop(phone, None)
                evicted += 1

        # Locks for sessions that no longer exist here
        for phone in [p for p in self._locks if p not in self._memory]:
            if not self._in_use(phone):
                del self._locks[phone]

        if evicted:
            logger.info(f"Swept {evicted} expired conversation(s)")
        return evicted

    async def run_sweeper(self, interval_seconds: Optional[float] = None) -> None:
        """Sweep forever; meant to run as a background task."""
        interval = interval_seconds or settings.session_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            await self.sweep()


# Singleton
_store: Optional[ConversationStore] = None


def get_conversation_store() -> ConversationStore:
    """Get singleton ConversationStore."""
    global _store
    if _store is None:
        _store = ConversationStore()
    return _store
