# This module maps conversation ids to agent backend sessions, creating each session at most once.
# Date: 2026-10-19
# Version: 0.1.0

import asyncio
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Awaitable, Callable, Dict, Optional, Tuple

from redis.asyncio import Redis, from_url

from fleet_gateway.core.exceptions import SessionCreationError
from fleet_gateway.models.common import ConversationSession
from fleet_gateway.utils.logger import console


class SessionStore(ABC):
    """
    Abstract storage for ConversationSession entries.

    Implementations must make `add_if_absent` atomic: when two writers race on
    the same conversation id, both get back the same stored entry.
    """

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[ConversationSession]:
        pass

    @abstractmethod
    async def add_if_absent(self, session: ConversationSession) -> ConversationSession:
        """Stores `session` unless an entry exists, and returns whichever entry is stored."""
        pass

    @abstractmethod
    async def remove(self, conversation_id: str) -> bool:
        pass

    async def close(self):
        pass


class InMemorySessionStore(SessionStore):
    """
    Process-local store. Reads take no lock; the event loop never switches
    tasks inside these methods, so every operation is atomic.

    With neither `ttl` nor `max_entries` set, entries live as long as the process.
    """

    def __init__(self, ttl: Optional[float] = None, max_entries: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        if ttl is not None and ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries is not None and max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[ConversationSession, Optional[float]]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, conversation_id: str) -> Optional[ConversationSession]:
        entry = self._entries.get(conversation_id)
        if entry is None:
            return None
        session, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[conversation_id]
            console.info(f"Session for conversation '{conversation_id}' expired.")
            return None
        return session

    async def add_if_absent(self, session: ConversationSession) -> ConversationSession:
        existing = await self.get(session.conversation_id)
        if existing is not None:
            return existing

        expires_at = self._clock() + self._ttl if self._ttl is not None else None
        self._entries[session.conversation_id] = (session, expires_at)

        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                console.info(f"Evicted session for conversation '{evicted}' (store holds {self._max_entries}).")
        return session

    async def remove(self, conversation_id: str) -> bool:
        return self._entries.pop(conversation_id, None) is not None


class RedisSessionStore(SessionStore):
    """
    Stores sessions in Redis so several gateway processes share one mapping.
    Entries are written with SET NX, which makes the first writer win.
    """
    KEY_PREFIX = "fleet-gateway:session:"

    def __init__(self, redis: Redis, ttl: Optional[int] = None):
        self._redis = redis
        self._ttl = ttl

    @classmethod
    def from_url(cls, url: str, ttl: Optional[int] = None) -> "RedisSessionStore":
        client = from_url(url, decode_responses=True)
        console.info("Async Redis client for session storage initialized.")
        return cls(client, ttl=ttl)

    def _key(self, conversation_id: str) -> str:
        return f"{self.KEY_PREFIX}{conversation_id}"

    async def get(self, conversation_id: str) -> Optional[ConversationSession]:
        raw = await self._redis.get(self._key(conversation_id))
        if not raw:
            return None
        return ConversationSession.model_validate_json(raw)

    async def add_if_absent(self, session: ConversationSession) -> ConversationSession:
        stored = await self._redis.set(
            self._key(session.conversation_id),
            session.model_dump_json(),
            nx=True,
            ex=self._ttl,
        )
        if stored:
            return session

        existing = await self.get(session.conversation_id)
        if existing is None:
            # The winning entry expired between SET NX and GET; try once more.
            await self._redis.set(self._key(session.conversation_id), session.model_dump_json(), nx=True, ex=self._ttl)
            return await self.get(session.conversation_id) or session
        return existing

    async def remove(self, conversation_id: str) -> bool:
        return bool(await self._redis.delete(self._key(conversation_id)))

    async def close(self):
        await self._redis.aclose()


class _KeyLock:
    """A lock for one conversation id plus the number of tasks holding or awaiting it."""

    def __init__(self):
        self.mutex = asyncio.Lock()
        self.users = 0


class SessionRegistry:
    """
    Resolves a conversation id to its backend session id.

    A known id is answered straight from the store. For an unknown id a lock
    keyed by the conversation id admits one creator at a time, and the store
    is checked again under the lock, so concurrent first requests trigger
    exactly one backend `create_session` call. Failures are never cached.
    """

    def __init__(self, store: SessionStore, create_session: Callable[[], Awaitable[str]]):
        self._store = store
        self._create_session = create_session
        self._locks: Dict[str, _KeyLock] = {}

    async def get_or_create_session(self, conversation_id: str) -> str:
        if not conversation_id:
            raise ValueError("conversation_id must be a non-empty string")

        session = await self._store.get(conversation_id)
        if session is not None:
            console.debug(f"Using existing session '{session.backend_session_id}' for conversation '{conversation_id}'.")
            return session.backend_session_id

        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = _KeyLock()
        lock.users += 1
        try:
            async with lock.mutex:
                session = await self._store.get(conversation_id)
                if session is not None:
                    return session.backend_session_id
                return await self._create_and_store(conversation_id)
        finally:
            lock.users -= 1
            if lock.users == 0:
                del self._locks[conversation_id]

    async def _create_and_store(self, conversation_id: str) -> str:
        try:
            backend_session_id = await self._create_session()
        except SessionCreationError:
            console.error(f"Failed to create a backend session for conversation '{conversation_id}'.")
            raise
        except Exception as e:
            console.exception(f"Unexpected error creating a backend session for conversation '{conversation_id}'.")
            raise SessionCreationError(f"Could not create a backend session: {e}") from e

        created = ConversationSession(conversation_id=conversation_id, backend_session_id=backend_session_id)
        try:
            stored = await self._store.add_if_absent(created)
        except Exception as e:
            console.exception(f"Failed to store the session for conversation '{conversation_id}'.")
            raise SessionCreationError(f"Could not store the backend session: {e}") from e

        if stored.backend_session_id != backend_session_id:
            console.warning(
                f"Conversation '{conversation_id}' was claimed concurrently; "
                f"discarding session '{backend_session_id}' in favour of '{stored.backend_session_id}'."
            )
        else:
            console.success(f"Created session '{backend_session_id}' for conversation '{conversation_id}'.")
        return stored.backend_session_id

    async def get(self, conversation_id: str) -> Optional[ConversationSession]:
        return await self._store.get(conversation_id)

    async def forget(self, conversation_id: str) -> bool:
        """Drops the mapping; the next request for this conversation starts a new backend session."""
        removed = await self._store.remove(conversation_id)
        if removed:
            console.info(f"Session for conversation '{conversation_id}' removed.")
        return removed

    async def close(self):
        await self._store.close()
