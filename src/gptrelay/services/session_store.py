import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Protocol

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..exceptions import RenewalError
from ..models import SessionEntry

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"

TokenValidator = Callable[[str], Awaitable[None]]


class TokenBackend(Protocol):
    async def load(self, conversation_id: int) -> str | None: ...

    async def save(self, conversation_id: int, token: str) -> None: ...

    async def clear(self, conversation_id: int) -> None: ...

    async def close(self) -> None: ...


class InMemoryTokenBackend:
    """Process-lifetime token storage."""

    def __init__(self) -> None:
        self._entries: Dict[int, SessionEntry] = {}

    async def load(self, conversation_id: int) -> str | None:
        entry = self._entries.get(conversation_id)
        return entry.continuation_token if entry is not None else None

    async def save(self, conversation_id: int, token: str) -> None:
        entry = self._entries.setdefault(conversation_id, SessionEntry(conversation_id))
        entry.continuation_token = token

    async def clear(self, conversation_id: int) -> None:
        entry = self._entries.get(conversation_id)
        if entry is not None:
            entry.continuation_token = ""

    async def close(self) -> None:
        return None


class RedisTokenBackend:
    """Token storage in Redis with an optional TTL.

    Redis errors are logged; a failed read counts as a missing token.
    """

    def __init__(self, url: str, ttl_seconds: int = 0) -> None:
        self._url = url
        self._ttl = ttl_seconds
        self._client: Redis | None = None

    def _key(self, conversation_id: int) -> str:
        return f"{SESSION_KEY_PREFIX}{conversation_id}"

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    async def load(self, conversation_id: int) -> str | None:
        if self._client is None:
            return None
        key = self._key(conversation_id)
        try:
            value = await self._client.get(key)
        except RedisError as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None
        return value if value is None else str(value)

    async def save(self, conversation_id: int, token: str) -> None:
        if self._client is None:
            return
        key = self._key(conversation_id)
        try:
            if self._ttl > 0:
                await self._client.setex(key, self._ttl, token)
            else:
                await self._client.set(key, token)
        except RedisError as e:
            logger.warning("Redis set %s failed: %s", key, e)

    async def clear(self, conversation_id: int) -> None:
        if self._client is None:
            return
        key = self._key(conversation_id)
        try:
            await self._client.delete(key)
        except RedisError as e:
            logger.warning("Redis delete %s failed: %s", key, e)


class SessionStore:
    """Maps a conversation id to the backend continuation token.

    Mutations are serialized per conversation; different conversations never
    wait on each other. A conversation's lock is dropped once no mutation
    holds or waits on it, so the lock map stays as small as the set of
    conversations currently being written.
    """

    def __init__(
        self,
        validator: TokenValidator | None = None,
        backend: TokenBackend | None = None,
    ) -> None:
        self._backend: TokenBackend = backend or InMemoryTokenBackend()
        self._validator = validator
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    def set_validator(self, validator: TokenValidator) -> None:
        self._validator = validator

    def lock_for(self, conversation_id: int) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _exclusive(self, conversation_id: int) -> AsyncIterator[None]:
        lock = self.lock_for(conversation_id)
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[conversation_id] - 1
            if remaining:
                self._lock_users[conversation_id] = remaining
            else:
                del self._lock_users[conversation_id]
                if not lock.locked():
                    self._locks.pop(conversation_id, None)

    async def get(self, conversation_id: int) -> str:
        """Return the continuation token, or "" when the conversation has none."""
        token = await self._backend.load(conversation_id)
        return token or ""

    async def set(self, conversation_id: int, token: str) -> None:
        """Install token without validation."""
        async with self._exclusive(conversation_id):
            await self._backend.save(conversation_id, token)

    async def reset(self, conversation_id: int) -> None:
        """Drop the token so the next turn starts a fresh dialogue."""
        async with self._exclusive(conversation_id):
            await self._backend.clear(conversation_id)
        logger.info("Session reset for conversation %s", conversation_id)

    async def renew(self, conversation_id: int, token: str) -> None:
        """Validate token against the backend, then install it.

        Raises:
            RenewalError: token is empty or rejected; the prior token is kept.
        """
        token = token.strip()
        if not token:
            raise RenewalError("no token given")
        async with self._exclusive(conversation_id):
            if self._validator is not None:
                await self._validator(token)
            await self._backend.save(conversation_id, token)
        logger.info("Session renewed for conversation %s", conversation_id)

    async def close(self) -> None:
        await self._backend.close()
