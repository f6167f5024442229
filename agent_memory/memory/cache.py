"""Working memory cache with a Redis backend and an in-process fallback.

Entries are kept for `stale_retention_seconds` so that an expired context can
still be served (flagged stale) while the stores are unavailable; freshness is
judged by the caller from `cached_at`.

Usage:
    cache = await create_working_memory_cache(settings)
    await cache.set("user-1", "session-9", context)
    entry = await cache.get("user-1", "session-9")
    if entry and entry.age_seconds < ttl:
        return entry.context
"""

import json
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from agent_memory.config.settings import Settings
from agent_memory.core.exceptions import MemoryConnectionError
from agent_memory.memory.models import WorkingMemoryContext

logger = structlog.get_logger(__name__)


@dataclass
class CacheEntry:
    context: WorkingMemoryContext
    cached_at: float

    @property
    def age_seconds(self) -> float:
        return time.time() - self.cached_at


class WorkingMemoryCache(Protocol):
    async def get(self, user_id: str, session_id: str) -> Optional[CacheEntry]: ...

    async def set(self, user_id: str, session_id: str, context: WorkingMemoryContext) -> None: ...

    async def delete(self, user_id: str, session_id: str) -> None: ...

    async def clear_user(self, user_id: str) -> None: ...

    async def size(self) -> int: ...

    async def close(self) -> None: ...


class InMemoryWorkingMemoryCache:
    """Process-local cache for development or Redis fallback."""

    def __init__(self, retention_seconds: int = 86400):
        self._retention_seconds = retention_seconds
        self._entries: dict[tuple[str, str], CacheEntry] = {}

    def _evict_expired(self) -> None:
        expired = [k for k, e in self._entries.items() if e.age_seconds > self._retention_seconds]
        for key in expired:
            del self._entries[key]

    async def get(self, user_id: str, session_id: str) -> Optional[CacheEntry]:
        self._evict_expired()
        entry = self._entries.get((user_id, session_id))
        if entry is None:
            return None
        return CacheEntry(context=entry.context.model_copy(deep=True), cached_at=entry.cached_at)

    async def set(self, user_id: str, session_id: str, context: WorkingMemoryContext) -> None:
        self._entries[(user_id, session_id)] = CacheEntry(
            context=context.model_copy(deep=True),
            cached_at=time.time(),
        )

    async def delete(self, user_id: str, session_id: str) -> None:
        self._entries.pop((user_id, session_id), None)

    async def clear_user(self, user_id: str) -> None:
        for key in [k for k in self._entries if k[0] == user_id]:
            del self._entries[key]

    async def size(self) -> int:
        self._evict_expired()
        return len(self._entries)

    async def close(self) -> None:
        self._entries.clear()


class RedisWorkingMemoryCache:
    """
    Redis-backed cache shared across processes.

    Each context is stored as one JSON string under
    `{prefix}:{user_id}:{session_id}` with a TTL of the retention window.

    Args:
        redis_url: Redis connection URL
        key_prefix: Prefix for Redis keys
        retention_seconds: How long an entry stays available for stale reads
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "agent_memory:wm",
        retention_seconds: int = 86400,
    ):
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._retention_seconds = retention_seconds
        self._client: Optional[redis.Redis] = None
        self._connected = False

    async def connect(self) -> None:
        """Establish Redis connection."""
        if self._connected:
            return

        self._client = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            logger.error("working_memory_cache_connection_failed", error=str(e))
            raise MemoryConnectionError(f"Redis unavailable: {e}", {"url": self._redis_url}) from e
        self._connected = True
        logger.info("working_memory_cache_connected", backend="redis")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._connected = False
            logger.info("working_memory_cache_disconnected")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _make_key(self, user_id: str, session_id: str) -> str:
        return f"{self._key_prefix}:{user_id}:{session_id}"

    def _require_client(self) -> redis.Redis:
        if not self._connected or self._client is None:
            raise RuntimeError("Working memory cache not connected. Call connect() first.")
        return self._client

    async def get(self, user_id: str, session_id: str) -> Optional[CacheEntry]:
        client = self._require_client()
        try:
            raw = await client.get(self._make_key(user_id, session_id))
        except RedisError as e:
            raise MemoryConnectionError(f"Redis read failed: {e}") from e
        if raw is None:
            return None
        payload = json.loads(raw)
        return CacheEntry(
            context=WorkingMemoryContext.model_validate(payload["context"]),
            cached_at=float(payload["cached_at"]),
        )

    async def set(self, user_id: str, session_id: str, context: WorkingMemoryContext) -> None:
        client = self._require_client()
        payload = json.dumps({"cached_at": time.time(), "context": context.model_dump(mode="json")})
        try:
            await client.set(self._make_key(user_id, session_id), payload, ex=self._retention_seconds or None)
        except RedisError as e:
            raise MemoryConnectionError(f"Redis write failed: {e}") from e

    async def delete(self, user_id: str, session_id: str) -> None:
        client = self._require_client()
        try:
            await client.delete(self._make_key(user_id, session_id))
        except RedisError as e:
            raise MemoryConnectionError(f"Redis delete failed: {e}") from e

    async def clear_user(self, user_id: str) -> None:
        client = self._require_client()
        try:
            keys = [key async for key in client.scan_iter(match=f"{self._key_prefix}:{user_id}:*")]
            if keys:
                await client.delete(*keys)
        except RedisError as e:
            raise MemoryConnectionError(f"Redis delete failed: {e}") from e

    async def size(self) -> int:
        client = self._require_client()
        try:
            return len([key async for key in client.scan_iter(match=f"{self._key_prefix}:*")])
        except RedisError as e:
            raise MemoryConnectionError(f"Redis scan failed: {e}") from e


async def create_working_memory_cache(settings: Settings) -> WorkingMemoryCache:
    """
    Build the working memory cache.

    Tries Redis when `redis_url` is configured and falls back to the
    in-process cache if it cannot connect.
    """
    retention = settings.working_memory.stale_retention_seconds

    if settings.redis_url:
        cache = RedisWorkingMemoryCache(
            redis_url=settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            retention_seconds=retention,
        )
        try:
            await cache.connect()
            logger.info("working_memory_cache_initialized", backend="redis")
            return cache
        except MemoryConnectionError as e:
            logger.warning("redis_cache_failed_fallback_to_memory", error=str(e))

    logger.info("working_memory_cache_initialized", backend="in_memory")
    return InMemoryWorkingMemoryCache(retention_seconds=retention)
