"""Unit tests for working memory cache implementations."""

import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from agent_memory.core.exceptions import MemoryConnectionError
from agent_memory.memory.cache import (
    InMemoryWorkingMemoryCache,
    RedisWorkingMemoryCache,
    create_working_memory_cache,
)
from agent_memory.memory.models import SessionMetadata, WorkingMemoryContext


def make_context(user_id: str = "u1", session_id: str = "s1", topic: str = "pandas") -> WorkingMemoryContext:
    return WorkingMemoryContext(
        conversation_id=session_id,
        user_id=user_id,
        current_topic=topic,
        session_metadata=SessionMetadata(session_id=session_id),
    )


class TestInMemoryWorkingMemoryCache:
    """Test in-process cache."""

    @pytest.fixture
    def cache(self):
        return InMemoryWorkingMemoryCache()

    @pytest.mark.asyncio
    async def test_set_then_get(self, cache):
        await cache.set("u1", "s1", make_context())

        entry = await cache.get("u1", "s1")

        assert entry.context.current_topic == "pandas"
        assert entry.age_seconds >= 0

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, cache):
        """Mutating a returned context does not change the cached one."""
        await cache.set("u1", "s1", make_context())

        entry = await cache.get("u1", "s1")
        entry.context.current_topic = "changed"

        assert (await cache.get("u1", "s1")).context.current_topic == "pandas"

    @pytest.mark.asyncio
    async def test_miss(self, cache):
        assert await cache.get("u1", "s1") is None

    @pytest.mark.asyncio
    async def test_clear_user_keeps_other_users(self, cache):
        await cache.set("u1", "s1", make_context("u1", "s1"))
        await cache.set("u1", "s2", make_context("u1", "s2"))
        await cache.set("u2", "s1", make_context("u2", "s1"))

        await cache.clear_user("u1")

        assert await cache.size() == 1
        assert await cache.get("u2", "s1") is not None

    @pytest.mark.asyncio
    async def test_entries_expire_after_retention(self):
        cache = InMemoryWorkingMemoryCache(retention_seconds=10)
        await cache.set("u1", "s1", make_context())

        with patch("agent_memory.memory.cache.time.time", return_value=time.time() + 60):
            assert await cache.get("u1", "s1") is None


class TestRedisWorkingMemoryCache:
    """Test Redis cache with a mocked client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.ping = AsyncMock(return_value=True)
        client.get = AsyncMock(return_value=None)
        client.set = AsyncMock(return_value=True)
        client.delete = AsyncMock(return_value=1)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    async def cache(self, client):
        with patch("agent_memory.memory.cache.redis.from_url", return_value=client):
            cache = RedisWorkingMemoryCache("redis://localhost:6379", key_prefix="test:wm", retention_seconds=600)
            await cache.connect()
        return cache

    @pytest.mark.asyncio
    async def test_set_writes_json_with_retention(self, cache, client):
        await cache.set("u1", "s1", make_context())

        key, payload = client.set.call_args.args
        assert key == "test:wm:u1:s1"
        assert client.set.call_args.kwargs["ex"] == 600
        assert json.loads(payload)["context"]["current_topic"] == "pandas"

    @pytest.mark.asyncio
    async def test_get_parses_payload(self, cache, client):
        client.get.return_value = json.dumps(
            {"cached_at": 100.0, "context": make_context().model_dump(mode="json")}
        )

        entry = await cache.get("u1", "s1")

        assert entry.cached_at == 100.0
        assert entry.context.user_id == "u1"

    @pytest.mark.asyncio
    async def test_redis_errors_become_connection_errors(self, cache, client):
        client.get.side_effect = RedisConnectionError("down")

        with pytest.raises(MemoryConnectionError):
            await cache.get("u1", "s1")

    @pytest.mark.asyncio
    async def test_use_before_connect(self):
        cache = RedisWorkingMemoryCache("redis://localhost:6379")

        with pytest.raises(RuntimeError):
            await cache.get("u1", "s1")

    @pytest.mark.asyncio
    async def test_close(self, cache, client):
        await cache.close()

        client.aclose.assert_awaited_once()
        assert cache.is_connected is False


class TestCacheFactory:
    """Test cache backend selection."""

    @pytest.mark.asyncio
    async def test_no_redis_url_uses_memory(self, settings):
        settings.redis_url = None

        cache = await create_working_memory_cache(settings)

        assert isinstance(cache, InMemoryWorkingMemoryCache)

    @pytest.mark.asyncio
    async def test_redis_failure_falls_back_to_memory(self, settings):
        settings.redis_url = "redis://localhost:6379"

        with patch("agent_memory.memory.cache.RedisWorkingMemoryCache") as MockRedis:
            mock_instance = AsyncMock()
            mock_instance.connect = AsyncMock(side_effect=MemoryConnectionError("Connection refused"))
            MockRedis.return_value = mock_instance

            cache = await create_working_memory_cache(settings)

        assert isinstance(cache, InMemoryWorkingMemoryCache)

    @pytest.mark.asyncio
    async def test_redis_used_when_reachable(self, settings):
        settings.redis_url = "redis://localhost:6379"

        with patch("agent_memory.memory.cache.RedisWorkingMemoryCache") as MockRedis:
            mock_instance = AsyncMock()
            MockRedis.return_value = mock_instance

            cache = await create_working_memory_cache(settings)

        assert cache is mock_instance
        MockRedis.assert_called_once()
