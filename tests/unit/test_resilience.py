"""Unit tests for the circuit breaker, retry policy and keyed locks."""

import asyncio
import time

import pytest

from agent_memory.core.circuit_breaker import CircuitBreaker, CircuitState
from agent_memory.core.exceptions import (
    BackendTimeoutError,
    CircuitBreakerOpenError,
    MemoryConnectionError,
    MemoryValidationError,
)
from agent_memory.core.locks import KeyedLock
from agent_memory.core.retry import RetryPolicy


class TestCircuitBreaker:
    """Test circuit breaker state transitions."""

    @pytest.fixture
    def breaker(self):
        return CircuitBreaker("test", failure_threshold=2, recovery_timeout=30.0, success_threshold=1)

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        await breaker.record_failure()
        assert breaker.is_closed

        await breaker.record_failure()

        assert breaker.is_open
        with pytest.raises(CircuitBreakerOpenError):
            breaker.ensure_can_execute()

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        await breaker.record_failure()
        await breaker.record_success()
        await breaker.record_failure()

        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_half_open_after_recovery_timeout(self, breaker):
        await breaker.record_failure()
        await breaker.record_failure()

        breaker._last_failure_time = time.monotonic() - 31

        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.record_success()
        assert breaker.is_closed

    @pytest.mark.asyncio
    async def test_decorator_records_failures(self, breaker):
        @breaker
        async def failing():
            raise MemoryConnectionError("down")

        for _ in range(2):
            with pytest.raises(MemoryConnectionError):
                await failing()

        with pytest.raises(CircuitBreakerOpenError):
            await failing()

    @pytest.mark.asyncio
    async def test_decorator_ignores_permanent_errors(self, breaker):
        @breaker
        async def rejected():
            raise MemoryValidationError("bad query")

        for _ in range(3):
            with pytest.raises(MemoryValidationError):
                await rejected()

        assert breaker.is_closed

    def test_reset(self, breaker):
        breaker._state = CircuitState.OPEN

        breaker.reset()

        assert breaker.is_closed


class TestRetryPolicy:
    """Test bounded retries and timeouts."""

    @pytest.fixture
    def policy(self):
        return RetryPolicy(timeout=0.2, max_attempts=3, min_backoff=0.0, max_backoff=0.0)

    @pytest.mark.asyncio
    async def test_retries_connection_errors(self, policy):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise MemoryConnectionError("temporarily down")
            return "ok"

        assert await policy.run("test.flaky", flaky) == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, policy):
        attempts = []

        async def down():
            attempts.append(1)
            raise MemoryConnectionError("down")

        with pytest.raises(MemoryConnectionError):
            await policy.run("test.down", down)
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_permanent_errors_not_retried(self, policy):
        attempts = []

        async def invalid():
            attempts.append(1)
            raise MemoryValidationError("bad input")

        with pytest.raises(MemoryValidationError):
            await policy.run("test.invalid", invalid)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_backend_timeout(self):
        policy = RetryPolicy(timeout=0.01, max_attempts=1)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(BackendTimeoutError):
            await policy.run("test.slow", slow)


class TestKeyedLock:
    """Test per-key serialization."""

    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        order = []

        async def work(name: str):
            async with locks.hold("session"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(work("a"), work("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()

        async with locks.hold("one"):
            async with locks.hold("two"):
                assert locks.locked("one")
                assert locks.locked("two")

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        locks = KeyedLock()

        async with locks.hold("session"):
            assert len(locks) == 1

        assert len(locks) == 0
