"""
Circuit breaker for the memory backends.

A store that keeps refusing connections is given time to recover instead
of being hammered by every retry of every request. Only connection-class
failures count: a query the server rejected says nothing about its health.

    CLOSED     requests pass; consecutive failures are counted
    OPEN       requests fail fast with CircuitBreakerOpenError
    HALF_OPEN  after recovery_timeout, probe requests decide the next state

Usage:
    breaker = CircuitBreaker("neo4j", failure_threshold=5, recovery_timeout=30)

    @breaker
    async def fetch_tail(session_id):
        ...

    # Or around a call whose failure mapping is done by the caller:
    breaker.ensure_can_execute()
    try:
        records = await session.run(query)
    except ServiceUnavailable:
        await breaker.record_failure()
        raise
    await breaker.record_success()
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from agent_memory.core.exceptions import CircuitBreakerOpenError, RetryableError
from agent_memory.monitoring.metrics import (
    record_circuit_breaker_failure,
    update_circuit_breaker_state,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Failure gate owned by one backend client.

    Args:
        name: Backend label used in logs and metrics (e.g. "neo4j")
        failure_threshold: Consecutive failures that open the circuit
        recovery_timeout: Seconds the circuit stays open before probing
        success_threshold: Probe successes needed to close it again
        trips_on: Exception types the decorator counts as failures
    """

    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    trips_on: tuple[type[BaseException], ...] = (RetryableError,)

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: Optional[float] = field(default=None, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def _transition(self, state: CircuitState, event: str, **context: Any) -> None:
        self._state = state
        self._success_count = 0
        if state == CircuitState.CLOSED:
            self._failure_count = 0
        update_circuit_breaker_state(self.name, state.value)
        log = logger.info if state != CircuitState.OPEN else logger.warning
        log(event, name=self.name, **context)

    def _recovery_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return False
        return time.monotonic() - self._last_failure_time >= self.recovery_timeout

    @property
    def state(self) -> CircuitState:
        """Current state; an open circuit past its timeout becomes half-open."""
        if self._state == CircuitState.OPEN and self._recovery_elapsed():
            self._transition(CircuitState.HALF_OPEN, "circuit_breaker_half_open")
        return self._state

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def time_until_recovery(self) -> float:
        if self._state != CircuitState.OPEN or self._last_failure_time is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._last_failure_time))

    def ensure_can_execute(self) -> None:
        """
        Raises:
            CircuitBreakerOpenError: While the circuit is open.
        """
        if self.state == CircuitState.OPEN:
            recovery_time = self.time_until_recovery()
            logger.warning("circuit_breaker_blocked", name=self.name, recovery_time=recovery_time)
            raise CircuitBreakerOpenError(self.name, recovery_time)

    async def record_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                self._failure_count = 0
                return
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED, "circuit_breaker_closed")

    async def record_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            record_circuit_breaker_failure(self.name)

            # A failed probe reopens immediately.
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, "circuit_breaker_reopened")
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._transition(
                    CircuitState.OPEN,
                    "circuit_breaker_opened",
                    failure_count=self._failure_count,
                    recovery_timeout=self.recovery_timeout,
                )

    def reset(self) -> None:
        self._last_failure_time = None
        self._transition(CircuitState.CLOSED, "circuit_breaker_reset")

    def __call__(self, func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Guard an async callable; only `trips_on` errors count as failures."""

        @wraps(func)
        async def guarded(*args: Any, **kwargs: Any) -> T:
            self.ensure_can_execute()
            try:
                result = await func(*args, **kwargs)
            except self.trips_on:
                await self.record_failure()
                raise
            await self.record_success()
            return result

        return guarded
