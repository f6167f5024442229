"""Bounded retry with timeout for backend calls.

Every store and provider call runs through a RetryPolicy: each attempt is
wrapped in asyncio.wait_for, connection-class failures are retried with
exponential backoff, anything else surfaces immediately.

Usage:
    policy = RetryPolicy.from_settings(settings.resilience)
    records = await policy.run("neo4j.search", lambda: client.run_query(q, params))
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from agent_memory.config.settings import ResilienceSettings
from agent_memory.core.exceptions import BackendTimeoutError, MemoryConnectionError
from agent_memory.monitoring.metrics import STORE_RETRIES

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff bounds for one class of backend calls."""

    timeout: float = 10.0
    max_attempts: int = 3
    min_backoff: float = 0.5
    max_backoff: float = 8.0

    @classmethod
    def from_settings(cls, resilience: ResilienceSettings) -> "RetryPolicy":
        return cls(
            timeout=resilience.timeout_seconds,
            max_attempts=resilience.max_attempts,
            min_backoff=resilience.min_backoff_seconds,
            max_backoff=resilience.max_backoff_seconds,
        )

    async def run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Run `call` with a per-attempt timeout and bounded retries.

        Args:
            operation: Name used in logs and metrics.
            call: Zero-argument factory returning a fresh awaitable per attempt.

        Returns:
            The call's result.

        Raises:
            BackendTimeoutError: If the final attempt timed out.
            MemoryConnectionError: If the final attempt could not reach the backend.
        """

        def _before_sleep(retry_state) -> None:
            STORE_RETRIES.labels(operation=operation).inc()
            logger.warning(
                "backend_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                wait=retry_state.next_action.sleep if retry_state.next_action else 0,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(MemoryConnectionError),
            wait=wait_exponential(multiplier=self.min_backoff, min=self.min_backoff, max=self.max_backoff),
            stop=stop_after_attempt(self.max_attempts),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                try:
                    return await asyncio.wait_for(call(), timeout=self.timeout)
                except asyncio.TimeoutError as e:
                    raise BackendTimeoutError(operation, self.timeout) from e

        raise AssertionError("unreachable")  # pragma: no cover
