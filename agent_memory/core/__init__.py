"""
Core infrastructure modules for agent-memory.

Provides common utilities used across the package:
- exceptions: Standardized exception hierarchy
- circuit_breaker: Resilience pattern for backend stores
- retry: Timeout and bounded backoff for backend calls
- locks: Keyed asyncio locks for per-session and per-user serialization
- logging: structlog configuration

The dependency container lives in agent_memory.core.container and is
imported from there directly, since it depends on the memory layer.
"""

from agent_memory.core.circuit_breaker import CircuitBreaker, CircuitState
from agent_memory.core.exceptions import (
    AgentMemoryError,
    BackendTimeoutError,
    CircuitBreakerOpenError,
    CompressionError,
    ConfigurationError,
    DuplicateConceptError,
    ExtractionError,
    InitializationError,
    KnowledgeStoreConnectionError,
    KnowledgeStoreError,
    KnowledgeStoreQueryError,
    MemoryConnectionError,
    MemoryNotFoundError,
    MemoryValidationError,
    PermanentError,
    ProviderConnectionError,
    ProviderError,
    ProviderResponseError,
    RetryableError,
)
from agent_memory.core.locks import KeyedLock
from agent_memory.core.logging import configure_logging
from agent_memory.core.retry import RetryPolicy

__all__ = [
    # Exceptions
    "AgentMemoryError",
    "RetryableError",
    "PermanentError",
    "InitializationError",
    "ConfigurationError",
    "MemoryValidationError",
    "MemoryNotFoundError",
    "DuplicateConceptError",
    "MemoryConnectionError",
    "BackendTimeoutError",
    "KnowledgeStoreError",
    "KnowledgeStoreConnectionError",
    "KnowledgeStoreQueryError",
    "ProviderError",
    "ProviderConnectionError",
    "ProviderResponseError",
    "ExtractionError",
    "CompressionError",
    "CircuitBreakerOpenError",
    # Resilience
    "CircuitBreaker",
    "CircuitState",
    "RetryPolicy",
    "KeyedLock",
    # Logging
    "configure_logging",
]
