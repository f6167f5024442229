"""
Core exception hierarchy for agent memory.

Provides standardized exception types with categorization for retry logic.
All components should use these exceptions instead of generic Exception.

Retry semantics:
- MemoryConnectionError and its subclasses are retried with bounded backoff.
- PermanentError subclasses are never retried.
"""

from typing import Any, Optional


# =============================================================================
# Base Exceptions
# =============================================================================


class AgentMemoryError(Exception):
    """Base exception for all agent memory errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class RetryableError(AgentMemoryError):
    """
    Transient errors that should be retried.

    Examples: Store unavailable, timeouts, temporary network issues.
    """

    pass


class PermanentError(AgentMemoryError):
    """
    Errors that won't be fixed by retrying.

    Examples: Invalid input, unknown ids, malformed queries.
    """

    pass


# =============================================================================
# Initialization / Configuration Errors
# =============================================================================


class InitializationError(PermanentError):
    """Raised when a critical component fails to initialize."""

    def __init__(self, component: str, message: str, details: Optional[dict[str, Any]] = None):
        self.component = component
        super().__init__(f"[{component}] {message}", details)


class ConfigurationError(PermanentError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        details = {"config_key": config_key} if config_key else None
        super().__init__(message, details)


# =============================================================================
# Input Errors
# =============================================================================


class MemoryValidationError(PermanentError):
    """Raised for malformed input (missing user id, bad ranges, illegal updates)."""

    pass


class MemoryNotFoundError(PermanentError):
    """Raised when a write path targets an unknown memory id."""

    def __init__(self, memory_type: str, memory_id: str):
        self.memory_type = memory_type
        self.memory_id = memory_id
        super().__init__(
            f"{memory_type} memory not found: {memory_id}",
            {"memory_type": memory_type, "memory_id": memory_id},
        )


class DuplicateConceptError(MemoryValidationError):
    """Raised when a concept already exists for (user, category)."""

    def __init__(self, user_id: str, concept: str, category: str, existing_id: str | None = None):
        self.existing_id = existing_id
        super().__init__(
            f"Concept '{concept}' already exists in category '{category}'",
            {"user_id": user_id, "concept": concept, "category": category, "existing_id": existing_id},
        )


# =============================================================================
# Connection Errors
# =============================================================================


class MemoryConnectionError(RetryableError):
    """A store or provider is unreachable."""

    pass


class BackendTimeoutError(MemoryConnectionError):
    """A store or provider call exceeded its timeout."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(
            f"{operation} timed out after {timeout:.1f}s",
            {"operation": operation, "timeout": timeout},
        )


# =============================================================================
# Knowledge Store Errors
# =============================================================================


class KnowledgeStoreError(AgentMemoryError):
    """Base exception for knowledge store errors."""

    pass


class KnowledgeStoreConnectionError(KnowledgeStoreError, MemoryConnectionError):
    """Raised when unable to reach the graph or vector store."""

    pass


class KnowledgeStoreQueryError(KnowledgeStoreError, PermanentError):
    """Raised when a query is malformed or rejected by the store."""

    pass


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(AgentMemoryError):
    """Base exception for embedding and completion provider errors."""

    def __init__(self, provider: str, message: str, details: Optional[dict[str, Any]] = None):
        self.provider = provider
        super().__init__(f"[{provider}] {message}", details)


class ProviderConnectionError(ProviderError, MemoryConnectionError):
    """Raised when a provider is unreachable, rate limited or timed out."""

    pass


class ProviderResponseError(ProviderError, PermanentError):
    """Raised when a provider returns an unusable response."""

    pass


# =============================================================================
# Pipeline Errors
# =============================================================================


class ExtractionError(PermanentError):
    """Completion output for an extraction batch could not be parsed."""

    def __init__(self, message: str, batch_index: int, details: Optional[dict[str, Any]] = None):
        self.batch_index = batch_index
        super().__init__(message, {"batch_index": batch_index, **(details or {})})


class CompressionError(AgentMemoryError):
    """The context window cannot fit even one item."""

    def __init__(self, truncated_count: int, max_tokens: int):
        self.truncated_count = truncated_count
        self.max_tokens = max_tokens
        super().__init__(
            f"No memory item fits in a {max_tokens} token window",
            {"truncated_count": truncated_count, "max_tokens": max_tokens},
        )


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitBreakerOpenError(RetryableError):
    """Raised when circuit breaker is open and blocking requests."""

    def __init__(self, service: str, recovery_time: float):
        self.service = service
        self.recovery_time = recovery_time
        super().__init__(
            f"Circuit breaker open for {service}. Recovery in {recovery_time:.1f}s",
            {"service": service, "recovery_time": recovery_time},
        )
