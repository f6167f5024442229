"""
Prometheus metrics for agent memory observability.

Provides standardized metrics for store latency, extraction outcomes,
context assembly and backend health.

Usage:
    from agent_memory.monitoring.metrics import track_store_operation

    with track_store_operation("neo4j", "episodic_store"):
        await client.execute_write(work)

    # Or manually
    EXTRACTION_CANDIDATES.labels(outcome="merged").inc()
"""

import time
from contextlib import contextmanager
from typing import Generator

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


# =============================================================================
# Metric Definitions
# =============================================================================

# Store metrics
STORE_OPERATIONS = Counter(
    "agent_memory_store_operations_total",
    "Total memory store operations",
    ["store", "operation", "status"],
)

STORE_LATENCY = Histogram(
    "agent_memory_store_latency_seconds",
    "Latency of memory store operations",
    ["store", "operation"],
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

STORE_RETRIES = Counter(
    "agent_memory_store_retries_total",
    "Retries issued for backend calls",
    ["operation"],
)

# Extraction metrics
EXTRACTION_RUNS = Counter(
    "agent_memory_extraction_runs_total",
    "Semantic extraction pipeline runs",
    ["status"],
)

EXTRACTION_CANDIDATES = Counter(
    "agent_memory_extraction_candidates_total",
    "Extraction candidates by outcome",
    ["outcome"],
)

EXTRACTION_DURATION = Histogram(
    "agent_memory_extraction_duration_seconds",
    "Duration of extraction runs",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

EXTRACTION_QUEUE_DEPTH = Gauge(
    "agent_memory_extraction_queue_depth",
    "Jobs waiting in the extraction queue",
)

EXTRACTION_QUEUE_DROPPED = Counter(
    "agent_memory_extraction_queue_dropped_total",
    "Jobs dropped or rejected by the extraction queue",
    ["policy"],
)

# Context assembly metrics
CONTEXT_ITEMS_TRUNCATED = Counter(
    "agent_memory_context_items_truncated_total",
    "Candidate items left out of an assembled context",
)

WORKING_MEMORY_LOOKUPS = Counter(
    "agent_memory_working_memory_lookups_total",
    "Working memory lookups by result",
    ["result"],
)

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    "agent_memory_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["service"],
)

CIRCUIT_BREAKER_FAILURES = Counter(
    "agent_memory_circuit_breaker_failures_total",
    "Total failures recorded by circuit breakers",
    ["service"],
)


# =============================================================================
# Tracking Context Managers
# =============================================================================


@contextmanager
def track_store_operation(
    store: str,
    operation: str,
) -> Generator[None, None, None]:
    """
    Context manager to track memory store operations.

    Usage:
        with track_store_operation("pinecone", "query"):
            matches = await pinecone.query(vector)
    """
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        STORE_OPERATIONS.labels(
            store=store,
            operation=operation,
            status=status,
        ).inc()
        STORE_LATENCY.labels(
            store=store,
            operation=operation,
        ).observe(duration)


def update_circuit_breaker_state(service: str, state: str) -> None:
    """
    Update circuit breaker state gauge.

    Args:
        service: Service name
        state: Circuit state ("closed", "half_open", "open")
    """
    state_map = {"closed": 0, "half_open": 1, "open": 2}
    CIRCUIT_BREAKER_STATE.labels(service=service).set(state_map.get(state, 0))


def record_circuit_breaker_failure(service: str) -> None:
    """Record a circuit breaker failure."""
    CIRCUIT_BREAKER_FAILURES.labels(service=service).inc()


def render_metrics() -> tuple[bytes, str]:
    """Return the exposition payload and its content type for a scrape handler."""
    return generate_latest(), CONTENT_TYPE_LATEST
