"""
Monitoring.

Prometheus metrics for store operations, extraction and context assembly.
"""

from agent_memory.monitoring.metrics import (
    CONTEXT_ITEMS_TRUNCATED,
    EXTRACTION_CANDIDATES,
    EXTRACTION_DURATION,
    EXTRACTION_QUEUE_DEPTH,
    EXTRACTION_QUEUE_DROPPED,
    EXTRACTION_RUNS,
    STORE_LATENCY,
    STORE_OPERATIONS,
    STORE_RETRIES,
    WORKING_MEMORY_LOOKUPS,
    record_circuit_breaker_failure,
    render_metrics,
    track_store_operation,
    update_circuit_breaker_state,
)

__all__ = [
    "STORE_OPERATIONS",
    "STORE_LATENCY",
    "STORE_RETRIES",
    "EXTRACTION_RUNS",
    "EXTRACTION_CANDIDATES",
    "EXTRACTION_DURATION",
    "EXTRACTION_QUEUE_DEPTH",
    "EXTRACTION_QUEUE_DROPPED",
    "CONTEXT_ITEMS_TRUNCATED",
    "WORKING_MEMORY_LOOKUPS",
    "track_store_operation",
    "update_circuit_breaker_state",
    "record_circuit_breaker_failure",
    "render_metrics",
]
