"""Prometheus metrics instrumentation for the sync service.

This module tracks:
- Message consumption, dead letters and committed offsets per partition
- Bulk write latency and per-document write outcomes
- In-flight batches (backpressure)
- Retention sweep results
"""

import functools
import time
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

SERVICE_INFO = Info("index_sync_service", "Index sync service information")
SERVICE_INFO.info(
    {
        "version": "0.1.0",
        "service": "index-sync",
    }
)

# ==================== Consumer Metrics ====================

MESSAGES_CONSUMED = Counter(
    "index_sync_messages_consumed_total",
    "Total messages pulled from the broker",
    ["topic"],
)

DEAD_LETTERS = Counter(
    "index_sync_dead_letters_total",
    "Total messages or documents routed to the dead-letter path",
    ["topic", "reason"],
)

COMMITTED_OFFSET = Gauge(
    "index_sync_committed_offset",
    "Last committed offset by topic and partition",
    ["topic", "partition"],
)

IN_FLIGHT_BATCHES = Gauge(
    "index_sync_in_flight_batches",
    "Batches handed to the writer and not yet committed",
    ["topic", "partition"],
)

BATCH_SIZE = Histogram(
    "index_sync_batch_size",
    "Number of entries per emitted batch",
    buckets=[1, 10, 50, 100, 250, 500, 1000, 5000],
)

# ==================== Writer Metrics ====================

WRITE_OUTCOMES = Counter(
    "index_sync_write_outcomes_total",
    "Final per-document write outcomes",
    ["status"],
)

WRITE_RETRIES = Counter(
    "index_sync_write_retries_total",
    "Documents re-sent after a retryable failure",
)

BULK_LATENCY = Histogram(
    "index_sync_bulk_latency_seconds",
    "Bulk request latency in seconds",
    ["status"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ==================== Sweeper Metrics ====================

SWEEP_RUNS = Counter(
    "index_sync_sweep_runs_total",
    "Total retention sweep passes",
    ["status"],
)

SWEEP_INDICES = Counter(
    "index_sync_sweep_indices_total",
    "Indices handled by the sweeper",
    ["action"],
)

LAST_SWEEP_TIMESTAMP = Gauge(
    "index_sync_last_sweep_timestamp_seconds",
    "Unix time the last sweep pass finished",
)


# ==================== Decorator Utilities ====================

P = ParamSpec("P")
T = TypeVar("T")


def track_bulk() -> Callable[..., Any]:
    """Decorator to track bulk request latency.

    Returns:
            Decorated function.

    Example:
            @track_bulk()
            async def bulk(self, documents: list[IndexDocument]) -> list[dict]:
                    ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            start_time = time.perf_counter()
            status = "success"

            try:
                return await func(*args, **kwargs)

            except Exception:
                status = "error"
                raise

            finally:
                duration = time.perf_counter() - start_time
                BULK_LATENCY.labels(status=status).observe(duration)

        return wrapper

    return decorator


# ==================== Helper Functions ====================


def record_consumed(topic: str, count: int = 1) -> None:
    MESSAGES_CONSUMED.labels(topic=topic).inc(count)


def record_dead_letter(topic: str, reason: str) -> None:
    """Record a dead-lettered item.

    Args:
            topic: Source topic of the item.
            reason: Short machine-readable reason (invalid_json, permanent_failure, ...).
    """
    DEAD_LETTERS.labels(topic=topic, reason=reason).inc()


def record_commit(topic: str, partition: int, offset: int) -> None:
    COMMITTED_OFFSET.labels(topic=topic, partition=str(partition)).set(offset)


def set_in_flight(topic: str, partition: int, count: int) -> None:
    IN_FLIGHT_BATCHES.labels(topic=topic, partition=str(partition)).set(count)


def record_batch(size: int) -> None:
    BATCH_SIZE.observe(size)


def record_write_outcome(status: str) -> None:
    """Record a final write outcome.

    Args:
            status: accepted, retryable_failure or permanent_failure.
    """
    WRITE_OUTCOMES.labels(status=status).inc()


def record_write_retries(count: int) -> None:
    WRITE_RETRIES.inc(count)


def record_sweep(success: bool, deleted: int, deferred: int, failed: int) -> None:
    """Record the result of one sweep pass.

    Args:
            success: Whether listing indices succeeded.
            deleted: Indices deleted in this pass.
            deferred: Indices deferred because a write held their lease.
            failed: Indices whose deletion failed.
    """
    SWEEP_RUNS.labels(status="success" if success else "error").inc()
    SWEEP_INDICES.labels(action="deleted").inc(deleted)
    SWEEP_INDICES.labels(action="deferred").inc(deferred)
    SWEEP_INDICES.labels(action="failed").inc(failed)
    LAST_SWEEP_TIMESTAMP.set(time.time())


# ==================== Metrics Endpoint ====================


def get_metrics() -> bytes:
    """Get Prometheus metrics as bytes for /metrics endpoint.

    Returns:
            Metrics in Prometheus text exposition format.
    """
    return generate_latest()


def get_content_type() -> str:
    """Get content type for metrics response."""
    return CONTENT_TYPE_LATEST
