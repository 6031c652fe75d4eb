"""Bulk index writer with per-document outcome classification and retries."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, Field

from index_sync.clients.elasticsearch import ElasticsearchClient
from index_sync.coordination.leases import IndexLeaseTable
from index_sync.errors import ConnectivityError, SearchEngineError
from index_sync.indexing.dead_letter import DeadLetterSink
from index_sync.indexing.types import Batch, IndexDocument, WriteOutcome, WriteStatus
from index_sync.utils.metrics import record_write_outcome, record_write_retries

logger = logging.getLogger(__name__)

# Item-level error types that mean "try again later" regardless of status code
RETRYABLE_ERROR_TYPES = frozenset(
    {
        "es_rejected_execution_exception",
        "circuit_breaking_exception",
        "unavailable_shards_exception",
        "cluster_block_exception",
    }
)

# Whole-request statuses after which every item is retryable
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def classify_item(result: dict[str, Any]) -> tuple[WriteStatus, str | None]:
    """Classify one bulk response item.

    Transient capacity errors (HTTP 408/429/5xx, rejected execution, circuit
    breakers) are retryable; structural document errors (mapping/parsing
    failures, invalid arguments, other 4xx) are permanent.

    Args:
        result: Inner object of a bulk response item.

    Returns:
        The write status and a short error description.
    """
    status = int(result.get("status", 0))
    error = result.get("error")
    if 200 <= status < 300 and not error:
        return WriteStatus.ACCEPTED, None

    error_type = None
    reason = None
    if isinstance(error, dict):
        error_type = error.get("type")
        reason = error.get("reason")
    elif error:
        reason = str(error)
    description = f"{status} {error_type or 'error'}: {reason or 'no reason given'}"

    if error_type in RETRYABLE_ERROR_TYPES or status in (408, 429) or status >= 500:
        return WriteStatus.RETRYABLE_FAILURE, description
    return WriteStatus.PERMANENT_FAILURE, description


class WriterConfig(BaseModel):
    """Configuration for the index writer."""

    max_attempts: int = Field(default=5, ge=1, description="Attempts per document")
    base_delay_ms: int = Field(default=200, description="Backoff after the first failure")
    max_delay_ms: int = Field(default=10000, description="Backoff ceiling")
    connect_max_delay_ms: int = Field(
        default=30000, description="Backoff ceiling while the engine is unreachable"
    )

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        delay_ms = min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)
        return delay_ms / 1000.0

    def connect_backoff(self, failures: int) -> float:
        delay_ms = min(self.base_delay_ms * (2 ** (failures - 1)), self.connect_max_delay_ms)
        return delay_ms / 1000.0


class IndexWriter:
    """Writes batches to the search engine and reports per-document outcomes.

    Each document of a batch moves through an explicit state machine driven
    by :meth:`write`::

        PENDING -> ACCEPTED
                -> PERMANENT_FAILURE
                -> RETRYABLE_FAILURE(n) -> (backoff) -> resend -> ...
                                        -> PERMANENT_FAILURE once n == max_attempts

    Only documents still in RETRYABLE_FAILURE are re-sent, always with the
    same deterministic id, so a retry of a write that landed upstream is an
    overwrite. ``write`` returns only when every document is final.
    """

    def __init__(
        self,
        client: ElasticsearchClient,
        leases: IndexLeaseTable,
        dead_letters: DeadLetterSink | None = None,
        config: WriterConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the writer.

        Args:
            client: Search engine client (shared, concurrency-safe).
            leases: Lease table shared with the retention sweeper.
            dead_letters: Sink for permanently rejected documents.
            config: Retry configuration.
            sleep: Backoff sleep, injectable for tests.
        """
        self.client = client
        self.leases = leases
        self.dead_letters = dead_letters or DeadLetterSink()
        self.config = config or WriterConfig()
        self._sleep = sleep

    async def write(self, batch: Batch) -> list[WriteOutcome]:
        """Write a batch and resolve every document to a final outcome.

        Args:
            batch: Batch to write.

        Returns:
            Outcomes aligned positionally with ``batch.documents``.
        """
        pairs = batch.documents
        outcomes = [
            WriteOutcome(offset=offset, document_id=doc.id, index=doc.index)
            for offset, doc in pairs
        ]
        if not pairs:
            return outcomes

        connect_failures = 0
        while True:
            pending = [i for i, o in enumerate(outcomes) if not o.status.is_final]
            if not pending:
                break

            documents = [pairs[i][1] for i in pending]
            try:
                results = await self._send(documents)
            except ConnectivityError as e:
                connect_failures += 1
                delay = self.config.connect_backoff(connect_failures)
                logger.warning(
                    f"Search engine unreachable writing {batch.topic}[{batch.partition}] "
                    f"({connect_failures} consecutive failures), retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)
                continue
            except SearchEngineError as e:
                connect_failures = 0
                status = (
                    WriteStatus.RETRYABLE_FAILURE
                    if e.status_code in RETRYABLE_STATUS_CODES
                    else WriteStatus.PERMANENT_FAILURE
                )
                logger.warning(f"Bulk request rejected ({e.status_code}): {e}")
                for i in pending:
                    self._transition(outcomes[i], status, str(e))
            else:
                connect_failures = 0
                for i, result in zip(pending, results, strict=True):
                    status, error = classify_item(result)
                    self._transition(outcomes[i], status, error)

            retrying = [i for i in pending if not outcomes[i].status.is_final]
            if retrying:
                attempt = max(outcomes[i].attempts for i in retrying)
                delay = self.config.backoff(attempt)
                record_write_retries(len(retrying))
                logger.info(
                    f"Retrying {len(retrying)}/{len(pairs)} documents of "
                    f"{batch.topic}[{batch.partition}] in {delay:.2f}s (attempt {attempt})"
                )
                await self._sleep(delay)

        for outcome in outcomes:
            record_write_outcome(outcome.status.value)
            if outcome.status is WriteStatus.PERMANENT_FAILURE:
                await self.dead_letters.document_rejected(batch.topic, batch.partition, outcome)

        accepted = sum(1 for o in outcomes if o.status is WriteStatus.ACCEPTED)
        logger.info(
            f"Wrote batch {batch.topic}[{batch.partition}] offsets "
            f"{batch.first_offset}..{batch.last_offset}: {accepted}/{len(outcomes)} accepted"
        )
        return outcomes

    async def _send(self, documents: list[IndexDocument]) -> list[dict[str, Any]]:
        async with self.leases.write_lease(doc.index for doc in documents):
            return await self.client.bulk(documents)

    def _transition(self, outcome: WriteOutcome, status: WriteStatus, error: str | None) -> None:
        outcome.attempts += 1
        outcome.error = error
        if status is WriteStatus.RETRYABLE_FAILURE and outcome.attempts >= self.config.max_attempts:
            logger.warning(
                f"Document {outcome.document_id} exhausted {outcome.attempts} attempts: {error}"
            )
            status = WriteStatus.PERMANENT_FAILURE
        outcome.status = status
