"""Batch accumulator for efficient bulk indexing."""

import logging
import time
from collections.abc import Callable

from pydantic import BaseModel, Field

from index_sync.errors import OffsetOrderError
from index_sync.indexing.types import Batch, BatchEntry, IndexDocument

logger = logging.getLogger(__name__)


class BatchConfig(BaseModel):
    """Configuration for batch accumulation."""

    max_size: int = Field(default=500, ge=1, description="Max documents per batch")
    max_wait_ms: int = Field(default=5000, ge=1, description="Max ms since first entry")


class BatchAccumulator:
    """Buffers mapped documents of one partition and emits Batches.

    A batch is emitted when either:
    - ``max_size`` documents have been buffered, or
    - ``max_wait_ms`` has elapsed since the first entry of the current batch
      (checked by the owner through :meth:`due`, then :meth:`flush_now`), or
    - the owner forces a flush on shutdown or revocation.

    The accumulator holds no timer of its own. The owning partition worker
    polls with a timeout no longer than :meth:`time_until_due`, which keeps
    flushing on the worker's single sequential path.
    """

    def __init__(
        self,
        topic: str,
        partition: int,
        config: BatchConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the accumulator.

        Args:
            topic: Topic of the owning partition.
            partition: Partition number.
            config: Batch thresholds.
            clock: Monotonic clock in seconds, injectable for tests.
        """
        self.topic = topic
        self.partition = partition
        self.config = config or BatchConfig()
        self._clock = clock
        self._entries: list[BatchEntry] = []
        self._document_count = 0
        self._started_at: float | None = None
        self._last_offset: int | None = None

    def add(self, offset: int, document: IndexDocument) -> Batch | None:
        """Add a mapped document.

        Args:
            offset: Broker offset of the source message.
            document: Mapped document.

        Returns:
            The completed batch if a threshold was reached, else None.
        """
        self._append(BatchEntry(offset=offset, document=document))
        self._document_count += 1
        if self._document_count >= self.config.max_size or self.due():
            return self.flush_now()
        return None

    def skip(self, offset: int) -> Batch | None:
        """Record an offset that produced no document (dead-lettered).

        The offset rides along in the current batch so that committing the
        batch also moves the cursor past it.
        """
        self._append(BatchEntry(offset=offset))
        if self.due():
            return self.flush_now()
        return None

    def flush_now(self) -> Batch | None:
        """Emit whatever is buffered.

        Returns:
            The partial batch, or None if nothing is buffered.
        """
        if not self._entries:
            return None

        batch = Batch(topic=self.topic, partition=self.partition, entries=tuple(self._entries))
        self._entries = []
        self._document_count = 0
        self._started_at = None
        logger.debug(
            f"Emitting batch of {len(batch)} entries for {self.topic}[{self.partition}] "
            f"(offsets {batch.first_offset}..{batch.last_offset})"
        )
        return batch

    def due(self, now: float | None = None) -> bool:
        """Whether the current batch has reached its max wait."""
        return self.time_until_due(now) == 0.0

    def time_until_due(self, now: float | None = None) -> float | None:
        """Seconds left before the current batch must be flushed.

        Returns:
            None when the buffer is empty, otherwise a non-negative number.
        """
        if self._started_at is None:
            return None
        now = self._clock() if now is None else now
        remaining = self._started_at + self.config.max_wait_ms / 1000.0 - now
        return max(remaining, 0.0)

    @property
    def size(self) -> int:
        """Number of buffered entries (documents and skipped offsets)."""
        return len(self._entries)

    def _append(self, entry: BatchEntry) -> None:
        if self._last_offset is not None and entry.offset <= self._last_offset:
            raise OffsetOrderError(
                f"offset {entry.offset} for {self.topic}[{self.partition}] does not follow "
                f"{self._last_offset}"
            )
        self._last_offset = entry.offset
        if not self._entries:
            self._started_at = self._clock()
        self._entries.append(entry)
