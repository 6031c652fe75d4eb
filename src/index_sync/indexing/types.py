"""Core types for the indexing pipeline.

This module defines the data structures that flow from the broker through
the mapper, the batch accumulator and the index writer.
"""

from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """A raw record pulled from one broker partition.

    Attributes:
        topic: Source topic.
        partition: Partition number within the topic.
        offset: Broker-assigned position, monotonic within the partition.
        value: Payload bytes.
        timestamp: Enqueue time (Unix epoch in milliseconds).
        key: Optional record key.
    """

    model_config = ConfigDict(frozen=True)

    topic: str
    partition: int
    offset: int
    value: bytes
    timestamp: int = Field(description="Unix epoch in milliseconds")
    key: bytes | None = None


class IndexDocument(BaseModel):
    """A document ready to be written to a search index.

    Attributes:
        index: Target index name.
        id: Deterministic document id (stable across redeliveries).
        body: JSON document body.
    """

    model_config = ConfigDict(frozen=True)

    index: str
    id: str
    body: dict[str, Any]


class BatchEntry(BaseModel):
    """One offset of a partition and the document it produced.

    ``document`` is None when the message was dead-lettered by the mapper; the
    entry still moves the partition cursor forward.
    """

    model_config = ConfigDict(frozen=True)

    offset: int
    document: IndexDocument | None = None


class Batch(BaseModel):
    """An ordered run of entries from one partition awaiting a flush."""

    model_config = ConfigDict(frozen=True)

    topic: str
    partition: int
    entries: tuple[BatchEntry, ...]

    @property
    def documents(self) -> list[tuple[int, IndexDocument]]:
        """(offset, document) pairs in batch order, skipping dead-lettered offsets."""
        return [(e.offset, e.document) for e in self.entries if e.document is not None]

    @property
    def first_offset(self) -> int:
        return self.entries[0].offset

    @property
    def last_offset(self) -> int:
        return self.entries[-1].offset

    @property
    def commit_offset(self) -> int:
        """Offset to commit once the batch is resolved (next offset to read)."""
        return self.last_offset + 1

    def __len__(self) -> int:
        return len(self.entries)


class WriteStatus(str, Enum):
    """Per-document state of a write.

    Attributes:
        PENDING: Not yet attempted.
        ACCEPTED: Durably written by the search engine.
        RETRYABLE_FAILURE: Transient rejection; will be re-sent.
        PERMANENT_FAILURE: Rejected for good (or retries exhausted); dead-lettered.
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"

    @property
    def is_final(self) -> bool:
        return self in (WriteStatus.ACCEPTED, WriteStatus.PERMANENT_FAILURE)


class WriteOutcome(BaseModel):
    """Result of writing one document of a batch."""

    offset: int
    document_id: str
    index: str
    status: WriteStatus = WriteStatus.PENDING
    attempts: int = 0
    error: str | None = None


class PartitionId(NamedTuple):
    """A topic-partition."""

    topic: str
    partition: int

    def __str__(self) -> str:
        return f"{self.topic}[{self.partition}]"
