"""Dead-letter path for messages and documents that cannot be indexed."""

import base64
import logging
from typing import Any, Protocol

from index_sync.indexing.types import Message, WriteOutcome
from index_sync.utils.metrics import record_dead_letter

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def send_event(self, topic: str, key: str, message: dict[str, Any]) -> None: ...


class DeadLetterSink:
    """Records skipped items without blocking the pipeline.

    Every dead letter is emitted as a structured ``dead_letter`` log record and
    counted in metrics. When a dead-letter topic is configured the record is
    also published there; a publish failure is logged and never propagates,
    because the source offset must still advance.
    """

    def __init__(
        self,
        publisher: EventPublisher | None = None,
        topic: str | None = None,
    ) -> None:
        """Initialize the sink.

        Args:
            publisher: Optional producer used to publish dead letters.
            topic: Dead-letter topic; publishing is disabled when None.
        """
        self.publisher = publisher
        self.topic = topic

    async def message_rejected(self, message: Message, reason: str, error: str) -> None:
        """A message could not be mapped to a document."""
        record = {
            "stage": "mapping",
            "reason": reason,
            "error": error,
            "topic": message.topic,
            "partition": message.partition,
            "offset": message.offset,
            "timestamp": message.timestamp,
            "payload_b64": base64.b64encode(message.value).decode("ascii"),
        }
        await self._emit(message.topic, reason, record)

    async def document_rejected(
        self, topic: str, partition: int, outcome: WriteOutcome
    ) -> None:
        """The search engine permanently rejected a document."""
        record = {
            "stage": "write",
            "reason": "permanent_failure",
            "error": outcome.error,
            "topic": topic,
            "partition": partition,
            "offset": outcome.offset,
            "index": outcome.index,
            "document_id": outcome.document_id,
            "attempts": outcome.attempts,
        }
        await self._emit(topic, "permanent_failure", record)

    async def _emit(self, topic: str, reason: str, record: dict[str, Any]) -> None:
        logger.warning("dead_letter", extra=record)
        record_dead_letter(topic, reason)

        if self.publisher is None or self.topic is None:
            return

        key = f"{record['topic']}:{record['partition']}:{record['offset']}"
        try:
            await self.publisher.send_event(self.topic, key, record)
        except Exception as e:
            logger.error(f"Failed to publish dead letter {key} to {self.topic}: {e}", exc_info=True)
