"""Pure mapping from broker messages to index documents."""

import hashlib
import json
import re
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from index_sync.errors import MappingError
from index_sync.indexing.types import IndexDocument, Message

# Characters Elasticsearch forbids in index names, plus whitespace
_INVALID_INDEX_CHARS = re.compile(r'[\\/*?"<>|,#:\s]+')


def sanitize_index_name(name: str) -> str:
    """Lowercase an index name and replace characters Elasticsearch rejects.

    Args:
        name: Raw index name or prefix.

    Returns:
        A name safe to use as (part of) an Elasticsearch index name.
    """
    cleaned = _INVALID_INDEX_CHARS.sub("-", name.lower())
    return cleaned.lstrip("-_+") or "index"


class MapperConfig(BaseModel):
    """Configuration for document mapping."""

    index_prefix: str | None = Field(
        default=None, description="Index prefix; defaults to the message topic"
    )
    index_date_format: str = Field(default="%Y.%m.%d", description="Date suffix format")
    id_field: str | None = Field(default=None, description="Payload field holding the id")
    required_fields: list[str] = Field(default_factory=list, description="Mandatory fields")
    timestamp_field: str = Field(default="@timestamp", description="Field filled when absent")


class DocumentMapper:
    """Maps a Message to an IndexDocument.

    Stateless and deterministic: mapping the same message twice yields the same
    index name, id and body, so a redelivered message overwrites its earlier
    write instead of duplicating it.
    """

    def __init__(self, config: MapperConfig | None = None) -> None:
        self.config = config or MapperConfig()

    def map(self, message: Message) -> IndexDocument:
        """Map a message to an index document.

        Args:
            message: Raw broker message.

        Returns:
            The index document for this message.

        Raises:
            MappingError: If the payload is not a JSON object or lacks a
                required field.
        """
        payload = self._decode(message)

        missing = [f for f in self.config.required_fields if payload.get(f) in (None, "")]
        if missing:
            raise MappingError(
                f"missing required fields: {', '.join(missing)}", reason="missing_fields"
            )

        body = dict(payload)
        if self.config.timestamp_field not in body:
            body[self.config.timestamp_field] = _iso_timestamp(message.timestamp)

        return IndexDocument(
            index=self.index_for(message),
            id=self.document_id(message, payload),
            body=body,
        )

    def index_for(self, message: Message) -> str:
        """Target index: '<prefix>-<date of the message timestamp>'."""
        prefix = sanitize_index_name(self.config.index_prefix or message.topic)
        day = datetime.fromtimestamp(message.timestamp / 1000, tz=UTC)
        return f"{prefix}-{day.strftime(self.config.index_date_format)}"

    def document_id(self, message: Message, payload: dict[str, Any]) -> str:
        """Derive the document id.

        Uses the configured id field when present, otherwise a digest of the
        message identity (topic, partition, offset).
        """
        if self.config.id_field:
            value = payload.get(self.config.id_field)
            if value not in (None, ""):
                return str(value)
        identity = f"{message.topic}:{message.partition}:{message.offset}"
        return hashlib.sha1(identity.encode("utf-8")).hexdigest()

    @staticmethod
    def _decode(message: Message) -> dict[str, Any]:
        try:
            payload = json.loads(message.value.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise MappingError(f"payload is not UTF-8: {e}", reason="invalid_encoding") from e
        except json.JSONDecodeError as e:
            raise MappingError(f"payload is not valid JSON: {e}", reason="invalid_json") from e

        if not isinstance(payload, dict):
            raise MappingError(
                f"payload must be a JSON object, got {type(payload).__name__}",
                reason="not_an_object",
            )
        return payload


def _iso_timestamp(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=UTC).isoformat()
