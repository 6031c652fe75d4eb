"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    debug: bool = Field(default=False, description="Enable debug mode")
    log_json: bool = Field(default=True, description="Render logs as JSON (ignored in debug)")

    # Kafka
    kafka_bootstrap_servers: str = Field(
        default="localhost:9092", description="Kafka bootstrap servers (comma-separated)"
    )
    kafka_topics: Annotated[list[str], NoDecode] = Field(
        default=["events"], description="Topics to consume"
    )
    kafka_consumer_group: str = Field(default="index-sync", description="Kafka consumer group ID")
    kafka_auto_offset_reset: str = Field(
        default="earliest", description="Where to start when the group has no committed offset"
    )
    kafka_poll_timeout_ms: int = Field(default=1000, description="Max wait for one partition poll")
    kafka_max_poll_records: int = Field(default=500, description="Max records per partition poll")
    kafka_session_timeout_ms: int = Field(default=30000, description="Group session timeout")
    kafka_max_poll_interval_ms: int = Field(
        default=300000, description="Max interval between polls before the member is evicted"
    )
    dead_letter_topic: str | None = Field(
        default=None, description="Kafka topic receiving dead-lettered messages (log only if unset)"
    )

    # Elasticsearch
    elasticsearch_url: str = Field(
        default="http://localhost:9200", description="Elasticsearch base URL"
    )
    elasticsearch_username: str | None = Field(default=None, description="Basic auth user")
    elasticsearch_password: str | None = Field(default=None, description="Basic auth password")
    elasticsearch_timeout: float = Field(default=30.0, description="Request timeout in seconds")

    # Document mapping
    index_prefix: str | None = Field(
        default=None, description="Index name prefix; defaults to the message topic"
    )
    index_date_format: str = Field(
        default="%Y.%m.%d", description="strftime format of the date suffix in index names"
    )
    id_field: str | None = Field(
        default=None, description="Payload field used as document id when present"
    )
    required_fields: Annotated[list[str], NoDecode] = Field(
        default_factory=list, description="Payload fields that must be present"
    )

    # Batching and writes
    batch_max_size: int = Field(default=500, ge=1, description="Max documents per batch")
    batch_max_wait_ms: int = Field(default=5000, ge=1, description="Max batch age before flush")
    max_in_flight_batches: int = Field(
        default=1, ge=1, description="Batches a partition may have outstanding at the writer"
    )
    retry_max_attempts: int = Field(default=5, ge=1, description="Write attempts per document")
    retry_base_delay_ms: int = Field(default=200, description="Initial retry backoff")
    retry_max_delay_ms: int = Field(default=10000, description="Retry backoff ceiling")
    connect_retry_max_delay_ms: int = Field(
        default=30000, description="Backoff ceiling while the search engine is unreachable"
    )

    # Retention
    sweep_enabled: bool = Field(default=True, description="Run the retention sweeper")
    sweep_interval_seconds: float = Field(default=3600.0, description="Seconds between sweeps")
    retention_days: int = Field(default=15, ge=0, description="Days to keep an index")
    index_patterns: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Index patterns the sweeper manages; defaults to '<prefix>-*' per topic",
    )
    snapshot_repository: str | None = Field(
        default=None, description="Snapshot repository to back up indices before deletion"
    )
    snapshot_poll_interval_seconds: float = Field(
        default=10.0, description="Wait between snapshot status checks"
    )

    # Lifecycle
    shutdown_timeout_seconds: float = Field(
        default=30.0, description="Grace period for in-flight work on shutdown"
    )

    # Health / metrics HTTP sidecar
    http_enabled: bool = Field(default=True, description="Serve /health and /metrics")
    http_host: str = Field(default="0.0.0.0", description="HTTP sidecar host")
    http_port: int = Field(default=8080, description="HTTP sidecar port")

    @field_validator("kafka_topics", "index_patterns", "required_fields", mode="before")
    @classmethod
    def parse_list(cls, v: str | list[str]) -> list[str]:
        """Parse list settings from environment variables.

        Supports comma-separated strings or JSON arrays.
        """
        if isinstance(v, str):
            if v.startswith("["):
                import json

                parsed = json.loads(v)
                if not isinstance(parsed, list):
                    raise ValueError("Expected a list")
                return parsed
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("kafka_auto_offset_reset")
    @classmethod
    def validate_offset_reset(cls, v: str) -> str:
        if v not in ("earliest", "latest"):
            raise ValueError(f"auto offset reset must be 'earliest' or 'latest', got '{v}'")
        return v

    @property
    def bootstrap_servers(self) -> list[str]:
        return [s.strip() for s in self.kafka_bootstrap_servers.split(",") if s.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()
