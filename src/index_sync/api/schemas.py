"""Response schemas for the HTTP sidecar."""

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status: 'healthy' or 'degraded'")
    version: str = Field(description="Service version")
    elasticsearch_connected: bool = Field(description="Whether Elasticsearch is responsive")
    state: str = Field(description="Lifecycle state of the service")
    assigned_partitions: list[str] = Field(default_factory=list)
    committed_offsets: dict[str, int | None] = Field(default_factory=dict)
    last_sweep: dict[str, Any] | None = Field(
        default=None, description="Report of the most recent retention sweep"
    )
