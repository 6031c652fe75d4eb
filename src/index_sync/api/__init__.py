"""HTTP sidecar API."""

from index_sync.api.routes import router

__all__ = ["router"]
