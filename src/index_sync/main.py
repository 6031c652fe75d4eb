"""index-sync service entry point."""

import asyncio
import logging

from fastapi import FastAPI

from index_sync import __version__
from index_sync.api import router
from index_sync.config import Settings, get_settings
from index_sync.coordination.coordinator import Coordinator

logger = logging.getLogger(__name__)


def create_app(coordinator: Coordinator) -> FastAPI:
    """Create the health and metrics application.

    The coordinator owns the service lifecycle; the app only reads from it.

    Args:
        coordinator: Running service coordinator.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="index-sync",
        description="Health and metrics endpoints of the Kafka to Elasticsearch sync service",
        version=__version__,
        debug=coordinator.settings.debug,
    )
    app.state.coordinator = coordinator
    app.include_router(router)
    return app


async def serve(settings: Settings) -> int:
    """Run the service until it is told to stop.

    Returns:
        Process exit code.
    """
    coordinator = Coordinator(settings)
    coordinator.install_signal_handlers()
    return await coordinator.run(app=create_app(coordinator))


def run(settings: Settings | None = None) -> int:
    """Run the service in a fresh event loop and return its exit code."""
    settings = settings or get_settings()
    code = asyncio.run(serve(settings))
    logger.info(f"index-sync exiting with code {code}")
    return code
