"""API route handlers for health, readiness and metrics."""

import logging

from fastapi import APIRouter, Request, Response, status

from index_sync import __version__
from index_sync.api.schemas import HealthResponse
from index_sync.utils.metrics import get_content_type, get_metrics

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check service health and Elasticsearch connectivity.

    Args:
        request: FastAPI request object with app state.

    Returns:
        Health status including consumer and sweeper state.
    """
    coordinator = request.app.state.coordinator
    connected = False
    try:
        connected = await coordinator.es_client.health_check()
    except Exception as e:
        logger.error(f"Health check error: {e}")

    service = coordinator.status()
    return HealthResponse(
        status="healthy" if connected and service["state"] == "running" else "degraded",
        version=__version__,
        elasticsearch_connected=connected,
        **service,
    )


@router.get("/ready")
async def readiness_check(request: Request, response: Response) -> dict[str, str]:
    """Kubernetes readiness check.

    Args:
        request: FastAPI request object with app state.
        response: Outgoing response, set to 503 when not ready.

    Returns:
        Readiness status.
    """
    coordinator = request.app.state.coordinator
    state = coordinator.state.value
    if state != "running":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "reason": f"service is {state}"}

    if not await coordinator.es_client.health_check():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "reason": "elasticsearch health check failed"}
    return {"status": "ready"}


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Metrics in Prometheus text exposition format.
    """
    return Response(content=get_metrics(), media_type=get_content_type())
