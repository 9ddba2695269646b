"""
Health check routes.
"""

from datetime import UTC, datetime

from fastapi import APIRouter
from fastapi.responses import Response

from jobengine import __version__
from jobengine.api.dependencies import Backends
from jobengine.exceptions import BackendUnavailable
from jobengine.observability.metrics import get_metrics
from jobengine.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and every queue connection.",
)
async def health_check(backends: Backends) -> HealthResponse:
    """
    Perform a health check.

    Probes each configured backend with a pending count on the default queue.
    """
    connections = {}
    for name in backends.names:
        try:
            await backends.connection(name).count_pending(backends.default_queue)
            connections[name] = "healthy"
        except BackendUnavailable:
            connections[name] = "unhealthy"

    healthy = all(state == "healthy" for state in connections.values())
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        connections=connections,
        timestamp=datetime.now(UTC),
    )


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """Kubernetes liveness probe endpoint."""
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics() -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
