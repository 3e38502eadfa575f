"""
Health check routes.
"""

from fastapi import APIRouter
from fastapi.responses import Response

from ai_jobs import __version__
from ai_jobs.api.deps import ServicesDep
from ai_jobs.types.api import HealthResponse
from ai_jobs.types.job import utcnow

router = APIRouter(tags=["Health"])


def _state(ok: bool) -> str:
    return "healthy" if ok else "unhealthy"


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API, the queue store and the job registry.",
)
async def health_check(services: ServicesDep) -> HealthResponse:
    """
    Perform a health check.

    Returns:
        HealthResponse with service status.
    """
    queue_ok = await services.queue.ping()
    registry_ok = await services.registry.ping()

    return HealthResponse(
        status="healthy" if queue_ok and registry_ok else "degraded",
        version=__version__,
        queue=_state(queue_ok),
        registry=_state(registry_ok),
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(services: ServicesDep) -> dict:
    """Kubernetes readiness probe endpoint."""
    ready = await services.queue.ping() and await services.registry.ping()
    return {"ready": ready}


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
async def metrics(services: ServicesDep) -> Response:
    """Expose Prometheus metrics."""
    collector = services.metrics
    return Response(
        content=collector.get_metrics(),
        media_type=collector.get_content_type(),
    )
