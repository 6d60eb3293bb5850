"""
Health check routes.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from pdfqueue import __version__
from pdfqueue.observability.metrics import get_metrics
from pdfqueue.types.api import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API, the broker connection and the queue.",
)
async def health_check(request: Request) -> HealthResponse:
    """
    Perform a health check.

    Never fails: broker errors are reported in the response body.

    Returns:
        HealthResponse with service status.
    """
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        return HealthResponse(
            status="unhealthy",
            version=__version__,
            broker_state="closed",
            queue_ready=False,
            last_error="Queue is not configured",
            timestamp=datetime.now(timezone.utc),
        )

    health = await queue.health_check()
    return HealthResponse(
        status="healthy" if health.queue_ready else "degraded",
        version=__version__,
        broker_state=health.broker_state,
        queue_ready=health.queue_ready,
        paused=health.paused,
        last_error=health.last_error,
        timestamp=datetime.now(timezone.utc),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to accept new jobs.",
)
async def readiness_check(request: Request) -> JSONResponse:
    """
    Kubernetes readiness probe endpoint.

    Returns:
        Ready status; 503 when jobs cannot be enqueued right now.
    """
    queue = getattr(request.app.state, "queue", None)
    ready = queue is not None and queue.is_ready()
    return JSONResponse(status_code=200 if ready else 503, content={"ready": ready})


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """
    Kubernetes liveness probe endpoint.

    Returns:
        Alive status.
    """
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
