"""
FastAPI application entry point.
"""

import logging
import time
from collections.abc import Callable
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from pdfqueue import __version__
from pdfqueue.api.routes import health_router, jobs_router, queue_router
from pdfqueue.broker import BrokerConnection
from pdfqueue.config import get_settings
from pdfqueue.errors import (
    ConnectionUnavailable,
    HandlerError,
    InvalidPayload,
    JobNotFound,
    JobWaitTimeout,
    LockLost,
    QueueError,
    QueueNotReady,
)
from pdfqueue.observability.logging import setup_logging
from pdfqueue.observability.metrics import get_metrics, setup_metrics
from pdfqueue.observability.tracing import instrument_fastapi, setup_tracing
from pdfqueue.queue import Queue

logger = logging.getLogger(__name__)

# Checked in order; the first matching class wins
ERROR_STATUS_CODES: list[tuple[type[QueueError], int]] = [
    (InvalidPayload, 422),
    (QueueNotReady, 503),
    (ConnectionUnavailable, 503),
    (JobWaitTimeout, 504),
    (JobNotFound, 404),
    (LockLost, 409),
    (HandlerError, 424),
]


def status_for_error(error: QueueError) -> int:
    """HTTP status code for a queue error."""
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    """Render queue errors as ErrorResponse bodies."""
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.warning(
            "Request failed",
            extra={"path": request.url.path, "error": type(exc).__name__, "detail": str(exc)},
        )
    return JSONResponse(
        status_code=status_code,
        content={"error": type(exc).__name__, "detail": str(exc)},
    )


async def metrics_middleware(request: Request, call_next: Callable):
    """Record request count and latency per route template."""
    start = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    get_metrics().record_api_request(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
        duration_seconds=time.perf_counter() - start,
    )
    return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events. When the app was created with a
    queue, that queue's connection is left to its owner.
    """
    # Startup
    setup_logging("api")
    setup_metrics()
    setup_tracing()

    connection: BrokerConnection | None = None
    if getattr(app.state, "queue", None) is None:
        settings = get_settings()
        connection = BrokerConnection(settings)
        await connection.connect()
        queue = Queue(settings.queue_name, connection, settings=settings)
        await queue.init()
        app.state.queue = queue

    logger.info("Application started")

    yield

    # Shutdown
    if connection is not None:
        await app.state.queue.shutdown()
        await connection.close()
        app.state.queue = None
    logger.info("Application shutdown")


def create_app(queue: Queue | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        queue: An initialized queue to serve. When omitted, the lifespan
            connects to the broker and creates one from settings.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="PDF Generation Queue API",
        description="Submit and track HubSpot PDF generation jobs",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.queue = queue

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(BaseHTTPMiddleware, dispatch=metrics_middleware)

    app.add_exception_handler(QueueError, queue_error_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(queue_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "pdfqueue.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
