"""
API routes module.
"""

from pdfqueue.api.routes.health import router as health_router
from pdfqueue.api.routes.jobs import router as jobs_router
from pdfqueue.api.routes.queue import router as queue_router

__all__ = ["jobs_router", "queue_router", "health_router"]
