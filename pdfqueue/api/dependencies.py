"""
Request dependencies shared by the routes.
"""

from typing import Annotated

from fastapi import Depends, Header, Request

from pdfqueue.constants import TENANT_ID_HEADER
from pdfqueue.errors import QueueNotReady
from pdfqueue.queue import Queue


def get_queue(request: Request) -> Queue:
    """
    FastAPI dependency returning the application's queue.

    Raises:
        QueueNotReady: If the lifespan has not created the queue yet.
    """
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise QueueNotReady("Queue is not configured")
    return queue


def get_tenant_id(
    tenant_id: Annotated[str | None, Header(alias=TENANT_ID_HEADER)] = None,
) -> str | None:
    """Tenant identifier supplied by the calling integration, if any."""
    return tenant_id.strip() if tenant_id and tenant_id.strip() else None


# Type aliases for dependency injection
QueueDep = Annotated[Queue, Depends(get_queue)]
TenantId = Annotated[str | None, Depends(get_tenant_id)]
