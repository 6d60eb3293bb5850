"""
Queue administration routes.
"""

from fastapi import APIRouter, HTTPException, status

from pdfqueue.api.dependencies import QueueDep
from pdfqueue.constants import API_V1_PREFIX, JobState
from pdfqueue.queue import Queue
from pdfqueue.types.api import CleanQueueRequest, CleanQueueResponse, QueueStatsResponse

router = APIRouter(prefix=f"{API_V1_PREFIX}/queue", tags=["Queue"])


async def _stats(queue: Queue) -> QueueStatsResponse:
    return QueueStatsResponse(
        queue=queue.name,
        paused=await queue.is_paused(),
        counts=await queue.get_job_counts(),
    )


@router.get(
    "/stats",
    response_model=QueueStatsResponse,
    summary="Get queue statistics",
    description="Job counts per state.",
)
async def get_queue_stats(queue: QueueDep) -> QueueStatsResponse:
    return await _stats(queue)


@router.post(
    "/pause",
    response_model=QueueStatsResponse,
    summary="Pause the queue",
    description="Stop workers from claiming new jobs. Running jobs finish normally.",
)
async def pause_queue(queue: QueueDep) -> QueueStatsResponse:
    await queue.pause()
    return await _stats(queue)


@router.post(
    "/resume",
    response_model=QueueStatsResponse,
    summary="Resume the queue",
)
async def resume_queue(queue: QueueDep) -> QueueStatsResponse:
    await queue.resume()
    return await _stats(queue)


@router.post(
    "/clean",
    response_model=CleanQueueResponse,
    summary="Delete old finished jobs",
)
async def clean_queue(request: CleanQueueRequest, queue: QueueDep) -> CleanQueueResponse:
    """
    Delete completed or failed jobs older than the grace period.

    Raises:
        HTTPException: If the state is not a finished state.
    """
    if request.state not in (JobState.COMPLETED, JobState.FAILED):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only completed or failed jobs can be cleaned",
        )

    removed = await queue.clean(request.grace_ms, request.state, request.limit)
    return CleanQueueResponse(state=request.state, removed=removed, count=len(removed))
