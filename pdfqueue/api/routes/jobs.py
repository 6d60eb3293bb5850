"""
Job management routes.
"""

import logging

from fastapi import APIRouter, HTTPException, Query, Response, status

from pdfqueue.api.dependencies import QueueDep, TenantId
from pdfqueue.config import get_settings
from pdfqueue.constants import API_V1_PREFIX, JobState
from pdfqueue.errors import JobNotFound, QueueNotReady
from pdfqueue.queue import Queue
from pdfqueue.types.api import (
    CreateJobRequest,
    CreateJobResponse,
    ErrorResponse,
    JobListResponse,
    JobResponse,
    JobResultResponse,
    RetryJobRequest,
    RetryJobResponse,
)
from pdfqueue.types.job import Job

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


async def _require_job(queue: Queue, job_id: str) -> Job:
    job = await queue.get_job(job_id)
    if job is None:
        raise JobNotFound(f"Job {job_id} not found")
    return job


def _job_to_response(job: Job) -> JobResponse:
    """Convert a Job to a JobResponse, reporting expired leases as stalled."""
    return JobResponse.from_job(job, JobState.STALLED if job.is_stalled else None)


@router.post(
    "",
    response_model=CreateJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a job",
    description=(
        "Submit a new job to the queue. Passing options.jobId makes the "
        "submission idempotent while the earlier job is unfinished."
    ),
    responses={
        200: {"model": CreateJobResponse, "description": "Existing job returned"},
        422: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def create_job(
    request: CreateJobRequest,
    response: Response,
    queue: QueueDep,
    tenant_id: TenantId,
) -> CreateJobResponse:
    """
    Create a new job.

    Readiness is checked first; a queue that does not become ready within
    the configured wait answers 503 instead of buffering the request.

    Args:
        request: Job submission request.
        response: Used to downgrade the status to 200 for existing jobs.
        queue: The application queue.
        tenant_id: Optional tenant, stored in the payload as tenantId.

    Returns:
        CreateJobResponse with job details.
    """
    settings = get_settings()

    if not queue.is_ready():
        await queue.connection.wait_until_ready(settings.api_enqueue_ready_timeout_seconds)
        if not queue.is_ready():
            raise QueueNotReady(f"Queue {queue.name} is not ready to accept jobs")

    payload = dict(request.payload)
    if tenant_id is not None:
        payload["tenantId"] = tenant_id

    job = await queue.enqueue(request.name, payload, request.options)

    if not job.created:
        response.status_code = status.HTTP_200_OK

    return CreateJobResponse(
        id=job.id,
        name=job.name,
        state=job.state,
        created_at=job.created_at,
        created=job.created,
        message="Job created successfully" if job.created else "Job already exists (idempotent)",
    )


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs in one state.",
)
async def list_jobs(
    queue: QueueDep,
    state: JobState = Query(default=JobState.WAITING),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> JobListResponse:
    """
    List jobs in a state.

    Args:
        queue: The application queue.
        state: State filter.
        page: Page number (1-indexed).
        page_size: Number of items per page.

    Returns:
        JobListResponse with paginated jobs.
    """
    start = (page - 1) * page_size
    counts = await queue.get_job_counts()
    total = counts.get(state.value, 0)
    jobs = await queue.list_jobs(state, start, start + page_size - 1)

    return JobListResponse(
        jobs=[_job_to_response(job) for job in jobs],
        state=state,
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
    responses={404: {"model": ErrorResponse}},
)
async def get_job(job_id: str, queue: QueueDep) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        JobNotFound: If the job does not exist (404).
    """
    return _job_to_response(await _require_job(queue, job_id))


@router.get(
    "/{job_id}/result",
    response_model=JobResultResponse,
    summary="Wait for a job result",
    description="Block until the job finishes or the timeout elapses.",
    responses={
        404: {"model": ErrorResponse},
        424: {"model": ErrorResponse, "description": "The job failed"},
        504: {"model": ErrorResponse, "description": "The job did not finish in time"},
    },
)
async def get_job_result(
    job_id: str,
    queue: QueueDep,
    timeout: float = Query(default=30.0, gt=0, le=300),
) -> JobResultResponse:
    """
    Wait for a job's result.

    Timing out abandons only this request; the job keeps running.

    Args:
        job_id: The job id.
        queue: The application queue.
        timeout: Seconds to wait.

    Returns:
        JobResultResponse with the stored result.
    """
    result = await queue.wait_for_result(job_id, timeout)
    return JobResultResponse(id=job_id, state=JobState.COMPLETED, result=result)


@router.post(
    "/{job_id}/retry",
    response_model=RetryJobResponse,
    summary="Retry a failed job",
    description="Move a failed job back to the waiting state.",
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def retry_job(
    job_id: str,
    queue: QueueDep,
    request: RetryJobRequest = RetryJobRequest(),
) -> RetryJobResponse:
    """
    Retry a failed job.

    Args:
        job_id: The job id.
        queue: The application queue.
        request: Retry request options.

    Returns:
        RetryJobResponse with updated job info.

    Raises:
        HTTPException: If the job is not failed.
    """
    job = await _require_job(queue, job_id)

    if job.state is not JobState.FAILED or not await queue.retry(job_id, request.reset_attempts):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Job is not failed (current state: {job.state})",
        )

    updated = await _require_job(queue, job_id)
    logger.info("Job retried", extra={"job_id": job_id, "queue": queue.name})

    return RetryJobResponse(
        id=updated.id,
        state=updated.state,
        attempts=updated.attempts,
    )


@router.delete(
    "/{job_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove a job",
    description="Delete a job that is not currently being processed.",
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def remove_job(job_id: str, queue: QueueDep) -> Response:
    """
    Remove a job.

    Raises:
        JobNotFound: If the job does not exist (404).
        LockLost: If a worker holds the job (409).
    """
    if not await queue.remove(job_id):
        raise JobNotFound(f"Job {job_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
