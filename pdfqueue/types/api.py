"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from pdfqueue.constants import JOB_GENERATE_PDF, BrokerState, JobState
from pdfqueue.types.job import Job, JobOptions


class CreateJobRequest(BaseModel):
    """Request body for submitting a job."""

    name: str = Field(default=JOB_GENERATE_PDF, description="Job type")
    payload: dict[str, Any] = Field(..., description="Job payload data")
    options: JobOptions | None = Field(
        default=None, description="Overrides for the queue's default job options"
    )


class CreateJobResponse(BaseModel):
    """Response body after submitting a job."""

    id: str
    name: str
    state: JobState
    created_at: datetime
    created: bool = True
    message: str = "Job created successfully"


class JobResponse(BaseModel):
    """Full job details response."""

    id: str
    queue: str
    name: str
    payload: Any
    state: JobState
    priority: int
    attempts: int
    max_attempts: int
    stalled_count: int
    progress: int
    result: Any = None
    error: str | None = None
    created_at: datetime
    processed_at: datetime | None = None
    finished_at: datetime | None = None
    delay_until: datetime | None = None
    lock_expires_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job, state: JobState | None = None) -> "JobResponse":
        return cls(
            id=job.id,
            queue=job.queue,
            name=job.name,
            payload=job.payload,
            state=state or job.state,
            priority=job.options.priority,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            stalled_count=job.stalled_count,
            progress=job.progress,
            result=job.result,
            error=job.error,
            created_at=job.created_at,
            processed_at=job.processed_at,
            finished_at=job.finished_at,
            delay_until=job.delay_until,
            lock_expires_at=job.lock_expires_at,
        )


class JobResultResponse(BaseModel):
    """Result of a completed job."""

    id: str
    state: JobState
    result: Any = None


class JobListResponse(BaseModel):
    """Paginated list of jobs in one state."""

    jobs: list[JobResponse]
    state: JobState
    total: int
    page: int
    page_size: int
    has_next: bool


class RetryJobRequest(BaseModel):
    """Request body for retrying a failed job."""

    reset_attempts: bool = Field(
        default=True, description="Reset attempt and stalled counters to 0"
    )


class RetryJobResponse(BaseModel):
    """Response body after retrying a job."""

    id: str
    state: JobState
    attempts: int
    message: str = "Job queued for retry"


class QueueStatsResponse(BaseModel):
    """Job counts per state."""

    queue: str
    paused: bool
    counts: dict[str, int]


class CleanQueueRequest(BaseModel):
    """Request body for deleting old finished jobs."""

    state: JobState = Field(default=JobState.COMPLETED, description="completed or failed")
    grace_ms: int = Field(default=0, ge=0, description="Keep jobs finished within this window")
    limit: int = Field(default=0, ge=0, description="Maximum jobs to delete (0 = no limit)")


class CleanQueueResponse(BaseModel):
    """Response body after cleaning."""

    state: JobState
    removed: list[str]
    count: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    broker_state: BrokerState
    queue_ready: bool
    paused: bool | None = None
    last_error: str | None = None
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
