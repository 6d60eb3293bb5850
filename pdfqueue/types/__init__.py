"""
Type definitions for the job queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from pdfqueue.types.api import (
    CleanQueueRequest,
    CleanQueueResponse,
    CreateJobRequest,
    CreateJobResponse,
    ErrorResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobResultResponse,
    QueueStatsResponse,
    RetryJobRequest,
    RetryJobResponse,
)
from pdfqueue.types.events import JobEvent
from pdfqueue.types.job import (
    BackoffOptions,
    HealthStatus,
    Job,
    JobContext,
    JobHandler,
    JobOptions,
)

__all__ = [
    # API types
    "CreateJobRequest",
    "CreateJobResponse",
    "JobResponse",
    "JobResultResponse",
    "JobListResponse",
    "RetryJobRequest",
    "RetryJobResponse",
    "QueueStatsResponse",
    "CleanQueueRequest",
    "CleanQueueResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "Job",
    "JobOptions",
    "BackoffOptions",
    "JobContext",
    "JobHandler",
    "HealthStatus",
    # Event types
    "JobEvent",
]
