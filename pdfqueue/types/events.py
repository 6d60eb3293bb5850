"""
Event type definitions for job lifecycle notifications.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from pdfqueue.constants import (
    EVENT_JOB_COMPLETED,
    EVENT_JOB_FAILED,
    EVENT_JOB_LOCK_LOST,
    EVENT_JOB_RETRYING,
    EVENT_JOB_STALLED,
    JobState,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobEvent(BaseModel):
    """
    Event emitted when a job changes state.
    Delivered to listeners registered on the worker pool or the watchdog.
    """

    event_type: str
    queue: str
    job_id: str
    job_name: str | None = None
    state: JobState
    timestamp: datetime
    data: dict[str, Any] | None = None

    @classmethod
    def job_completed(
        cls,
        queue: str,
        job_id: str,
        job_name: str,
        result: Any = None,
        duration_ms: float | None = None,
    ) -> "JobEvent":
        """Create a job completed event."""
        return cls(
            event_type=EVENT_JOB_COMPLETED,
            queue=queue,
            job_id=job_id,
            job_name=job_name,
            state=JobState.COMPLETED,
            timestamp=_utcnow(),
            data={"result": result, "duration_ms": duration_ms},
        )

    @classmethod
    def job_retrying(
        cls,
        queue: str,
        job_id: str,
        job_name: str,
        error: str,
        attempt: int,
        state: JobState,
    ) -> "JobEvent":
        """Create an event for a failed attempt that will be retried."""
        return cls(
            event_type=EVENT_JOB_RETRYING,
            queue=queue,
            job_id=job_id,
            job_name=job_name,
            state=state,
            timestamp=_utcnow(),
            data={"error": error, "attempt": attempt},
        )

    @classmethod
    def job_failed(
        cls,
        queue: str,
        job_id: str,
        error: str,
        attempts: int,
        job_name: str | None = None,
    ) -> "JobEvent":
        """Create a terminal failure event."""
        return cls(
            event_type=EVENT_JOB_FAILED,
            queue=queue,
            job_id=job_id,
            job_name=job_name,
            state=JobState.FAILED,
            timestamp=_utcnow(),
            data={"error": error, "total_attempts": attempts},
        )

    @classmethod
    def job_stalled(cls, queue: str, job_id: str, state: JobState) -> "JobEvent":
        """Create an event for a job whose lease expired."""
        return cls(
            event_type=EVENT_JOB_STALLED,
            queue=queue,
            job_id=job_id,
            state=state,
            timestamp=_utcnow(),
        )

    @classmethod
    def lock_lost(cls, queue: str, job_id: str, job_name: str) -> "JobEvent":
        """Create an event for a worker that lost a job's lease mid-run."""
        return cls(
            event_type=EVENT_JOB_LOCK_LOST,
            queue=queue,
            job_id=job_id,
            job_name=job_name,
            state=JobState.ACTIVE,
            timestamp=_utcnow(),
        )
