"""
Job-related type definitions.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pdfqueue.constants import (
    KEEP_ALL,
    MAX_PRIORITY,
    MIN_PRIORITY,
    TERMINAL_STATES,
    BackoffType,
    BrokerState,
    JobState,
)
from pdfqueue.errors import HandlerError, StalledTooManyTimes


def now_ms() -> int:
    """Current UTC time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def from_ms(value: str | int | float | None) -> datetime | None:
    """Convert epoch milliseconds (as stored in the broker) to a datetime."""
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(float(value)) / 1000, tz=timezone.utc)


class _OptionsModel(BaseModel):
    """Accepts both snake_case and camelCase keys (removeOnComplete, jobId, ...)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


class BackoffOptions(_OptionsModel):
    """
    Delay strategy between a failed attempt and its retry.

    fixed: always `delay` ms.
    exponential: `delay * 2 ** (attempts_made - 1)` ms.
    Both are capped at `max_delay` when set.
    """

    type: BackoffType = BackoffType.FIXED
    delay: int = Field(default=0, ge=0)
    max_delay: int | None = Field(default=None, ge=0)

    def compute_delay(self, attempts_made: int) -> int:
        """
        Get the retry delay after the given number of attempts.

        Args:
            attempts_made: Attempts executed so far, including the failed one.

        Returns:
            Delay in milliseconds.
        """
        if self.type is BackoffType.EXPONENTIAL:
            delay = self.delay * 2 ** max(0, attempts_made - 1)
        else:
            delay = self.delay

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class JobOptions(_OptionsModel):
    """
    Per-job options.

    Every option a worker consults is stored on the job, resolved at enqueue
    time from the queue defaults and the caller's overrides.
    """

    attempts: int = Field(default=1, ge=1)
    backoff: BackoffOptions = Field(default_factory=BackoffOptions)
    remove_on_complete: int = Field(default=KEEP_ALL, ge=KEEP_ALL)
    remove_on_fail: int = Field(default=KEEP_ALL, ge=KEEP_ALL)
    delay: int = Field(default=0, ge=0)
    priority: int = Field(default=MIN_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    job_id: str | None = Field(default=None, min_length=1, max_length=256)

    def merged_with(self, overrides: "JobOptions | None") -> "JobOptions":
        """Apply the fields explicitly set on `overrides` on top of these defaults."""
        base = self.model_copy(update={"job_id": None})
        if overrides is None:
            return base
        updates = {name: getattr(overrides, name) for name in overrides.model_fields_set}
        return base.model_copy(update=updates)


class Job(BaseModel):
    """
    A job as persisted in the broker.

    Handles are snapshots; the broker stays the source of truth.
    """

    id: str
    queue: str
    name: str
    payload: Any = None
    state: JobState
    options: JobOptions
    attempts: int = 0
    stalled_count: int = 0
    progress: int = 0
    result: Any = None
    error: str | None = None
    failure_kind: str | None = None
    created_at: datetime
    processed_at: datetime | None = None
    finished_at: datetime | None = None
    delay_until: datetime | None = None
    lock_token: str | None = None
    lock_expires_at: datetime | None = None

    # False when enqueue returned an existing job for a duplicate job_id
    created: bool = True

    @property
    def max_attempts(self) -> int:
        return self.options.attempts

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_stalled(self) -> bool:
        """Active with an expired lease, not yet recovered by the watchdog."""
        return (
            self.state is JobState.ACTIVE
            and self.lock_expires_at is not None
            and self.lock_expires_at < datetime.now(timezone.utc)
        )

    def failure(self) -> HandlerError:
        """The exception describing why this failed job failed."""
        error_class = StalledTooManyTimes if self.failure_kind == "stalled" else HandlerError
        return error_class(
            self.error or "Job failed",
            job_id=self.id,
            attempts=self.attempts,
        )

    @classmethod
    def from_hash(
        cls,
        queue: str,
        data: dict[str, str],
        lock_expires_at: float | None = None,
    ) -> "Job":
        """
        Build a Job from its broker hash.

        Args:
            queue: The queue name.
            data: Field map as returned by HGETALL.
            lock_expires_at: Lease expiry score from the active set, if any.
        """
        return cls(
            id=data["id"],
            queue=queue,
            name=data["name"],
            payload=json.loads(data["data"]) if data.get("data") else None,
            state=JobState(data["state"]),
            options=JobOptions.model_validate_json(data["opts"]),
            attempts=int(data.get("attempts") or 0),
            stalled_count=int(data.get("stalled_count") or 0),
            progress=int(data.get("progress") or 0),
            result=json.loads(data["result"]) if data.get("result") else None,
            error=data.get("error") or None,
            failure_kind=data.get("failure_kind") or None,
            created_at=from_ms(data["created_at"]),
            processed_at=from_ms(data.get("processed_at")),
            finished_at=from_ms(data.get("finished_at")),
            delay_until=from_ms(data.get("delay_until")),
            lock_token=data.get("lock_token") or None,
            lock_expires_at=from_ms(lock_expires_at),
        )


ProgressReporter = Callable[[int], Awaitable[bool]]


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: str
    name: str
    attempt: int
    max_attempts: int
    payload: Any
    lock_token: str
    worker_id: str
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)
    progress_reporter: ProgressReporter | None = None

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)

    @property
    def is_cancelled(self) -> bool:
        """Set when the lease was lost or the worker is shutting down."""
        return self.cancelled.is_set()

    async def report_progress(self, progress: int) -> bool:
        """
        Persist a progress percentage on the job.

        Returns:
            False if the worker no longer holds the job's lease.
        """
        if self.progress_reporter is None:
            return True
        return await self.progress_reporter(max(0, min(100, int(progress))))


# Handlers return any JSON-serialisable value; raising marks the attempt failed
JobHandler = Callable[[JobContext], Awaitable[Any]]


class HealthStatus(BaseModel):
    """Answer to "can I enqueue right now?"."""

    broker_state: BrokerState
    queue_ready: bool
    last_error: str | None = None
    paused: bool | None = None
