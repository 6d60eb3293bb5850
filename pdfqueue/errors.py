"""
Error taxonomy for the job queue.

Connection-level errors are retried by the broker connection itself and only
surface to callers when a command cannot be buffered. Validation errors are
raised synchronously from enqueue. Job-level errors are recorded on the job.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class ConnectionUnavailable(QueueError):
    """The broker cannot be reached and the command could not be buffered."""


class QueueNotReady(QueueError):
    """The queue's bookkeeping structures are not initialized yet."""


class InvalidPayload(QueueError, ValueError):
    """The job payload or options failed validation. Never retried."""


class JobNotFound(QueueError, LookupError):
    """No job exists with the given id."""


class HandlerError(QueueError):
    """
    A job handler failed.

    Raised from wait_for_result when the job ended up failed; carries the
    job id and the recorded reason.
    """

    def __init__(self, message: str, job_id: str | None = None, attempts: int | None = None):
        super().__init__(message)
        self.job_id = job_id
        self.attempts = attempts


class StalledTooManyTimes(HandlerError):
    """A job lost its worker lease more times than allowed."""


class JobWaitTimeout(QueueError, TimeoutError):
    """A caller's wait for a job result expired. The job is unaffected."""

    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for job {job_id}")
        self.job_id = job_id
        self.timeout = timeout


class LockLost(QueueError):
    """The worker no longer owns the lease of the job it is acking."""
