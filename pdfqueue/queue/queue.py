"""
Durable job queue on top of the broker connection.

Producers call enqueue() and wait_for_result(); workers use the claim /
extend_lock / complete / fail primitives; the watchdog uses
recover_stalled(). Every state transition is a single Lua script, so the
broker is the only source of truth and no job state is cached here.
"""

import asyncio
import json
import logging
from typing import Any

from pydantic import ValidationError
from redis.asyncio import Redis

from pdfqueue.broker.connection import BrokerConnection
from pdfqueue.config import Settings, get_settings
from pdfqueue.constants import (
    SPAN_ENQUEUE_JOB,
    STALLED_REASON,
    BackoffType,
    JobState,
)
from pdfqueue.errors import (
    InvalidPayload,
    JobNotFound,
    JobWaitTimeout,
    LockLost,
    QueueNotReady,
)
from pdfqueue.observability.metrics import get_metrics
from pdfqueue.observability.tracing import get_tracer
from pdfqueue.queue import scripts
from pdfqueue.types.job import (
    BackoffOptions,
    HealthStatus,
    Job,
    JobOptions,
    from_ms,
    now_ms,
)

logger = logging.getLogger(__name__)


def default_job_options(settings: Settings | None = None) -> JobOptions:
    """
    Build the queue-wide default job options from settings.

    Args:
        settings: Settings to read; defaults to the cached settings.

    Returns:
        JobOptions applied to jobs that do not override them.
    """
    settings = settings or get_settings()
    return JobOptions(
        attempts=settings.job_attempts,
        backoff=BackoffOptions(
            type=BackoffType(settings.job_backoff_type),
            delay=settings.job_backoff_delay_ms,
            max_delay=settings.job_backoff_max_delay_ms,
        ),
        remove_on_complete=settings.job_remove_on_complete,
        remove_on_fail=settings.job_remove_on_fail,
    )


class QueueKeys:
    """Redis key names for one queue. See pdfqueue.queue.scripts for the layout."""

    def __init__(self, prefix: str, queue_name: str):
        self.prefix = f"{prefix}:{queue_name}"
        self.meta = f"{self.prefix}:meta"
        self.names = f"{self.prefix}:names"
        self.active = f"{self.prefix}:active"
        self.completed = f"{self.prefix}:completed"
        self.failed = f"{self.prefix}:failed"

    def job(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def wait(self, name: str) -> str:
        return f"{self.prefix}:wait:{name}"

    def delayed(self, name: str) -> str:
        return f"{self.prefix}:delayed:{name}"


class Queue:
    """
    Named, persistent work list.

    Lifecycle is explicit: construct with a BrokerConnection, call init()
    once the connection is open, shutdown() when done.
    """

    def __init__(
        self,
        name: str,
        connection: BrokerConnection,
        default_options: JobOptions | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.name = name
        self.keys = QueueKeys(settings.redis_key_prefix, name)
        self.default_options = default_options or default_job_options(settings)
        self._connection = connection
        self._wait_poll_interval = settings.queue_wait_poll_interval_ms / 1000
        self._initialized = False
        self._metrics = get_metrics()

    @property
    def connection(self) -> BrokerConnection:
        return self._connection

    async def init(self) -> None:
        """
        Create the queue's bookkeeping structures.

        Raises:
            ConnectionUnavailable: If the broker cannot be reached.
        """
        keys = self.keys

        async def _init(client: Redis) -> None:
            await client.hsetnx(keys.meta, "created_at", now_ms())
            await client.hset(keys.meta, "name", self.name)

        await self._connection.execute(_init)
        self._initialized = True
        logger.info("Queue initialized", extra={"queue": self.name})

    async def shutdown(self) -> None:
        """Mark the queue as no longer accepting work. The connection is not closed."""
        self._initialized = False
        logger.info("Queue shut down", extra={"queue": self.name})

    def is_ready(self) -> bool:
        """True once the broker is ready and init() has completed."""
        return self._initialized and self._connection.is_ready

    async def health_check(self) -> HealthStatus:
        """
        Report broker and queue readiness. Never raises.

        Returns:
            HealthStatus with broker state, queue readiness and last error.
        """
        broker_state = self._connection.state
        last_error = self._connection.last_error
        queue_ready = False
        paused = None

        if self.is_ready():
            keys = self.keys

            async def _probe(client: Redis) -> tuple[int, int]:
                exists = await client.exists(keys.meta)
                is_paused = await client.hexists(keys.meta, "paused")
                return exists, is_paused

            try:
                exists, is_paused = await asyncio.wait_for(
                    self._connection.execute(_probe),
                    timeout=1.0,
                )
                queue_ready = bool(exists)
                paused = bool(is_paused)
                if not queue_ready:
                    last_error = "Queue bookkeeping structures are missing"
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning("Queue health probe failed", extra={"queue": self.name, "error": last_error})
            broker_state = self._connection.state

        return HealthStatus(
            broker_state=broker_state,
            queue_ready=queue_ready,
            last_error=last_error,
            paused=paused,
        )

    async def enqueue(
        self,
        name: str,
        payload: Any,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> Job:
        """
        Persist a new job in the waiting (or delayed) state.

        Validation happens before any broker write. When options carry a
        job_id whose job is not terminal yet, the existing job is returned
        with `created` set to False.

        Args:
            name: Logical job type, e.g. "generate-pdf".
            payload: JSON-serialisable job data.
            options: Overrides applied on top of the queue defaults.

        Returns:
            The persisted Job.

        Raises:
            QueueNotReady: If init() has not completed.
            InvalidPayload: If the name, payload or options are invalid.
            ConnectionUnavailable: If the command could not be delivered.
        """
        if not self._initialized:
            raise QueueNotReady(f"Queue {self.name} is not initialized")

        if not isinstance(name, str) or not name or ":" in name:
            raise InvalidPayload(f"Invalid job name: {name!r}")

        try:
            data = json.dumps(payload, allow_nan=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"Payload is not JSON serialisable: {e}") from e

        resolved = self._resolve_options(options)
        created_at = now_ms()
        delay_until = created_at + resolved.delay if resolved.delay else 0
        opts = resolved.model_dump_json()
        args = [
            self.keys.prefix,
            resolved.job_id or "",
            name,
            data,
            opts,
            created_at,
            delay_until,
            resolved.priority,
            resolved.remove_on_complete,
            resolved.remove_on_fail,
        ]

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("job_name", name)

            job_id, created = await self._connection.execute(
                lambda client: client.register_script(scripts.ADD_JOB)(keys=[], args=args)
            )
            job_id = str(job_id)
            span.set_attribute("job_id", job_id)

        if not int(created):
            existing = await self.get_job(job_id)
            if existing is not None:
                existing.created = False
                logger.info(
                    "Returned existing job (idempotent)",
                    extra={"queue": self.name, "job_id": job_id, "state": existing.state.value},
                )
                return existing

        self._metrics.record_job_enqueued(self.name, name)
        logger.info(
            "Enqueued job",
            extra={
                "queue": self.name,
                "job_id": job_id,
                "job_name": name,
                "attempts": resolved.attempts,
                "delay_ms": resolved.delay,
            },
        )

        return Job(
            id=job_id,
            queue=self.name,
            name=name,
            payload=json.loads(data),
            state=JobState.DELAYED if delay_until else JobState.WAITING,
            options=resolved,
            created_at=from_ms(created_at),
            delay_until=from_ms(delay_until) if delay_until else None,
        )

    def _resolve_options(self, options: JobOptions | dict[str, Any] | None) -> JobOptions:
        if isinstance(options, dict):
            try:
                options = JobOptions.model_validate(options)
            except ValidationError as e:
                raise InvalidPayload(f"Invalid job options: {e}") from e
        elif options is not None and not isinstance(options, JobOptions):
            raise InvalidPayload(f"Invalid job options: {options!r}")
        return self.default_options.merged_with(options)

    async def get_job(self, job_id: str) -> Job | None:
        """Fetch a job snapshot, or None if it does not exist."""
        keys = self.keys

        async def _get(client: Redis) -> tuple[dict, float | None]:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hgetall(keys.job(job_id))
                pipe.zscore(keys.active, job_id)
                data, lock_expires_at = await pipe.execute()
            return data, lock_expires_at

        data, lock_expires_at = await self._connection.execute(_get)
        if not data:
            return None
        return Job.from_hash(self.name, data, lock_expires_at)

    async def get_state(self, job_id: str) -> JobState | None:
        """Current state; active jobs with an expired lease report STALLED."""
        job = await self.get_job(job_id)
        if job is None:
            return None
        if job.is_stalled:
            return JobState.STALLED
        return job.state

    async def wait_for_result(
        self,
        job_id: str,
        timeout: float,
        poll_interval: float | None = None,
    ) -> Any:
        """
        Wait until the job completes or fails.

        Abandoning the wait on timeout leaves the job untouched.

        Args:
            job_id: The job to wait for.
            timeout: Seconds to wait.
            poll_interval: Seconds between state checks.

        Returns:
            The stored job result.

        Raises:
            HandlerError: If the job failed (StalledTooManyTimes for stalls).
            JobWaitTimeout: If the timeout elapsed first.
            JobNotFound: If the job does not exist.
        """
        interval = poll_interval or self._wait_poll_interval
        try:
            async with asyncio.timeout(timeout):
                while True:
                    job = await self.get_job(job_id)
                    if job is None:
                        raise JobNotFound(f"Job {job_id} not found in queue {self.name}")
                    if job.state is JobState.COMPLETED:
                        return job.result
                    if job.state is JobState.FAILED:
                        raise job.failure()
                    await asyncio.sleep(interval)
        except TimeoutError:
            raise JobWaitTimeout(job_id, timeout) from None

    # ------------------------------------------------------------------
    # Worker primitives
    # ------------------------------------------------------------------

    async def claim(self, name: str, token: str, lock_duration_ms: int) -> Job | None:
        """
        Atomically move the next eligible job of `name` to active.

        Due delayed jobs are promoted first. Returns None when nothing is
        eligible or the queue is paused.
        """
        now = now_ms()
        args = [self.keys.prefix, name, token, now, now + lock_duration_ms]
        flat = await self._connection.execute(
            lambda client: client.register_script(scripts.CLAIM_JOB)(keys=[], args=args)
        )
        if not flat:
            return None

        data = dict(zip(flat[::2], flat[1::2]))
        return Job.from_hash(self.name, data, now + lock_duration_ms)

    async def extend_lock(self, job_id: str, token: str, lock_duration_ms: int) -> bool:
        """Renew the lease. False means the lock was lost."""
        args = [self.keys.prefix, job_id, token, now_ms() + lock_duration_ms]
        extended = await self._connection.execute(
            lambda client: client.register_script(scripts.EXTEND_LOCK)(keys=[], args=args)
        )
        return bool(int(extended))

    async def update_progress(self, job_id: str, token: str, progress: int) -> bool:
        args = [self.keys.prefix, job_id, token, progress]
        updated = await self._connection.execute(
            lambda client: client.register_script(scripts.UPDATE_PROGRESS)(keys=[], args=args)
        )
        return bool(int(updated))

    async def complete(self, job: Job, token: str, result: Any) -> None:
        """
        Mark an active job completed and apply its retention policy.

        Raises:
            InvalidPayload: If the result is not JSON serialisable.
            LockLost: If the caller no longer holds the job's lease.
        """
        try:
            encoded = json.dumps(result, allow_nan=False, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise InvalidPayload(f"Job result is not JSON serialisable: {e}") from e

        args = [self.keys.prefix, job.id, token, now_ms(), encoded]
        outcome = await self._connection.execute(
            lambda client: client.register_script(scripts.COMPLETE_JOB)(keys=[], args=args)
        )
        if int(outcome) < 0:
            raise LockLost(f"Lock for job {job.id} is no longer held")

    async def fail(self, job: Job, token: str, error: str, retry: bool = True) -> JobState:
        """
        Record a failed attempt and apply the retry policy.

        Args:
            job: The job as claimed (attempt count at claim time).
            token: The lease token.
            error: Human-readable failure reason.
            retry: False fails the job now, whatever attempts remain.

        Returns:
            DELAYED or WAITING when a retry is scheduled, FAILED otherwise.

        Raises:
            LockLost: If the caller no longer holds the job's lease.
        """
        attempts_made = job.attempts + 1
        now = now_ms()

        if retry and attempts_made < job.max_attempts:
            mode = "retry"
            retry_at = now + job.options.backoff.compute_delay(attempts_made)
        else:
            mode = "fail"
            retry_at = 0

        args = [self.keys.prefix, job.id, token, now, error, mode, retry_at]
        outcome = int(
            await self._connection.execute(
                lambda client: client.register_script(scripts.FAIL_JOB)(keys=[], args=args)
            )
        )
        if outcome < 0:
            raise LockLost(f"Lock for job {job.id} is no longer held")
        if outcome == 0:
            return JobState.FAILED
        return JobState.DELAYED if retry_at > now else JobState.WAITING

    async def release(self, job: Job, token: str) -> None:
        """
        Hand an active job back to waiting without counting an attempt.

        Used when a worker gives up a job it was told to abandon, e.g. on
        shutdown.

        Raises:
            LockLost: If the caller no longer holds the job's lease.
        """
        args = [self.keys.prefix, job.id, token]
        outcome = await self._connection.execute(
            lambda client: client.register_script(scripts.RELEASE_JOB)(keys=[], args=args)
        )
        if int(outcome) < 0:
            raise LockLost(f"Lock for job {job.id} is no longer held")

    async def recover_stalled(self, max_stalled_count: int) -> list[tuple[str, JobState]]:
        """
        Requeue or fail active jobs whose lease expired.

        Returns:
            (job_id, new_state) for each recovered job.
        """
        args = [self.keys.prefix, now_ms(), max_stalled_count, STALLED_REASON]
        flat = await self._connection.execute(
            lambda client: client.register_script(scripts.RECOVER_STALLED)(keys=[], args=args)
        )
        return [(job_id, JobState(state)) for job_id, state in zip(flat[::2], flat[1::2])]

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def retry(self, job_id: str, reset_attempts: bool = True) -> bool:
        """Move a failed job back to waiting. False if it is not failed."""
        args = [self.keys.prefix, job_id, "1" if reset_attempts else "0"]
        retried = await self._connection.execute(
            lambda client: client.register_script(scripts.RETRY_FAILED)(keys=[], args=args)
        )
        if int(retried):
            logger.info("Job retried", extra={"queue": self.name, "job_id": job_id})
            return True
        return False

    async def remove(self, job_id: str) -> bool:
        """
        Delete a job that is not active.

        Raises:
            LockLost: If the job is currently held by a worker.
        """
        args = [self.keys.prefix, job_id]
        removed = int(
            await self._connection.execute(
                lambda client: client.register_script(scripts.REMOVE_JOB)(keys=[], args=args)
            )
        )
        if removed < 0:
            raise LockLost(f"Job {job_id} is active and cannot be removed")
        return bool(removed)

    async def clean(self, grace_ms: int, state: JobState, limit: int = 0) -> list[str]:
        """
        Delete finished jobs older than the grace period.

        Args:
            grace_ms: Keep jobs that finished within this many milliseconds.
            state: COMPLETED or FAILED.
            limit: Maximum jobs to delete (0 = no limit).

        Returns:
            Ids of the deleted jobs.
        """
        if state not in (JobState.COMPLETED, JobState.FAILED):
            raise ValueError(f"Only finished jobs can be cleaned, got {state}")

        args = [self.keys.prefix, state.value, now_ms() - grace_ms, limit]
        removed = await self._connection.execute(
            lambda client: client.register_script(scripts.CLEAN_FINISHED)(keys=[], args=args)
        )
        logger.info(
            "Cleaned jobs",
            extra={"queue": self.name, "state": state.value, "removed": len(removed)},
        )
        return list(removed)

    async def pause(self) -> None:
        """Stop workers from claiming new jobs. In-flight jobs keep running."""
        await self._connection.execute(lambda client: client.hset(self.keys.meta, "paused", 1))
        logger.info("Queue paused", extra={"queue": self.name})

    async def resume(self) -> None:
        await self._connection.execute(lambda client: client.hdel(self.keys.meta, "paused"))
        logger.info("Queue resumed", extra={"queue": self.name})

    async def is_paused(self) -> bool:
        return bool(
            await self._connection.execute(lambda client: client.hexists(self.keys.meta, "paused"))
        )

    async def job_names(self) -> list[str]:
        names = await self._connection.execute(lambda client: client.smembers(self.keys.names))
        return sorted(names)

    async def get_job_counts(self) -> dict[str, int]:
        """Count jobs per state across all job names."""
        keys = self.keys
        names = await self.job_names()

        async def _counts(client: Redis) -> list[int]:
            async with client.pipeline(transaction=True) as pipe:
                for job_name in names:
                    pipe.zcard(keys.wait(job_name))
                    pipe.zcard(keys.delayed(job_name))
                pipe.zcard(keys.active)
                pipe.zcount(keys.active, "-inf", now_ms())
                pipe.zcard(keys.completed)
                pipe.zcard(keys.failed)
                return await pipe.execute()

        replies = await self._connection.execute(_counts)
        per_name, totals = replies[: 2 * len(names)], replies[2 * len(names):]
        active, stalled, completed, failed = totals

        counts = {
            JobState.WAITING.value: sum(per_name[::2]),
            JobState.DELAYED.value: sum(per_name[1::2]),
            JobState.ACTIVE.value: active,
            JobState.STALLED.value: stalled,
            JobState.COMPLETED.value: completed,
            JobState.FAILED.value: failed,
        }
        self._metrics.update_queue_depth(self.name, counts[JobState.WAITING.value])
        return counts

    async def list_jobs(self, state: JobState, start: int = 0, end: int = 19) -> list[Job]:
        """
        List jobs in a state.

        Finished jobs are returned most recent first; waiting, delayed and
        active jobs in processing order.
        """
        keys = self.keys
        names = await self.job_names() if state in (JobState.WAITING, JobState.DELAYED) else []

        async def _ids(client: Redis) -> list[str]:
            if state is JobState.COMPLETED:
                return await client.zrevrange(keys.completed, start, end)
            if state is JobState.FAILED:
                return await client.zrevrange(keys.failed, start, end)
            if state in (JobState.ACTIVE, JobState.STALLED):
                ceiling = now_ms() if state is JobState.STALLED else "+inf"
                ids = await client.zrangebyscore(keys.active, "-inf", ceiling)
                return ids[start : end + 1]

            set_key = keys.wait if state is JobState.WAITING else keys.delayed
            ids: list[str] = []
            for job_name in names:
                ids.extend(await client.zrange(set_key(job_name), 0, -1))
            return ids[start : end + 1]

        ids = await self._connection.execute(_ids)
        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job is not None:
                jobs.append(job)
        return jobs
