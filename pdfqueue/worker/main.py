"""
Worker pool for executing jobs.

The pool claims jobs from the queue, executes the registered handler, and
acknowledges success or failure according to the job lifecycle. Handler
invocations run as asyncio tasks multiplexed over one broker connection;
each registered job name has its own concurrency limit.
"""

import asyncio
import logging
import os
import signal
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from pdfqueue.broker import BrokerConnection
from pdfqueue.config import get_settings
from pdfqueue.constants import (
    EVENT_JOB_COMPLETED,
    EVENT_JOB_FAILED,
    EVENT_JOB_LOCK_LOST,
    EVENT_JOB_RETRYING,
    JOB_CLEANUP,
    JOB_GENERATE_PDF,
    SPAN_ACK_JOB,
    SPAN_CLAIM_JOB,
    SPAN_EXECUTE_JOB,
    JobState,
)
from pdfqueue.documents import (
    DirectoryTemplateSource,
    GotenbergClient,
    HubSpotClient,
    build_cleanup_handler,
    build_generate_pdf_handler,
)
from pdfqueue.errors import InvalidPayload, LockLost
from pdfqueue.events import EventEmitter
from pdfqueue.observability.logging import bind_context, clear_context, setup_logging
from pdfqueue.observability.metrics import get_metrics, serve_metrics
from pdfqueue.observability.tracing import get_tracer, setup_tracing
from pdfqueue.queue import Queue
from pdfqueue.types.events import JobEvent
from pdfqueue.types.job import Job, JobContext, JobHandler
from pdfqueue.watchdog import StalledJobWatchdog

logger = logging.getLogger(__name__)


@dataclass
class _Registration:
    job_name: str
    handler: JobHandler
    concurrency: int
    slots: asyncio.Semaphore


@dataclass
class _ActiveJob:
    job: Job
    token: str
    context: JobContext
    task: asyncio.Task | None = None
    lock_lost: bool = False
    acking: bool = False
    started: float = field(default_factory=time.monotonic)


class WorkerPool(EventEmitter):
    """
    Job worker pool that claims and executes jobs.

    Features:
    - Atomic lease acquisition through the queue's claim script
    - Lock renewal every lock_duration / 2 for long-running jobs
    - Per job name concurrency limits
    - Optional in-process stalled-job watchdog
    - Graceful drain on stop()

    Listeners registered with on("completed" | "retrying" | "failed" |
    "lock_lost", callback) receive a JobEvent.
    """

    def __init__(
        self,
        queue: Queue,
        worker_id: str | None = None,
        lock_duration_ms: int | None = None,
        lock_renew_ms: int | None = None,
        poll_interval: float | None = None,
        run_watchdog: bool = False,
        stalled_interval_ms: int | None = None,
        max_stalled_count: int | None = None,
    ):
        """
        Initialize the worker pool.

        Args:
            queue: The queue to consume.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            lock_duration_ms: Lease length granted on each claim and renewal.
            lock_renew_ms: Renewal interval. Defaults to half the lease.
            poll_interval: Seconds between claims when no job is eligible.
            run_watchdog: Also run a stalled-job watchdog in this pool.
            stalled_interval_ms: Watchdog scan interval.
            max_stalled_count: Requeues allowed before a stalled job fails.
        """
        super().__init__()
        settings = get_settings()

        self.queue = queue
        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.lock_duration_ms = lock_duration_ms or settings.worker_lock_duration_ms
        self.lock_renew_ms = (
            lock_renew_ms or settings.worker_lock_renew_ms or self.lock_duration_ms // 2
        )
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds

        self._registrations: dict[str, _Registration] = {}
        self._active: dict[str, _ActiveJob] = {}
        self._claim_tasks: list[asyncio.Task] = []
        self._renew_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._watchdog = (
            StalledJobWatchdog(queue, stalled_interval_ms, max_stalled_count)
            if run_watchdog
            else None
        )
        self._running = False
        self._stop_event = asyncio.Event()
        self._stopped = asyncio.Event()
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_job_ids(self) -> list[str]:
        return list(self._active)

    @property
    def watchdog(self) -> StalledJobWatchdog | None:
        return self._watchdog

    def register_handler(self, job_name: str, handler: JobHandler, concurrency: int = 1) -> None:
        """
        Attach a handler for jobs named `job_name`.

        Args:
            job_name: Logical job type.
            handler: async def handler(context: JobContext) -> result.
            concurrency: Maximum jobs of this name executed at once.

        Raises:
            ValueError: If concurrency < 1 or the pool is already running.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self._running:
            raise ValueError("Handlers must be registered before start()")

        self._registrations[job_name] = _Registration(
            job_name=job_name,
            handler=handler,
            concurrency=concurrency,
            slots=asyncio.Semaphore(concurrency),
        )
        logger.info(
            f"Registered handler for job type: {job_name}",
            extra={"worker_id": self.worker_id, "concurrency": concurrency},
        )

    def handler(self, job_name: str, concurrency: int = 1):
        """
        Decorator form of register_handler.

        Example:
            @pool.handler("generate-pdf", concurrency=2)
            async def generate(context: JobContext) -> dict:
                ...
        """

        def decorator(func: JobHandler) -> JobHandler:
            self.register_handler(job_name, func, concurrency)
            return func

        return decorator

    async def start(self) -> None:
        """
        Start claiming jobs. Returns once the background loops are running;
        use join() to wait until the pool stops.
        """
        if self._running:
            return
        if not self._registrations:
            raise ValueError("No handlers registered")

        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "queue": self.queue.name,
                "job_names": list(self._registrations),
            },
        )

        self._running = True
        self._stop_event.clear()
        self._stopped.clear()

        for registration in self._registrations.values():
            self._claim_tasks.append(asyncio.create_task(self._claim_loop(registration)))
        self._renew_task = asyncio.create_task(self._renew_loop())
        if self._watchdog is not None:
            self._watchdog_task = asyncio.create_task(self._watchdog.start())

    async def join(self) -> None:
        """Wait until stop() has finished draining."""
        await self._stopped.wait()

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop claiming and drain in-flight jobs.

        In-flight handlers see their context's cancelled event set and are
        awaited; leases keep being renewed while they drain. A handler that
        gives up because of the cancellation has its job released back to
        waiting without using an attempt. Handlers still
        running after `timeout` seconds are cancelled and left for the
        watchdog.
        """
        if not self._running:
            return

        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False
        self._stop_event.set()

        for task in self._claim_tasks:
            task.cancel()
        await asyncio.gather(*self._claim_tasks, return_exceptions=True)
        self._claim_tasks = []

        tasks = [active.task for active in self._active.values() if active.task is not None]
        if tasks:
            logger.info(f"Waiting for {len(tasks)} jobs to complete")
            for active in self._active.values():
                active.context.cancelled.set()
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    f"Abandoned {len(pending)} jobs after drain timeout",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.gather(*pending, return_exceptions=True)

        if self._renew_task is not None:
            self._renew_task.cancel()
            await asyncio.gather(self._renew_task, return_exceptions=True)
            self._renew_task = None

        if self._watchdog is not None and self._watchdog_task is not None:
            await self._watchdog.stop()
            self._watchdog_task.cancel()
            await asyncio.gather(self._watchdog_task, return_exceptions=True)
            self._watchdog_task = None

        self._stopped.set()
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def _claim_loop(self, registration: _Registration) -> None:
        """Claim jobs of one name while a concurrency slot is free."""
        while self._running:
            await registration.slots.acquire()
            try:
                claimed = await self._claim(registration.job_name)
            except asyncio.CancelledError:
                registration.slots.release()
                raise
            except Exception as e:
                registration.slots.release()
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id, "job_name": registration.job_name},
                )
                await self._idle()
                continue

            if claimed is None:
                registration.slots.release()
                await self._idle()
                continue

            task = asyncio.create_task(self._execute_job(registration, claimed))
            claimed.task = task
            task.add_done_callback(lambda _: registration.slots.release())

    async def _claim(self, job_name: str) -> _ActiveJob | None:
        token = uuid.uuid4().hex
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            span.set_attribute("queue", self.queue.name)
            span.set_attribute("job_name", job_name)
            job = await self.queue.claim(job_name, token, self.lock_duration_ms)
            if job is None:
                return None
            span.set_attribute("job_id", job.id)

        self._metrics.record_lock_acquired(self.worker_id)

        async def report_progress(progress: int) -> bool:
            return await self.queue.update_progress(job.id, token, progress)

        context = JobContext(
            job_id=job.id,
            name=job.name,
            attempt=job.attempts + 1,
            max_attempts=job.max_attempts,
            payload=job.payload,
            lock_token=token,
            worker_id=self.worker_id,
            progress_reporter=report_progress,
        )
        active = _ActiveJob(job=job, token=token, context=context)
        self._active[job.id] = active
        return active

    async def _execute_job(self, registration: _Registration, active: _ActiveJob) -> None:
        """
        Execute a single claimed job.

        Handles the full lifecycle:
        1. Run the handler with the job context
        2. Complete the job, or record the failure and let the queue
           schedule a retry or fail it
        """
        job, context = active.job, active.context
        bind_context(job_id=job.id, job_name=job.name, attempt=context.attempt, worker_id=self.worker_id)

        try:
            logger.info("Executing job", extra={"queue": self.queue.name})

            try:
                with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                    span.set_attribute("job_id", job.id)
                    span.set_attribute("job_name", job.name)
                    span.set_attribute("attempt", context.attempt)
                    result = await registration.handler(context)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if context.is_cancelled:
                    await self._handle_abandoned(active, _describe(e))
                else:
                    # Bad payloads fail the same way on every attempt
                    await self._handle_failure(
                        active, _describe(e), retry=not isinstance(e, InvalidPayload)
                    )
                return

            await self._handle_success(active, result)

        except LockLost as e:
            logger.warning(f"Job acknowledgement rejected: {e}")
        except Exception as e:
            # The job stays active; the watchdog requeues it once the lease expires.
            logger.exception(f"Exception acknowledging job: {e}")
        finally:
            self._active.pop(job.id, None)
            clear_context()

    async def _handle_success(self, active: _ActiveJob, result: Any) -> None:
        job = active.job
        active.acking = True
        try:
            with get_tracer().start_as_current_span(SPAN_ACK_JOB):
                await self.queue.complete(job, active.token, result)
        except InvalidPayload as e:
            await self._handle_failure(active, str(e), retry=False)
            return

        duration = time.monotonic() - active.started
        logger.info("Job completed successfully", extra={"duration": f"{duration:.2f}s"})
        self._metrics.record_job_finished(self.queue.name, job.name, "completed", duration)
        self.emit(
            EVENT_JOB_COMPLETED,
            JobEvent.job_completed(self.queue.name, job.id, job.name, result, duration * 1000),
        )

    async def _handle_abandoned(self, active: _ActiveJob, error: str) -> None:
        """A cancelled handler gave up: the attempt does not count."""
        job = active.job
        if active.lock_lost:
            logger.warning("Handler stopped after losing its lease", extra={"error": error})
            return

        active.acking = True
        with get_tracer().start_as_current_span(SPAN_ACK_JOB):
            await self.queue.release(job, active.token)
        logger.info("Released job back to waiting on shutdown", extra={"error": error})

    async def _handle_failure(self, active: _ActiveJob, error: str, retry: bool = True) -> None:
        job, context = active.job, active.context
        active.acking = True
        with get_tracer().start_as_current_span(SPAN_ACK_JOB):
            state = await self.queue.fail(job, active.token, error, retry=retry)
        duration = time.monotonic() - active.started

        if state is JobState.FAILED:
            logger.error(
                "Job failed permanently",
                extra={"error": error, "total_attempts": context.attempt},
            )
            self._metrics.record_job_finished(self.queue.name, job.name, "failed", duration)
            self.emit(
                EVENT_JOB_FAILED,
                JobEvent.job_failed(self.queue.name, job.id, error, context.attempt, job.name),
            )
        else:
            logger.warning(
                "Job failed, will retry",
                extra={"error": error, "remaining_attempts": context.remaining_attempts},
            )
            self._metrics.record_job_finished(self.queue.name, job.name, "retrying", duration)
            self.emit(
                EVENT_JOB_RETRYING,
                JobEvent.job_retrying(self.queue.name, job.id, job.name, error, context.attempt, state),
            )

    async def _renew_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being recovered by the watchdog while
        they're still being executed.
        """
        interval = self.lock_renew_ms / 1000
        while True:
            try:
                await asyncio.sleep(interval)
                for job_id, active in list(self._active.items()):
                    if active.lock_lost:
                        continue
                    extended = await self.queue.extend_lock(job_id, active.token, self.lock_duration_ms)
                    if extended:
                        logger.debug("Extended lease", extra={"job_id": job_id})
                    elif job_id in self._active and not active.acking:
                        # An ack in flight removes the lease itself
                        self._lock_lost(active)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in lock renewal loop: {e}")

    def _lock_lost(self, active: _ActiveJob) -> None:
        job = active.job
        logger.warning(
            "Lost lease on running job",
            extra={"job_id": job.id, "job_name": job.name, "worker_id": self.worker_id},
        )
        active.lock_lost = True
        active.context.cancelled.set()
        self.emit(EVENT_JOB_LOCK_LOST, JobEvent.lock_lost(self.queue.name, job.id, job.name))


def _describe(error: Exception) -> str:
    message = str(error)
    return message if message else type(error).__name__


async def run_async() -> None:
    """Run the worker asynchronously."""
    setup_logging("worker")
    setup_tracing()
    settings = get_settings()
    serve_metrics(settings.prometheus_port)

    connection = BrokerConnection(settings)
    await connection.connect()
    queue = Queue(settings.queue_name, connection, settings=settings)
    await queue.init()

    renderer = GotenbergClient()
    uploader = HubSpotClient()

    pool = WorkerPool(queue, run_watchdog=settings.worker_run_watchdog)
    pool.register_handler(
        JOB_GENERATE_PDF,
        build_generate_pdf_handler(
            DirectoryTemplateSource(settings.template_directory),
            renderer,
            uploader,
        ),
        settings.document_concurrency,
    )
    pool.register_handler(JOB_CLEANUP, build_cleanup_handler(queue), settings.cleanup_concurrency)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(pool.stop())
        )

    try:
        await pool.start()
        await pool.join()
    finally:
        await pool.stop()
        await renderer.aclose()
        await uploader.aclose()
        await queue.shutdown()
        await connection.close()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
