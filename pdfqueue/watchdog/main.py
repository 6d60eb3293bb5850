"""
Stalled-job watchdog.

The watchdog runs periodically to find active jobs whose lease expired
without a heartbeat and returns them to the queue. This handles worker
crashes and ensures at-least-once delivery; jobs that stall too often are
failed instead of being retried forever.
"""

import asyncio
import logging
import signal

from pdfqueue.broker import BrokerConnection
from pdfqueue.config import get_settings
from pdfqueue.constants import EVENT_JOB_STALLED, JobState
from pdfqueue.events import EventEmitter
from pdfqueue.observability.logging import setup_logging
from pdfqueue.observability.metrics import get_metrics, serve_metrics
from pdfqueue.observability.tracing import setup_tracing
from pdfqueue.queue import Queue
from pdfqueue.types.events import JobEvent

logger = logging.getLogger(__name__)


class StalledJobWatchdog(EventEmitter):
    """
    Recovers jobs whose worker lease expired.

    Runs periodically to:
    1. Find active jobs with an expired lease
    2. Return them to waiting while their stalled count allows it
    3. Fail the rest with a StalledTooManyTimes reason
    """

    def __init__(
        self,
        queue: Queue,
        interval_ms: int | None = None,
        max_stalled_count: int | None = None,
    ):
        """
        Initialize the watchdog.

        Args:
            queue: The queue to watch.
            interval_ms: Milliseconds between scans.
            max_stalled_count: Requeues allowed before a stalled job fails.
        """
        super().__init__()
        settings = get_settings()
        self.queue = queue
        self.interval = (interval_ms or settings.worker_stalled_interval_ms) / 1000
        self.max_stalled_count = (
            settings.worker_max_stalled_count if max_stalled_count is None else max_stalled_count
        )
        self._running = False
        self._stop_event = asyncio.Event()
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the watchdog loop. Returns after stop() is called."""
        logger.info(
            "Watchdog starting",
            extra={"queue": self.queue.name, "interval_seconds": self.interval},
        )
        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in watchdog loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Watchdog stopped", extra={"queue": self.queue.name})

    async def stop(self) -> None:
        """Stop the watchdog."""
        logger.info("Watchdog stopping", extra={"queue": self.queue.name})
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> list[tuple[str, JobState]]:
        """
        Run a single scan (for testing or cron-style execution).

        Returns:
            (job_id, new_state) for every recovered job.
        """
        recovered = await self.queue.recover_stalled(self.max_stalled_count)

        for job_id, state in recovered:
            self._metrics.record_job_stalled(self.queue.name, state.value)
            if state is JobState.FAILED:
                logger.error(
                    "Stalled job failed",
                    extra={"queue": self.queue.name, "job_id": job_id},
                )
            else:
                logger.warning(
                    "Stalled job requeued",
                    extra={"queue": self.queue.name, "job_id": job_id},
                )
            self.emit(EVENT_JOB_STALLED, JobEvent.job_stalled(self.queue.name, job_id, state))

        if recovered:
            logger.info(f"Recovered {len(recovered)} stalled jobs", extra={"queue": self.queue.name})

        return recovered


async def run_async() -> None:
    """Run the watchdog asynchronously."""
    setup_logging("watchdog")
    setup_tracing()
    settings = get_settings()
    serve_metrics(settings.prometheus_port)

    connection = BrokerConnection(settings)
    await connection.connect()
    queue = Queue(settings.queue_name, connection, settings=settings)
    await queue.init()

    watchdog = StalledJobWatchdog(queue)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(watchdog.stop())
        )

    try:
        await watchdog.start()
    finally:
        await queue.shutdown()
        await connection.close()


def run() -> None:
    """Run the watchdog."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
