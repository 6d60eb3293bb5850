"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from pdfqueue.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_BROKER_RECONNECTS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_JOBS_STALLED,
    METRIC_LOCK_ACQUIRED,
    METRIC_QUEUE_DEPTH,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job queue.

    Collects metrics for:
    - Queue depth
    - Job submissions and outcomes
    - Job execution duration
    - Lease acquisitions and stalled jobs
    - Broker reconnects
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of waiting jobs",
            ["queue"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["queue", "job_name"],
            registry=self._registry,
        )

        # outcome: completed, retrying, failed
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of job attempts by outcome",
            ["queue", "job_name", "outcome"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["queue", "job_name", "outcome"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.jobs_stalled = Counter(
            METRIC_JOBS_STALLED,
            "Total number of jobs recovered from an expired lease",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.lock_acquired = Counter(
            METRIC_LOCK_ACQUIRED,
            "Total number of job leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.broker_reconnects = Counter(
            METRIC_BROKER_RECONNECTS,
            "Total number of broker connection losses",
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str, job_name: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(queue=queue, job_name=job_name).inc()

    def record_job_finished(
        self,
        queue: str,
        job_name: str,
        outcome: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one job attempt."""
        self.jobs_finished.labels(queue=queue, job_name=job_name, outcome=outcome).inc()
        self.job_duration.labels(queue=queue, job_name=job_name, outcome=outcome).observe(
            duration_seconds
        )

    def record_job_stalled(self, queue: str, outcome: str) -> None:
        self.jobs_stalled.labels(queue=queue, outcome=outcome).inc()

    def record_lock_acquired(self, worker_id: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lock_acquired.labels(worker_id=worker_id).inc(count)

    def record_broker_reconnect(self) -> None:
        self.broker_reconnects.inc()

    def update_queue_depth(self, queue: str, depth: int) -> None:
        """Update the waiting depth of a queue."""
        self.queue_depth.labels(queue=queue).set(depth)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics


def serve_metrics(port: int) -> None:
    """Expose the default registry over HTTP for processes without the API."""
    start_http_server(port)
