"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> ACTIVE (lease acquired)
    - DELAYED -> WAITING (delay or backoff elapsed)
    - ACTIVE -> COMPLETED (success)
    - ACTIVE -> DELAYED / WAITING (retry)
    - ACTIVE -> FAILED (max attempts exceeded)
    - ACTIVE -> WAITING (lease expired - stalled recovery)
    - FAILED -> WAITING (operator retry)

    STALLED is reported for active jobs whose lease has expired but which
    the watchdog has not yet recovered.
    """

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    STALLED = "stalled"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class BrokerState(StrEnum):
    """Broker connection states."""

    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class BackoffType(StrEnum):
    """Retry delay strategies."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# Job names
JOB_GENERATE_PDF = "generate-pdf"
JOB_CLEANUP = "cleanup"

# Priority bounds (higher = processed first)
MIN_PRIORITY = 0
MAX_PRIORITY = 100
PRIORITY_SCALE = 1_000_000_000

# Retention sentinel: keep every finished job
KEEP_ALL = -1

# Reason recorded on jobs failed by the watchdog
STALLED_REASON = "job stalled more than allowable limit"

# API constants
API_V1_PREFIX = "/v1"
TENANT_ID_HEADER = "X-Tenant-ID"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_JOBS_STALLED = "jobs_stalled_total"
METRIC_LOCK_ACQUIRED = "lock_acquired_total"
METRIC_BROKER_RECONNECTS = "broker_reconnects_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_ACK_JOB = "ack_job"

# Job event types
EVENT_JOB_COMPLETED = "completed"
EVENT_JOB_FAILED = "failed"
EVENT_JOB_RETRYING = "retrying"
EVENT_JOB_STALLED = "stalled"
EVENT_JOB_LOCK_LOST = "lock_lost"

# Broker connection event types
EVENT_CONNECT = "connect"
EVENT_READY = "ready"
EVENT_RECONNECTING = "reconnecting"
EVENT_ERROR = "error"
EVENT_CLOSE = "close"
