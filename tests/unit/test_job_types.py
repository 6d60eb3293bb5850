"""
Unit tests for job options, job snapshots and the handler context.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from pdfqueue.constants import KEEP_ALL, BackoffType, JobState
from pdfqueue.errors import HandlerError, StalledTooManyTimes
from pdfqueue.types.job import BackoffOptions, Job, JobContext, JobOptions, from_ms


class TestBackoffOptions:
    """Tests for retry delay computation."""

    def test_fixed_delay_is_constant(self):
        backoff = BackoffOptions(type=BackoffType.FIXED, delay=500)

        assert [backoff.compute_delay(n) for n in (1, 2, 3)] == [500, 500, 500]

    def test_exponential_delay_doubles(self):
        backoff = BackoffOptions(type=BackoffType.EXPONENTIAL, delay=1000)

        assert [backoff.compute_delay(n) for n in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]

    def test_max_delay_caps_exponential(self):
        backoff = BackoffOptions(type="exponential", delay=1000, max_delay=3000)

        assert backoff.compute_delay(5) == 3000

    def test_negative_delay_rejected(self):
        with pytest.raises(ValidationError):
            BackoffOptions(delay=-1)


class TestJobOptions:
    """Tests for option parsing and merging."""

    def test_defaults(self):
        options = JobOptions()

        assert options.attempts == 1
        assert options.backoff.type is BackoffType.FIXED
        assert options.remove_on_complete == KEEP_ALL
        assert options.remove_on_fail == KEEP_ALL
        assert options.job_id is None

    def test_accepts_camel_case_keys(self):
        options = JobOptions.model_validate(
            {
                "attempts": 3,
                "backoff": {"type": "exponential", "delay": 1000, "maxDelay": 5000},
                "removeOnComplete": 10,
                "removeOnFail": 0,
                "jobId": "quote-1001",
            }
        )

        assert options.attempts == 3
        assert options.backoff.max_delay == 5000
        assert options.remove_on_complete == 10
        assert options.remove_on_fail == 0
        assert options.job_id == "quote-1001"

    def test_unknown_option_rejected(self):
        with pytest.raises(ValidationError):
            JobOptions.model_validate({"retries": 3})

    @pytest.mark.parametrize("priority", [-1, 101])
    def test_priority_bounds(self, priority: int):
        with pytest.raises(ValidationError):
            JobOptions(priority=priority)

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValidationError):
            JobOptions(attempts=0)

    def test_merge_applies_only_explicit_overrides(self):
        defaults = JobOptions(attempts=3, backoff=BackoffOptions(delay=2000), remove_on_complete=50)

        merged = defaults.merged_with(JobOptions(attempts=5))

        assert merged.attempts == 5
        assert merged.backoff.delay == 2000
        assert merged.remove_on_complete == 50

    def test_merge_without_overrides_keeps_defaults(self):
        defaults = JobOptions(attempts=3, priority=10)

        assert defaults.merged_with(None).model_dump() == defaults.model_dump()

    def test_merge_never_inherits_job_id(self):
        defaults = JobOptions(job_id="shared")

        assert defaults.merged_with(None).job_id is None
        assert defaults.merged_with(JobOptions(job_id="mine")).job_id == "mine"


class TestJob:
    """Tests for job snapshots."""

    def _hash(self, **fields: str) -> dict[str, str]:
        data = {
            "id": "7",
            "name": "generate-pdf",
            "data": '{"templateId":"t1"}',
            "opts": JobOptions(attempts=3).model_dump_json(),
            "state": "waiting",
            "attempts": "1",
            "stalled_count": "0",
            "progress": "0",
            "created_at": "1700000000000",
        }
        data.update(fields)
        return data

    def test_from_hash(self):
        job = Job.from_hash("documents", self._hash(result='{"fileId":"f1"}'))

        assert job.id == "7"
        assert job.queue == "documents"
        assert job.payload == {"templateId": "t1"}
        assert job.state is JobState.WAITING
        assert job.attempts == 1
        assert job.max_attempts == 3
        assert job.result == {"fileId": "f1"}
        assert job.created_at == from_ms(1700000000000)
        assert job.lock_expires_at is None

    def test_is_terminal(self):
        assert Job.from_hash("q", self._hash(state="completed")).is_terminal
        assert Job.from_hash("q", self._hash(state="failed")).is_terminal
        assert not Job.from_hash("q", self._hash(state="active")).is_terminal

    def test_expired_lease_is_stalled(self):
        expired = datetime.now(timezone.utc) - timedelta(seconds=5)
        job = Job.from_hash("q", self._hash(state="active"), expired.timestamp() * 1000)

        assert job.is_stalled

    def test_live_lease_is_not_stalled(self):
        live = datetime.now(timezone.utc) + timedelta(seconds=30)
        job = Job.from_hash("q", self._hash(state="active"), live.timestamp() * 1000)

        assert not job.is_stalled

    def test_failure_for_handler_error(self):
        job = Job.from_hash(
            "q", self._hash(state="failed", error="boom", failure_kind="handler")
        )

        error = job.failure()

        assert type(error) is HandlerError
        assert str(error) == "boom"
        assert error.job_id == "7"

    def test_failure_for_stalled_job(self):
        job = Job.from_hash("q", self._hash(state="failed", error="stalled", failure_kind="stalled"))

        assert isinstance(job.failure(), StalledTooManyTimes)


class TestJobContext:
    """Tests for the handler context."""

    def _context(self, attempt: int = 1, max_attempts: int = 3, **kwargs) -> JobContext:
        return JobContext(
            job_id="1",
            name="generate-pdf",
            attempt=attempt,
            max_attempts=max_attempts,
            payload={},
            lock_token="token",
            worker_id="worker-1",
            **kwargs,
        )

    def test_attempt_bookkeeping(self):
        context = self._context(attempt=2, max_attempts=3)

        assert context.remaining_attempts == 1
        assert not context.is_last_attempt
        assert self._context(attempt=3).is_last_attempt

    def test_cancellation_flag(self):
        context = self._context()
        assert not context.is_cancelled

        context.cancelled.set()

        assert context.is_cancelled

    @pytest.mark.asyncio
    async def test_report_progress_clamps(self):
        reported: list[int] = []

        async def reporter(progress: int) -> bool:
            reported.append(progress)
            return True

        context = self._context(progress_reporter=reporter)

        assert await context.report_progress(150)
        assert await context.report_progress(-5)
        assert reported == [100, 0]

    @pytest.mark.asyncio
    async def test_report_progress_without_reporter(self):
        assert await self._context().report_progress(50) is True
