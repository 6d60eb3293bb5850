"""
Pytest configuration and shared fixtures.

The broker is an in-process fakeredis server; flipping its `connected`
flag simulates an outage.
"""

import asyncio
import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.asyncio import Redis

# Fast timings for code paths that read the cached settings, set BEFORE any
# imports that might call get_settings()
os.environ.setdefault("WORKER_POLL_INTERVAL_SECONDS", "0.02")
os.environ.setdefault("WORKER_LOCK_DURATION_MS", "1000")
os.environ.setdefault("WORKER_STALLED_INTERVAL_MS", "100")
os.environ.setdefault("QUEUE_WAIT_POLL_INTERVAL_MS", "10")
os.environ.setdefault("API_ENQUEUE_READY_TIMEOUT_SECONDS", "0.2")
os.environ.setdefault("HUBSPOT_ACCESS_TOKEN", "test-token")

from pdfqueue.api.main import create_app  # noqa: E402
from pdfqueue.broker import BrokerConnection  # noqa: E402
from pdfqueue.config import Settings  # noqa: E402
from pdfqueue.constants import JobState  # noqa: E402
from pdfqueue.queue import Queue  # noqa: E402
from pdfqueue.worker import WorkerPool  # noqa: E402

TEST_QUEUE_NAME = "test-queue"


@pytest.fixture
def settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        redis_retry_delay_ms=10,
        redis_retry_max_delay_ms=50,
        redis_connect_max_attempts=3,
        job_attempts=1,
        job_backoff_type="fixed",
        job_backoff_delay_ms=0,
        job_remove_on_complete=-1,
        job_remove_on_fail=-1,
        queue_wait_poll_interval_ms=10,
        log_level="DEBUG",
        log_format="console",
    )


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    """A fresh in-memory broker per test."""
    return fakeredis.FakeServer()


@pytest.fixture
def client_factory(redis_server: fakeredis.FakeServer) -> Callable[[Settings], Redis]:
    """Client factory handing BrokerConnection a fakeredis client."""

    def factory(settings: Settings) -> Redis:
        return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)

    return factory


@pytest_asyncio.fixture
async def connection(
    settings: Settings,
    client_factory: Callable[[Settings], Redis],
) -> AsyncGenerator[BrokerConnection]:
    """An open broker connection."""
    connection = BrokerConnection(settings, client_factory=client_factory)
    await connection.connect()

    yield connection

    await connection.close()


@pytest_asyncio.fixture
async def queue(connection: BrokerConnection, settings: Settings) -> AsyncGenerator[Queue]:
    """An initialized queue on the test broker."""
    queue = Queue(TEST_QUEUE_NAME, connection, settings=settings)
    await queue.init()

    yield queue

    await queue.shutdown()


@pytest_asyncio.fixture
async def make_pool(queue: Queue) -> AsyncGenerator[Callable[..., WorkerPool]]:
    """Build worker pools with short leases; every pool is stopped on teardown."""
    pools: list[WorkerPool] = []

    def factory(**kwargs: Any) -> WorkerPool:
        kwargs.setdefault("lock_duration_ms", 1000)
        kwargs.setdefault("poll_interval", 0.01)
        pool = WorkerPool(kwargs.pop("queue", queue), **kwargs)
        pools.append(pool)
        return pool

    yield factory

    for pool in pools:
        await pool.stop(timeout=1.0)


@pytest.fixture
def wait_for_state(queue: Queue) -> Callable[..., Awaitable[Any]]:
    """Poll a job until it reaches one of the given states."""

    async def waiter(job_id: str, *states: JobState, timeout: float = 5.0):
        async with asyncio.timeout(timeout):
            while True:
                job = await queue.get_job(job_id)
                if job is not None and job.state in states:
                    return job
                await asyncio.sleep(0.01)

    return waiter


@pytest_asyncio.fixture
async def client(queue: Queue) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    app = create_app(queue)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_tenant_id() -> str:
    return "test-tenant"


@pytest.fixture
def sample_job_payload() -> dict[str, Any]:
    """Create a sample generate-pdf payload."""
    return {
        "templateId": "quote",
        "objectId": "1001",
        "objectType": "contact",
        "objectData": {"firstname": "Ada", "lastname": "Lovelace"},
    }
