"""
Unit tests for the broker connection: state machine, reconnect loop and
offline queue.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable

import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import ReadOnlyError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from pdfqueue.broker import BrokerConnection, default_retry_strategy
from pdfqueue.config import Settings
from pdfqueue.constants import BrokerState
from pdfqueue.errors import ConnectionUnavailable


async def until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


class TestRetryStrategy:
    """Tests for the reconnect backoff."""

    def test_linear_growth_capped(self):
        strategy = default_retry_strategy(50, 2000)

        assert strategy(1) == 50
        assert strategy(3) == 150
        assert strategy(40) == 2000
        assert strategy(1000) == 2000


class TestBrokerConnection:
    """Tests for BrokerConnection."""

    @pytest_asyncio.fixture
    async def make_connection(
        self,
        settings: Settings,
        client_factory,
    ) -> AsyncGenerator[Callable[..., BrokerConnection]]:
        connections: list[BrokerConnection] = []

        def factory(**overrides) -> BrokerConnection:
            connection = BrokerConnection(
                settings.model_copy(update=overrides),
                client_factory=client_factory,
            )
            connections.append(connection)
            return connection

        yield factory

        for connection in connections:
            await connection.close()

    @pytest.mark.asyncio
    async def test_starts_closed(self, make_connection):
        connection = make_connection()

        assert connection.state is BrokerState.CLOSED
        assert not connection.is_ready
        with pytest.raises(ConnectionUnavailable):
            await connection.execute(lambda client: client.ping())

    @pytest.mark.asyncio
    async def test_connect_emits_connect_then_ready(self, make_connection):
        connection = make_connection()
        events: list[str] = []
        connection.on("connect", lambda: events.append("connect"))
        connection.on("ready", lambda: events.append("ready"))

        await connection.connect()

        assert connection.state is BrokerState.READY
        assert events == ["connect", "ready"]
        assert await connection.ping() is True

    @pytest.mark.asyncio
    async def test_connect_gives_up_after_max_attempts(
        self,
        settings: Settings,
        client_factory,
        redis_server: fakeredis.FakeServer,
    ):
        attempts: list[int] = []

        def strategy(attempt: int) -> int:
            attempts.append(attempt)
            return 0

        redis_server.connected = False
        connection = BrokerConnection(settings, client_factory=client_factory, retry_strategy=strategy)

        with pytest.raises(ConnectionUnavailable):
            await connection.connect()

        assert connection.state is BrokerState.CLOSED
        assert attempts == [1, 2]
        assert connection.last_error is not None
        await connection.close()

    @pytest.mark.asyncio
    async def test_execute_runs_command(self, connection: BrokerConnection):
        await connection.execute(lambda client: client.set("greeting", "hello"))

        assert await connection.execute(lambda client: client.get("greeting")) == "hello"

    @pytest.mark.asyncio
    async def test_command_errors_belong_to_caller(self, connection: BrokerConnection):
        await connection.execute(lambda client: client.set("counter", "abc"))

        with pytest.raises(ResponseError):
            await connection.execute(lambda client: client.incr("counter"))

        assert connection.state is BrokerState.READY

    @pytest.mark.asyncio
    async def test_command_timeout_surfaces_without_reconnect(self, connection: BrokerConnection):
        async def slow(client):
            raise RedisTimeoutError("Timeout reading from socket")

        with pytest.raises(ConnectionUnavailable, match="timed out"):
            await connection.execute(slow)

        assert connection.state is BrokerState.READY
        assert connection.reconnect_count == 0

    @pytest.mark.asyncio
    async def test_connect_timeout_reconnects_and_replays(self, connection: BrokerConnection):
        """A timeout while opening a socket is an outage: reconnect and buffer."""
        calls = 0
        states: list[BrokerState] = []
        connection.on("reconnecting", lambda delay: states.append(connection.state))

        async def write(client):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RedisTimeoutError("Timeout connecting to server")
            return await client.set("k", "v")

        assert await asyncio.wait_for(connection.execute(write), timeout=2.0) is True

        assert calls == 2
        assert states[0] is BrokerState.RECONNECTING
        assert connection.reconnect_count == 1
        assert connection.state is BrokerState.READY
        assert await connection.execute(lambda client: client.get("k")) == "v"

    @pytest.mark.asyncio
    async def test_read_timeout_on_dead_broker_starts_reconnecting(
        self,
        connection: BrokerConnection,
        redis_server: fakeredis.FakeServer,
    ):
        async def blackholed(client):
            redis_server.connected = False
            raise RedisTimeoutError("Timeout reading from socket")

        with pytest.raises(ConnectionUnavailable, match="timed out"):
            await connection.execute(blackholed)

        assert connection.state is BrokerState.RECONNECTING
        assert connection.reconnect_count == 1

        redis_server.connected = True
        assert await connection.wait_until_ready(timeout=2.0) is True

    @pytest.mark.asyncio
    async def test_buffers_during_outage_and_flushes_in_order(
        self,
        connection: BrokerConnection,
        redis_server: fakeredis.FakeServer,
    ):
        """Commands issued while disconnected all run, in submission order."""
        redis_server.connected = False

        tasks = [
            asyncio.create_task(connection.execute(lambda client, i=i: client.rpush("log", i)))
            for i in range(5)
        ]
        await until(lambda: connection.offline_queue_size == 5)

        assert connection.state is BrokerState.RECONNECTING
        assert not any(task.done() for task in tasks)

        redis_server.connected = True
        results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=2.0)

        assert results == [1, 2, 3, 4, 5]
        assert await connection.execute(lambda client: client.lrange("log", 0, -1)) == [
            "0",
            "1",
            "2",
            "3",
            "4",
        ]
        assert connection.state is BrokerState.READY
        assert connection.reconnect_count == 1
        assert connection.offline_queue_size == 0

    @pytest.mark.asyncio
    async def test_reconnect_loop_reports_progress(
        self,
        connection: BrokerConnection,
        redis_server: fakeredis.FakeServer,
    ):
        delays: list[int] = []
        errors: list[Exception] = []
        connection.on("reconnecting", delays.append)
        connection.on("error", errors.append)

        redis_server.connected = False
        task = asyncio.create_task(connection.execute(lambda client: client.ping()))
        await until(lambda: len(delays) >= 3)

        assert delays[:3] == [10, 20, 30]
        assert errors
        assert connection.last_error is not None

        redis_server.connected = True
        assert await asyncio.wait_for(task, timeout=2.0) is True

    @pytest.mark.asyncio
    async def test_offline_queue_disabled_fails_fast(
        self,
        make_connection,
        redis_server: fakeredis.FakeServer,
    ):
        connection = make_connection(redis_enable_offline_queue=False)
        await connection.connect()
        redis_server.connected = False

        with pytest.raises(ConnectionUnavailable, match="offline queueing is disabled"):
            await connection.execute(lambda client: client.set("k", "v"))
        with pytest.raises(ConnectionUnavailable):
            await connection.execute(lambda client: client.set("k", "v"))

        assert connection.state is BrokerState.RECONNECTING

    @pytest.mark.asyncio
    async def test_offline_queue_limit(
        self,
        make_connection,
        redis_server: fakeredis.FakeServer,
    ):
        connection = make_connection(redis_offline_queue_limit=1)
        await connection.connect()
        redis_server.connected = False

        first = asyncio.create_task(connection.execute(lambda client: client.set("k", "1")))
        await until(lambda: connection.offline_queue_size == 1)

        with pytest.raises(ConnectionUnavailable, match="full"):
            await connection.execute(lambda client: client.set("k", "2"))

        redis_server.connected = True
        assert await asyncio.wait_for(first, timeout=2.0) is True
        assert await connection.execute(lambda client: client.get("k")) == "1"

    @pytest.mark.asyncio
    async def test_max_retries_per_request(
        self,
        make_connection,
        redis_server: fakeredis.FakeServer,
    ):
        connection = make_connection(redis_max_retries_per_request=0)
        await connection.connect()
        redis_server.connected = False

        with pytest.raises(ConnectionUnavailable, match="after 0 retries"):
            await connection.execute(lambda client: client.set("k", "v"))

    @pytest.mark.asyncio
    async def test_wait_until_ready(
        self,
        connection: BrokerConnection,
        redis_server: fakeredis.FakeServer,
    ):
        assert await connection.wait_until_ready(0.01) is True

        redis_server.connected = False
        task = asyncio.create_task(connection.execute(lambda client: client.ping()))
        await until(lambda: connection.state is BrokerState.RECONNECTING)

        assert await connection.wait_until_ready(0.05) is False

        redis_server.connected = True
        assert await connection.wait_until_ready(2.0) is True
        await asyncio.wait_for(task, timeout=2.0)

    @pytest.mark.asyncio
    async def test_readonly_reply_forces_reconnect(self, connection: BrokerConnection):
        calls: list[int] = []

        async def write(client):
            calls.append(1)
            if len(calls) == 1:
                raise ReadOnlyError("You can't write against a read only replica.")
            return "ok"

        assert await asyncio.wait_for(connection.execute(write), timeout=2.0) == "ok"
        assert len(calls) == 2
        assert connection.reconnect_count == 1
        assert connection.state is BrokerState.READY

    @pytest.mark.asyncio
    async def test_readonly_reply_propagates_when_disabled(self, make_connection):
        connection = make_connection(redis_reconnect_on_readonly=False)
        await connection.connect()

        async def write(client):
            raise ReadOnlyError("You can't write against a read only replica.")

        with pytest.raises(ReadOnlyError):
            await connection.execute(write)

    @pytest.mark.asyncio
    async def test_close_rejects_buffered_commands(
        self,
        make_connection,
        redis_server: fakeredis.FakeServer,
    ):
        connection = make_connection()
        await connection.connect()
        closed: list[bool] = []
        connection.on("close", lambda: closed.append(True))

        redis_server.connected = False
        task = asyncio.create_task(connection.execute(lambda client: client.set("k", "v")))
        await until(lambda: connection.offline_queue_size == 1)

        await connection.close()

        with pytest.raises(ConnectionUnavailable):
            await task
        assert connection.state is BrokerState.CLOSED
        assert closed == [True]
        with pytest.raises(ConnectionUnavailable, match="closed"):
            await connection.execute(lambda client: client.ping())

    @pytest.mark.asyncio
    async def test_describe(self, connection: BrokerConnection):
        assert connection.describe() == {
            "state": "ready",
            "offline_queue": 0,
            "reconnects": 0,
            "last_error": None,
        }
