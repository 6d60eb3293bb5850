"""
Durable broker connection.

Wraps an asyncio Redis client with an explicit connection state machine,
an indefinite background reconnect loop, and a bounded offline queue that
buffers commands while the broker is unreachable and replays them in
submission order once the connection is ready again.
"""

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ReadOnlyError
from redis.exceptions import TimeoutError as RedisTimeoutError

from pdfqueue.config import Settings, get_settings
from pdfqueue.constants import (
    EVENT_CLOSE,
    EVENT_CONNECT,
    EVENT_ERROR,
    EVENT_READY,
    EVENT_RECONNECTING,
    BrokerState,
)
from pdfqueue.errors import ConnectionUnavailable
from pdfqueue.events import EventEmitter
from pdfqueue.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A broker command: receives the live client, returns an awaitable result
Command = Callable[[Redis], Awaitable[T]]
ClientFactory = Callable[[Settings], Redis]
RetryStrategy = Callable[[int], int]

_DISCONNECT_ERRORS = (RedisConnectionError, ReadOnlyError)


def default_retry_strategy(base_ms: int, max_ms: int) -> RetryStrategy:
    """
    Build the reconnect backoff: attempt * base, capped at max.

    Args:
        base_ms: Delay added per attempt.
        max_ms: Upper bound on any single delay.

    Returns:
        Function mapping attempt count (1-based) to a delay in milliseconds.
    """

    def strategy(attempt: int) -> int:
        return min(attempt * base_ms, max_ms)

    return strategy


def _is_connect_timeout(error: RedisTimeoutError) -> bool:
    # redis-py raises "Timeout connecting to server" before anything is sent
    return "connecting" in str(error).lower()


def create_redis_client(settings: Settings) -> Redis:
    """
    Create the asyncio Redis client from settings.

    Per-command retries inside redis-py are disabled; retrying is owned by
    BrokerConnection so that max-retries-per-request has a single meaning.
    """
    command_timeout = (
        settings.redis_command_timeout_ms / 1000
        if settings.redis_command_timeout_ms is not None
        else None
    )
    return Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        db=settings.redis_db,
        socket_connect_timeout=settings.redis_connect_timeout_ms / 1000,
        socket_timeout=command_timeout,
        retry=Retry(NoBackoff(), 0),
        decode_responses=True,
    )


@dataclass
class _PendingCommand:
    command: Command
    future: asyncio.Future
    seq: int
    retries: int = 0


class BrokerConnection(EventEmitter):
    """
    Persistent, auto-reconnecting connection to the Redis broker.

    States: connecting -> ready -> reconnecting -> ready ... -> closed.

    Events:
    - connect: a handshake succeeded
    - ready: the connection is usable (offline queue about to flush)
    - reconnecting: a reconnect attempt is scheduled (delay ms)
    - error: a connection-level error occurred (exception)
    - close: the connection was closed for good
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
        retry_strategy: RetryStrategy | None = None,
    ):
        super().__init__()
        self._settings = settings or get_settings()
        self._client_factory = client_factory or create_redis_client
        self._retry_strategy = retry_strategy or default_retry_strategy(
            self._settings.redis_retry_delay_ms,
            self._settings.redis_retry_max_delay_ms,
        )

        self._client: Redis | None = None
        self._state = BrokerState.CLOSED
        self._ready_event = asyncio.Event()
        self._offline: deque[_PendingCommand] = deque()
        self._sequence = itertools.count()
        self._flushing = False
        self._flush_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._metrics = get_metrics()

        self.last_error: str | None = None
        self.reconnect_count = 0

    @property
    def state(self) -> BrokerState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is BrokerState.READY

    @property
    def offline_queue_size(self) -> int:
        return len(self._offline)

    @property
    def client(self) -> Redis:
        """The underlying client. Prefer execute() so outages are handled."""
        if self._client is None:
            raise ConnectionUnavailable("Broker connection has not been opened")
        return self._client

    async def connect(self) -> None:
        """
        Open the connection.

        Returns once the broker answered the handshake. Gives up after
        redis_connect_max_attempts attempts.

        Raises:
            ConnectionUnavailable: If every attempt failed.
        """
        if self._state is BrokerState.READY:
            return

        self._set_state(BrokerState.CONNECTING)
        if self._client is None:
            self._client = self._client_factory(self._settings)

        max_attempts = max(1, self._settings.redis_connect_max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._handshake()
                break
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                self._record_error(e)
                logger.warning(
                    "Broker connection attempt failed",
                    extra={"attempt": attempt, "max_attempts": max_attempts, "error": str(e)},
                )
                if attempt >= max_attempts:
                    self._set_state(BrokerState.CLOSED)
                    self._fail_pending(ConnectionUnavailable(f"Could not connect to broker: {e}"))
                    raise ConnectionUnavailable(
                        f"Could not connect to broker after {attempt} attempts: {e}"
                    ) from e
                await asyncio.sleep(self._retry_strategy(attempt) / 1000)

        logger.info(
            "Broker connected",
            extra={
                "host": self._settings.redis_host,
                "port": self._settings.redis_port,
                "db": self._settings.redis_db,
            },
        )
        self._mark_ready()
        await self._flush()

    async def execute(self, command: Command[T]) -> T:
        """
        Run a command against the broker.

        While the connection is not ready the command is buffered in the
        offline queue (if enabled) and completes after reconnection.

        Args:
            command: Callable receiving the Redis client.

        Returns:
            Whatever the command returns.

        Raises:
            ConnectionUnavailable: Closed connection, offline queue disabled
                or full, retries exhausted, or command timeout.
        """
        if self._state is BrokerState.CLOSED:
            raise ConnectionUnavailable("Broker connection is closed")

        seq = next(self._sequence)
        if self._state is BrokerState.READY and not self._flushing and not self._offline:
            return await self._run(command, seq)

        return await self._buffer(command, seq)

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Wait for the ready state. Returns False on timeout."""
        if self.is_ready:
            return True
        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_ready

    async def ping(self) -> bool:
        """Round-trip check used by health probes."""
        return bool(await self.execute(lambda client: client.ping()))

    async def close(self) -> None:
        """Close the connection and reject anything still buffered."""
        if self._state is BrokerState.CLOSED and self._client is None:
            return

        self._set_state(BrokerState.CLOSED)

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            await asyncio.gather(self._flush_task, return_exceptions=True)
        self._flush_task = None

        self._fail_pending(ConnectionUnavailable("Broker connection closed"))

        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisConnectionError, OSError) as e:
                logger.debug("Error while closing broker client", extra={"error": str(e)})
            self._client = None

        logger.info("Broker connection closed")
        self.emit(EVENT_CLOSE)

    async def _run(self, command: Command[T], seq: int, retries: int = 0) -> T:
        try:
            return await command(self._client)
        except ReadOnlyError as e:
            if not self._settings.redis_reconnect_on_readonly:
                raise
            logger.warning("Broker reported READONLY, forcing reconnect")
            await self._handle_disconnect(e, force=True)
            return await self._requeue(command, seq, retries, e)
        except RedisTimeoutError as e:
            if _is_connect_timeout(e):
                await self._handle_disconnect(e, force=True)
                return await self._requeue(command, seq, retries, e)
            # The command may have run; surface it, but notice a dead broker
            if await self._broker_unreachable():
                await self._handle_disconnect(e, force=True)
            else:
                self._record_error(e)
            raise ConnectionUnavailable(f"Broker command timed out: {e}") from e
        except RedisConnectionError as e:
            await self._handle_disconnect(e)
            return await self._requeue(command, seq, retries, e)

    async def _requeue(self, command: Command[T], seq: int, retries: int, error: Exception) -> T:
        limit = self._settings.redis_max_retries_per_request
        if limit is not None and retries >= limit:
            raise ConnectionUnavailable(
                f"Broker command failed after {retries} retries: {error}"
            ) from error
        return await self._buffer(command, seq, retries=retries + 1)

    async def _buffer(self, command: Command[T], seq: int, retries: int = 0) -> T:
        if not self._settings.redis_enable_offline_queue:
            raise ConnectionUnavailable(
                f"Broker is {self._state.value} and offline queueing is disabled"
            )
        if len(self._offline) >= self._settings.redis_offline_queue_limit:
            raise ConnectionUnavailable(
                f"Offline queue is full ({self._settings.redis_offline_queue_limit} commands)"
            )

        pending = _PendingCommand(
            command=command,
            future=asyncio.get_running_loop().create_future(),
            seq=seq,
            retries=retries,
        )
        self._insert(pending)

        logger.debug(
            "Buffered broker command",
            extra={"state": self._state.value, "offline_queue": len(self._offline)},
        )

        # A requeued command can land after the reconnect loop already flushed
        if self._state is BrokerState.READY and not self._flushing:
            self._flush_task = asyncio.create_task(self._flush())

        return await pending.future

    def _insert(self, pending: _PendingCommand) -> None:
        """Keep the offline queue in submission order, including requeued commands."""
        index = len(self._offline)
        while index > 0 and self._offline[index - 1].seq > pending.seq:
            index -= 1
        self._offline.insert(index, pending)

    async def _flush(self) -> None:
        """Replay buffered commands in order while the connection stays ready."""
        if self._flushing:
            return
        self._flushing = True
        flushed = 0
        try:
            while self._offline and self._state is BrokerState.READY:
                pending = self._offline.popleft()
                if pending.future.done():
                    continue

                try:
                    result = await pending.command(self._client)
                except asyncio.CancelledError:
                    self._insert(pending)
                    raise
                except (*_DISCONNECT_ERRORS, RedisTimeoutError) as e:
                    if isinstance(e, RedisTimeoutError) and not _is_connect_timeout(e):
                        pending.future.set_exception(
                            ConnectionUnavailable(f"Broker command timed out: {e}")
                        )
                        if not await self._broker_unreachable():
                            self._record_error(e)
                            continue
                    else:
                        limit = self._settings.redis_max_retries_per_request
                        if limit is not None and pending.retries >= limit:
                            pending.future.set_exception(
                                ConnectionUnavailable(
                                    f"Broker command failed after {pending.retries} retries: {e}"
                                )
                            )
                        else:
                            pending.retries += 1
                            self._insert(pending)
                    await self._handle_disconnect(e, force=not isinstance(e, RedisConnectionError))
                    return
                except Exception as e:
                    # Command-level errors belong to the caller that issued it
                    pending.future.set_exception(e)
                else:
                    pending.future.set_result(result)
                    flushed += 1
        finally:
            self._flushing = False

        if flushed:
            logger.info("Flushed offline queue", extra={"commands": flushed})

    async def _handshake(self) -> None:
        client = self._client
        await client.ping()

        if not self._settings.redis_enable_ready_check:
            return

        # Block until the server has finished loading its dataset
        while True:
            info = await client.info("persistence")
            if str(info.get("loading", 0)) != "1":
                return
            logger.info("Broker is loading its dataset, waiting")
            await asyncio.sleep(self._settings.redis_retry_max_delay_ms / 1000)

    async def _broker_unreachable(self) -> bool:
        """Ping once after a command timeout to tell a slow command from a dead link."""
        try:
            await asyncio.wait_for(
                self._client.ping(),
                self._settings.redis_connect_timeout_ms / 1000,
            )
        except (RedisConnectionError, RedisTimeoutError, OSError, TimeoutError):
            return True
        return False

    async def _handle_disconnect(self, error: Exception, force: bool = False) -> None:
        self._record_error(error)
        self.emit(EVENT_ERROR, error)

        if force and self._client is not None:
            try:
                await self._client.connection_pool.disconnect()
            except (RedisConnectionError, OSError) as e:
                logger.debug("Error dropping broker connections", extra={"error": str(e)})

        if self._state is BrokerState.READY:
            self.reconnect_count += 1
            self._metrics.record_broker_reconnect()
            logger.warning(
                "Broker connection lost",
                extra={"error": str(error), "reconnects": self.reconnect_count},
            )
            self._set_state(BrokerState.RECONNECTING)

        self._start_reconnect()

    def _start_reconnect(self) -> None:
        if self._state is BrokerState.CLOSED:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        """Reconnect until ready or closed. Errors are reported, never raised."""
        attempt = 0
        while self._state is not BrokerState.CLOSED:
            attempt += 1
            delay = self._retry_strategy(attempt)
            self.emit(EVENT_RECONNECTING, delay)
            await asyncio.sleep(delay / 1000)

            try:
                await self._handshake()
            except (RedisConnectionError, RedisTimeoutError, OSError) as e:
                self._record_error(e)
                self.emit(EVENT_ERROR, e)
                logger.warning(
                    "Broker reconnect attempt failed",
                    extra={"attempt": attempt, "delay_ms": delay, "error": str(e)},
                )
                continue
            except Exception as e:
                self._record_error(e)
                self.emit(EVENT_ERROR, e)
                logger.exception("Unexpected error while reconnecting to broker")
                continue

            logger.info("Broker reconnected", extra={"attempt": attempt})
            self._mark_ready()
            await self._flush()
            if self._state is BrokerState.READY:
                return
            attempt = 0

    def _mark_ready(self) -> None:
        self.emit(EVENT_CONNECT)
        self._set_state(BrokerState.READY)
        self.emit(EVENT_READY)

    def _set_state(self, state: BrokerState) -> None:
        if state is self._state:
            return
        logger.debug(
            "Broker state change",
            extra={"from_state": self._state.value, "to_state": state.value},
        )
        self._state = state
        if state is BrokerState.READY:
            self._ready_event.set()
        else:
            self._ready_event.clear()

    def _record_error(self, error: Exception) -> None:
        self.last_error = f"{type(error).__name__}: {error}"

    def _fail_pending(self, error: Exception) -> None:
        while self._offline:
            pending = self._offline.popleft()
            if not pending.future.done():
                pending.future.set_exception(error)

    def describe(self) -> dict[str, Any]:
        """Connection snapshot for status endpoints."""
        return {
            "state": self._state.value,
            "offline_queue": len(self._offline),
            "reconnects": self.reconnect_count,
            "last_error": self.last_error,
        }
