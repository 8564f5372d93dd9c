"""Broker connection manager: one connection, one channel, bounded reconnects.

The connection is an owned resource with an explicit lifecycle
(disconnected → connecting → connected, or failed once the reconnect budget
is spent). All connects go through one lock, so concurrent ``publish`` /
``subscribe`` calls during an outage share a single reconnect attempt
instead of racing each other.

Reconnects are bounded, unlike ``aio_pika.connect_robust``: after
``max_attempts`` failed connects the manager sets ``fatal`` and stays failed.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable

import aio_pika
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPConnectionError

from helpdispatch.config import Settings
from helpdispatch.errors import QueueUnavailableError
from helpdispatch.ids import consumer_tag as make_consumer_tag
from helpdispatch.queue.topology import QueueTopology, declare_topology

logger = logging.getLogger("helpdispatch.queue")

MessageCallback = Callable[[AbstractIncomingMessage], Awaitable[None]]
ConnectFactory = Callable[[str], Awaitable[AbstractConnection]]


class ConnectionState(str, enum.Enum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    failed = "failed"


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base, ... capped."""
    return min(cap, base * (2 ** (attempt - 1)))


class QueueConnection:
    def __init__(
        self,
        url: str,
        *,
        prefetch_count: int = 10,
        base_delay: float = 2.0,
        max_delay: float = 5.0,
        max_attempts: int = 20,
        on_fatal: Callable[[], None] | None = None,
        connect_factory: ConnectFactory | None = None,
    ) -> None:
        self._url = url
        self._prefetch_count = prefetch_count
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._on_fatal = on_fatal
        self._connect_factory = connect_factory or aio_pika.connect

        self._state = ConnectionState.disconnected
        self._lock = asyncio.Lock()
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queues: dict[str, AbstractQueue] = {}
        self._topologies: dict[str, QueueTopology] = {}
        self._subscriptions: dict[str, MessageCallback] = {}
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False
        self.fatal = asyncio.Event()

    @classmethod
    def from_settings(cls, config: Settings, **kwargs) -> QueueConnection:
        return cls(
            config.amqp_url,
            prefetch_count=config.prefetch_count,
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            max_attempts=config.reconnect_max_attempts,
            **kwargs,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state is ConnectionState.connected
            and self._channel is not None
            and not self._channel.is_closed
        )

    async def connect(self) -> AbstractChannel:
        """Return the live channel, connecting first if needed.

        Callers arriving while another connect is in progress wait for it
        rather than opening a second connection.
        """
        if self.is_connected:
            return self._channel  # type: ignore[return-value]

        async with self._lock:
            if self.is_connected:
                return self._channel  # type: ignore[return-value]
            if self._state is ConnectionState.failed:
                raise QueueUnavailableError("Broker unreachable, reconnect attempts exhausted")

            self._closing = False
            self._state = ConnectionState.connecting
            connection = self._connection
            if connection is not None and not connection.is_closed:
                # only the channel went away; the connection is still usable
                logger.warning("Broker channel closed, reopening it on the live connection")
            else:
                self._connection = None
                try:
                    connection = await self._open_with_backoff()
                except asyncio.CancelledError:
                    self._state = ConnectionState.disconnected
                    raise
                connection.close_callbacks.add(self._on_connection_closed)
                self._connection = connection
            try:
                channel = await connection.channel()
                await channel.set_qos(prefetch_count=self._prefetch_count)
            except BaseException:
                self._connection = None
                self._state = ConnectionState.disconnected
                await connection.close()
                raise

            channel.close_callbacks.add(self._on_channel_closed)
            self._channel = channel
            self._queues = {}
            self._state = ConnectionState.connected
            logger.info("Connected to broker (prefetch=%d)", self._prefetch_count)

            for topology in list(self._topologies.values()):
                self._queues[topology.name] = await declare_topology(channel, topology)
            for queue_name, callback in list(self._subscriptions.items()):
                await self._start_consumer(channel, queue_name, callback)
            return channel

    async def _open_with_backoff(self) -> AbstractConnection:
        attempt = 0
        while True:
            attempt += 1
            try:
                logger.info("Connecting to broker (attempt %d/%d)", attempt, self._max_attempts)
                return await self._connect_factory(self._url)
            except (AMQPConnectionError, OSError) as exc:
                if attempt >= self._max_attempts:
                    self._give_up(exc)
                    raise QueueUnavailableError(
                        f"Broker unreachable after {attempt} attempts"
                    ) from exc
                delay = backoff_delay(attempt, self._base_delay, self._max_delay)
                logger.warning(
                    "Broker connection attempt %d failed (%s), retrying in %.1fs",
                    attempt,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)

    def _give_up(self, exc: BaseException) -> None:
        self._state = ConnectionState.failed
        logger.critical("Giving up on broker after %d attempts: %s", self._max_attempts, exc)
        self.fatal.set()
        if self._on_fatal is not None:
            self._on_fatal()

    def _on_connection_closed(self, sender, exc: BaseException | None = None) -> None:
        if self._closing or sender is not self._connection:
            # closed on purpose, or a connection that has already been replaced
            return
        logger.warning("Broker connection closed unexpectedly: %s", exc)
        self._connection = None
        self._channel = None
        self._queues = {}
        self._state = ConnectionState.disconnected
        self._schedule_reconnect()

    def _on_channel_closed(self, sender, exc: BaseException | None = None) -> None:
        if self._closing or sender is not self._channel:
            return
        logger.warning("Broker channel closed unexpectedly: %s", exc)
        self._channel = None
        self._queues = {}
        self._state = ConnectionState.disconnected
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def _reconnect(self) -> None:
        try:
            await self.connect()
        except QueueUnavailableError:
            # fatal already signalled; nothing left to do in this task
            logger.error("Reconnect abandoned, process is unhealthy")

    async def declare(self, topology: QueueTopology) -> None:
        """Register a topology; it is (re)declared on every new channel."""
        async with self._lock:
            self._topologies[topology.name] = topology
            if self.is_connected:
                self._queues[topology.name] = await declare_topology(self._channel, topology)  # type: ignore[arg-type]

    async def publish(
        self,
        queue_name: str,
        body: bytes,
        *,
        priority: int | None = None,
        message_id: str | None = None,
        headers: dict | None = None,
    ) -> None:
        """Publish a persistent JSON message to ``queue_name`` via the default exchange."""
        channel = await self.connect()
        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            priority=priority,
            message_id=message_id,
            headers=headers,
        )
        await channel.default_exchange.publish(message, routing_key=queue_name)
        logger.debug("Published %s to %s (priority=%s)", message_id, queue_name, priority)

    async def subscribe(self, queue_name: str, callback: MessageCallback) -> None:
        """Consume ``queue_name`` with manual acks; re-registered after every reconnect."""
        await self.connect()
        async with self._lock:
            self._subscriptions[queue_name] = callback
            # if the channel dropped meanwhile, the reconnect starts it
            if self.is_connected:
                await self._start_consumer(self._channel, queue_name, callback)  # type: ignore[arg-type]

    async def _start_consumer(
        self, channel: AbstractChannel, queue_name: str, callback: MessageCallback
    ) -> None:
        queue = self._queues.get(queue_name)
        if queue is None:
            queue = await channel.declare_queue(queue_name, passive=True)
            self._queues[queue_name] = queue
        tag = await queue.consume(callback, no_ack=False, consumer_tag=make_consumer_tag())
        logger.info("Listening on %s (consumer %s)", queue_name, tag)

    async def close(self) -> None:
        self._closing = True
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        connection, self._connection = self._connection, None
        self._channel = None
        self._queues = {}
        self._state = ConnectionState.disconnected
        if connection is not None and not connection.is_closed:
            await connection.close()
        logger.info("Broker connection closed")
