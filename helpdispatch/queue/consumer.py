"""Consumer loop: validate deliveries, run the handler, settle by disposition.

Mapping from handler outcome to broker action:

==================  =============================================
processed           ack
schema_invalid      reject without requeue (routed to the DLQ)
business_fatal      reject without requeue (routed to the DLQ)
business_retryable  publish a copy to the retry lane, then ack
==================  =============================================

Handler exceptions count as ``business_fatal``: processing errors are not
retried automatically, only the explicit retryable outcome is.

Deliveries whose channel has closed are left alone: their delivery tags are
dead and the broker redelivers them to the next channel, so settling or
republishing them would only duplicate work.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Protocol

from aio_pika.abc import AbstractIncomingMessage
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from helpdispatch.errors import QueueUnavailableError, SchemaError
from helpdispatch.queue.connection import MessageCallback
from helpdispatch.queue.messages import DispatchMessage, Disposition, parse_message
from helpdispatch.queue.priority import PriorityBuffer
from helpdispatch.queue.topology import QueueTopology

logger = logging.getLogger("helpdispatch.consumer")

Handler = Callable[[DispatchMessage], Awaitable[Disposition]]


class BrokerClient(Protocol):
    async def declare(self, topology: QueueTopology) -> None: ...

    async def subscribe(self, queue_name: str, callback: MessageCallback) -> None: ...

    async def publish(
        self,
        queue_name: str,
        body: bytes,
        *,
        priority: int | None = None,
        message_id: str | None = None,
        headers: dict | None = None,
    ) -> None: ...


@dataclass
class ConsumerStats:
    received: int = 0
    processed: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    abandoned: int = 0

    def snapshot(self) -> dict[str, int]:
        return asdict(self)


class MessageConsumer:
    def __init__(
        self,
        broker: BrokerClient,
        topology: QueueTopology,
        handler: Handler,
        *,
        concurrency: int = 1,
        buffer_size: int = 0,
        max_attempts: int | None = None,
    ) -> None:
        self._broker = broker
        self._topology = topology
        self._handler = handler
        self._concurrency = max(1, concurrency)
        self._max_attempts = max_attempts
        self._buffer: PriorityBuffer[AbstractIncomingMessage] = PriorityBuffer(buffer_size)
        self._workers: list[asyncio.Task] = []
        self.stats = ConsumerStats()

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        await self._broker.declare(self._topology)
        # deliveries arriving before the workers exist wait in the buffer
        await self._broker.subscribe(self._topology.name, self.on_delivery)
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"dispatch-worker-{i}")
            for i in range(self._concurrency)
        ]
        logger.info(
            "Consumer started on %s with %d workers", self._topology.name, self._concurrency
        )

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        # anything still buffered is unacked and goes back to the queue with the channel
        logger.info("Consumer stopped (%d deliveries left unacked)", self._buffer.qsize())

    async def on_delivery(self, message: AbstractIncomingMessage) -> None:
        self.stats.received += 1
        await self._buffer.put(message.priority or 0, message)

    async def process_next(self) -> Disposition | None:
        """Take the most urgent buffered delivery and settle it."""
        message = await self._buffer.get()
        try:
            return await self.process(message)
        finally:
            self._buffer.task_done()

    async def _worker_loop(self, index: int) -> None:
        while True:
            try:
                await self.process_next()
            except Exception:
                logger.exception("Consumer worker %d failed to settle a delivery", index)

    async def process(self, message: AbstractIncomingMessage) -> Disposition | None:
        if self._abandon_if_stale(message):
            return None
        try:
            envelope = parse_message(message.body)
        except SchemaError as exc:
            logger.warning("Dead-lettering message %s: %s", message.message_id, exc.detail)
            await self._dead_letter(message)
            return Disposition.schema_invalid

        try:
            disposition = await self._handler(envelope)
        except Exception:
            logger.exception(
                "Handler failed for message %s (request %s)",
                envelope.message_id,
                envelope.request_id,
            )
            disposition = Disposition.business_fatal

        await self._settle(message, envelope, disposition)
        return disposition

    def _abandon_if_stale(self, message: AbstractIncomingMessage) -> bool:
        try:
            if not message.channel.is_closed:
                return False
        except ChannelInvalidStateError:
            # aio-pika refuses to hand out a closed delivery channel
            pass
        self.stats.abandoned += 1
        logger.info(
            "Leaving message %s for redelivery, its channel is closed", message.message_id
        )
        return True

    async def _settle(
        self,
        message: AbstractIncomingMessage,
        envelope: DispatchMessage,
        disposition: Disposition,
    ) -> None:
        if self._abandon_if_stale(message):
            return
        if disposition is Disposition.processed:
            await message.ack()
            self.stats.processed += 1
            logger.info(
                "Processed message %s (request %s)", envelope.message_id, envelope.request_id
            )
        elif disposition is Disposition.business_retryable:
            await self._retry(message, envelope)
        else:
            logger.warning(
                "Dead-lettering message %s (request %s): %s",
                envelope.message_id,
                envelope.request_id,
                disposition.value,
            )
            await self._dead_letter(message)

    async def _dead_letter(self, message: AbstractIncomingMessage) -> None:
        await message.reject(requeue=False)
        self.stats.failed += 1
        self.stats.dead_lettered += 1

    async def _retry(self, message: AbstractIncomingMessage, envelope: DispatchMessage) -> None:
        if self._max_attempts is not None and envelope.attempt + 1 >= self._max_attempts:
            logger.warning(
                "Request %s reached %d dispatch attempts, dead-lettering",
                envelope.request_id,
                envelope.attempt + 1,
            )
            await self._dead_letter(message)
            return

        if not self._topology.retry_name:
            await message.nack(requeue=True)
            self.stats.retried += 1
            return

        retry = envelope.next_attempt()
        try:
            await self._broker.publish(
                self._topology.retry_name,
                retry.to_body(),
                priority=message.priority or envelope.priority,
                message_id=retry.message_id,
            )
        except (QueueUnavailableError, AMQPError):
            logger.exception(
                "Could not schedule retry for request %s, returning it to %s",
                envelope.request_id,
                self._topology.name,
            )
            await message.nack(requeue=True)
            return

        # the retry copy is durable on the broker before the original goes away
        await message.ack()
        self.stats.retried += 1
        logger.info(
            "Request %s scheduled for redelivery in %dms (attempt %d)",
            envelope.request_id,
            self._topology.retry_ttl_ms,
            retry.attempt,
        )
