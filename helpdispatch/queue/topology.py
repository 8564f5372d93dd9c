"""Queue topology: main work queue, its dead-letter queue and the TTL retry lane.

- ``<name>``: durable, dead-letters to ``<name>.dlq``, broker-side priority.
- ``<name>.dlq``: durable sink for rejected messages, drained by operators.
- retry lane: durable, fixed per-queue TTL, dead-letters back to ``<name>``.
  A message published there expires after the TTL and is redelivered to the
  main queue without any timer in this process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractQueue

from helpdispatch.config import Settings

logger = logging.getLogger("helpdispatch.queue")


@dataclass(frozen=True)
class QueueTopology:
    name: str
    retry_name: str | None = None
    retry_ttl_ms: int = 5000
    max_priority: int | None = 10

    @property
    def dlq_name(self) -> str:
        return f"{self.name}.dlq"

    def main_arguments(self) -> dict[str, Any]:
        args: dict[str, Any] = {
            # "" is the default exchange: route by queue name.
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": self.dlq_name,
        }
        if self.max_priority:
            args["x-max-priority"] = self.max_priority
        return args

    def retry_arguments(self) -> dict[str, Any]:
        return {
            "x-message-ttl": self.retry_ttl_ms,
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": self.name,
        }


def request_topology(config: Settings) -> QueueTopology:
    return QueueTopology(
        name=config.request_queue,
        retry_name=config.retry_queue,
        retry_ttl_ms=config.retry_ttl_ms,
        max_priority=config.max_priority,
    )


async def declare_topology(channel: AbstractChannel, topology: QueueTopology) -> AbstractQueue:
    """Declare all queues of a topology (idempotent). Returns the main queue."""
    await channel.declare_queue(topology.dlq_name, durable=True)
    queue = await channel.declare_queue(
        topology.name, durable=True, arguments=topology.main_arguments()
    )
    if topology.retry_name:
        await channel.declare_queue(
            topology.retry_name, durable=True, arguments=topology.retry_arguments()
        )
    logger.info(
        "Declared queue %s (dlq=%s, retry=%s, ttl=%dms)",
        topology.name,
        topology.dlq_name,
        topology.retry_name,
        topology.retry_ttl_ms,
    )
    return queue
