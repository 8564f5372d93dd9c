"""Broker access: connection lifecycle, topology, envelopes and the consumer loop."""

from helpdispatch.queue.connection import ConnectionState, QueueConnection, backoff_delay
from helpdispatch.queue.consumer import ConsumerStats, MessageConsumer
from helpdispatch.queue.messages import DispatchMessage, Disposition, parse_message, priority_for
from helpdispatch.queue.priority import PriorityBuffer
from helpdispatch.queue.topology import QueueTopology, declare_topology, request_topology

__all__ = [
    "ConnectionState",
    "ConsumerStats",
    "DispatchMessage",
    "Disposition",
    "MessageConsumer",
    "PriorityBuffer",
    "QueueConnection",
    "QueueTopology",
    "backoff_delay",
    "declare_topology",
    "parse_message",
    "priority_for",
    "request_topology",
]
