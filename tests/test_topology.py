import pytest

from helpdispatch.config import Settings
from helpdispatch.db_models import Urgency
from helpdispatch.errors import SchemaError
from helpdispatch.queue.messages import DispatchMessage, parse_message, priority_for
from helpdispatch.queue.topology import QueueTopology, declare_topology, request_topology
from tests.conftest import FakeChannel


def test_request_topology_from_settings():
    topology = request_topology(Settings())

    assert topology.name == "request_created"
    assert topology.dlq_name == "request_created.dlq"
    assert topology.retry_name == "request_retry"
    assert topology.main_arguments() == {
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": "request_created.dlq",
        "x-max-priority": 10,
    }
    # expired retries flow back into the main queue
    assert topology.retry_arguments() == {
        "x-message-ttl": 5000,
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": "request_created",
    }


@pytest.mark.asyncio
async def test_declare_topology_declares_all_three_durable_queues():
    channel = FakeChannel()
    topology = QueueTopology(name="request_created", retry_name="request_retry", retry_ttl_ms=250)

    queue = await declare_topology(channel, topology)

    assert queue.name == "request_created"
    declared = {name: (durable, args) for name, durable, args, _passive in channel.declare_calls}
    assert set(declared) == {"request_created", "request_created.dlq", "request_retry"}
    assert all(durable for durable, _ in declared.values())
    assert declared["request_retry"][1]["x-message-ttl"] == 250


@pytest.mark.asyncio
async def test_topology_without_retry_lane_or_priority():
    channel = FakeChannel()
    topology = QueueTopology(name="plain", max_priority=None)

    await declare_topology(channel, topology)

    assert set(channel.queues) == {"plain", "plain.dlq"}
    assert "x-max-priority" not in topology.main_arguments()


def test_urgency_priorities_are_ordered():
    assert priority_for(Urgency.urgent) == 9
    assert priority_for("high") == 6
    assert priority_for(Urgency.medium) == 3
    assert priority_for(Urgency.low) == 1
    assert priority_for(None) == 1
    assert priority_for("bogus") == 1


def test_message_body_and_next_attempt():
    message = DispatchMessage(request_id=3, urgency=Urgency.urgent)
    retry = message.next_attempt()

    assert message.message_id.startswith("msg_")
    assert retry.attempt == 1
    assert retry.request_id == 3
    assert message.attempt == 0
    parsed = parse_message(retry.to_body())
    assert parsed.attempt == 1
    assert parsed.priority == 9
    assert b"helper_id" not in message.to_body()


def test_parse_message_rejects_bad_bytes():
    with pytest.raises(SchemaError):
        parse_message(b"\xff\xfe")
    with pytest.raises(SchemaError) as exc_info:
        parse_message(b'{"request_id": 1, "attempt": -1}')
    assert "attempt" in exc_info.value.detail
