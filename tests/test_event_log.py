from __future__ import annotations

import asyncio
import json

import pytest
from fakeredis import FakeAsyncRedis

from runstream.core.errors import MalformedEventError
from runstream.core.events import EventType
from runstream.distributed.consumer import RedisStreamsConsumer, StreamMessage
from runstream.distributed.redis_backend import stream_key, workflow_id_from_stream

GROUP = "event_ingest"


@pytest.fixture
def consumer(connections) -> RedisStreamsConsumer:
    return RedisStreamsConsumer(connections, block_ms=100)


async def _collect(consumer, stream: str, name: str, expected: int, handler=None) -> list[StreamMessage]:
    received: list[StreamMessage] = []
    stop = asyncio.Event()

    async def on_message(message: StreamMessage) -> None:
        if handler is not None:
            await handler(message)
        received.append(message)
        if len(received) >= expected:
            stop.set()

    await asyncio.wait_for(
        consumer.read_group(stream, GROUP, name, on_message, stop_event=stop),
        timeout=5,
    )
    return received


def test_stream_key_round_trip() -> None:
    assert stream_key("w1") == "workflow:w1:events"
    assert workflow_id_from_stream("workflow:w1:events") == "w1"
    assert workflow_id_from_stream("other") is None


@pytest.mark.asyncio
async def test_published_events_arrive_in_order(publisher, consumer) -> None:
    first = await publisher.workflow_started("w1", "Resolving issue #5")
    await publisher.tool_call("w1", "read_file", "call_1", {"path": "src/app.py"})
    await publisher.status("w1", "Opening pull request")
    last = await publisher.workflow_completed("w1", "PR opened")

    received = await _collect(consumer, stream_key("w1"), "c1", expected=4)

    assert [m.event.type for m in received] == [
        EventType.WORKFLOW_STARTED,
        EventType.TOOL_CALL,
        EventType.STATUS,
        EventType.WORKFLOW_COMPLETED,
    ]
    assert received[0].id == first
    assert received[-1].id == last
    assert json.loads(received[1].event.args) == {"path": "src/app.py"}
    assert await consumer.pending_count(stream_key("w1"), GROUP) == 0


@pytest.mark.asyncio
async def test_emit_validates_before_appending(publisher, event_store) -> None:
    with pytest.raises(MalformedEventError):
        await publisher.emit(EventType.TOOL_CALL, "w1", tool_name="read_file")

    assert await event_store.length("w1") == 0


@pytest.mark.asyncio
async def test_ensure_group_is_idempotent(consumer) -> None:
    assert await consumer.ensure_group(stream_key("w1"), GROUP) is True
    assert await consumer.ensure_group(stream_key("w1"), GROUP) is False


@pytest.mark.asyncio
async def test_ensure_group_keeps_delivery_cursor(publisher, consumer) -> None:
    stream = stream_key("w1")
    await consumer.ensure_group(stream, GROUP)
    await publisher.workflow_started("w1")
    await publisher.status("w1", "Working")
    received: list[StreamMessage] = []

    async def on_message(message: StreamMessage) -> None:
        received.append(message)

    await consumer.read_once({stream: ">"}, GROUP, "c1", on_message)
    assert len(received) == 2

    assert await consumer.ensure_group(stream, GROUP) is False
    assert await consumer.read_once({stream: ">"}, GROUP, "c1", on_message) == {}
    assert len(received) == 2


@pytest.mark.asyncio
async def test_failed_handler_leaves_entry_for_redelivery(publisher, consumer) -> None:
    await publisher.workflow_started("w1")
    await publisher.status("w1", "Working")
    stream = stream_key("w1")
    failures = {"left": 1}

    async def flaky(message: StreamMessage) -> None:
        if message.event.type is EventType.WORKFLOW_STARTED and failures["left"]:
            failures["left"] -= 1
            raise RuntimeError("database down")

    first_run = await _collect(consumer, stream, "c1", expected=1, handler=flaky)
    assert [m.event.type for m in first_run] == [EventType.STATUS]
    assert await consumer.pending_count(stream, GROUP) == 1

    # Same consumer restarts and re-reads its own pending entries first
    second_run = await _collect(consumer, stream, "c1", expected=1)
    assert [m.event.type for m in second_run] == [EventType.WORKFLOW_STARTED]
    assert await consumer.pending_count(stream, GROUP) == 0


@pytest.mark.asyncio
async def test_other_consumer_claims_abandoned_entries(publisher, consumer) -> None:
    await publisher.workflow_started("w1")
    stream = stream_key("w1")

    async def crash(message: StreamMessage) -> None:
        raise RuntimeError("crashed mid-handler")

    await consumer.ensure_group(stream, GROUP)
    await consumer.read_once({stream: ">"}, GROUP, "c1", crash)

    claimed: list[StreamMessage] = []

    async def keep(message: StreamMessage) -> None:
        claimed.append(message)

    assert await consumer.claim_pending(stream, GROUP, "c2", keep, min_idle_ms=0) == 1
    assert claimed[0].event.type is EventType.WORKFLOW_STARTED
    assert await consumer.pending_count(stream, GROUP) == 0


@pytest.mark.asyncio
async def test_malformed_entries_are_passed_through_raw(consumer, sync_redis) -> None:
    stream = stream_key("w1")
    sync_redis.xadd(stream, {"event": "not json at all"})
    sync_redis.xadd(stream, {"event": json.dumps({"type": "bogus", "workflowId": "w1"})})

    received = await _collect(consumer, stream, "c1", expected=2)

    assert all(m.malformed for m in received)
    assert received[0].event == "not json at all"
    assert received[1].event == {"type": "bogus", "workflowId": "w1"}


@pytest.mark.asyncio
async def test_event_store_reads_log_in_order(publisher, event_store, sync_redis) -> None:
    first = await publisher.workflow_started("w1")
    sync_redis.xadd(stream_key("w1"), {"event": "garbage"})
    last = await publisher.workflow_error("w1", "boom")

    events = await event_store.read_ordered("w1")

    assert [e.type for e in events] == [EventType.WORKFLOW_STARTED, EventType.WORKFLOW_ERROR]
    assert [e.id for e in events] == [first, last]


@pytest.mark.asyncio
async def test_status_is_mirrored_to_live_channel(publisher, redis_server) -> None:
    subscriber = FakeAsyncRedis(server=redis_server, decode_responses=True)
    pubsub = subscriber.pubsub()
    await pubsub.subscribe("job-status")
    await pubsub.get_message(timeout=0.1)  # subscribe confirmation

    await publisher.status("w1", "Cloning repository")

    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1)
    assert json.loads(message["data"]) == {"workflowId": "w1", "status": "Cloning repository"}

    await pubsub.aclose()
    await subscriber.aclose()
