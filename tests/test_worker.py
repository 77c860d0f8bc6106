from __future__ import annotations

import asyncio
import json
import signal

import pytest
from fakeredis import FakeAsyncRedis

from runstream.core.errors import ConfigurationError, StoreConnectionError, UnknownQueueError
from runstream.core.events import EventType, WorkflowEvent
from runstream.core.jobs import BackoffPolicy, JobOptions, JobState
from runstream.core.registry import JobRouter
from runstream.core.state import WorkflowState, WorkflowStateTracker
from runstream.core.store import InMemoryEventStore
from runstream.distributed.job_queue import STALLED_REASON
from runstream.distributed.publisher import EventPublisher
from runstream.distributed.worker import SHUTDOWN_REASON, WorkerPool

RETRY_OPTIONS = JobOptions(attempts=3, backoff=BackoffPolicy(delay=2000))


@pytest.fixture
def pool(connections, publisher, live, clock) -> WorkerPool:
    return WorkerPool(
        connections,
        publisher=publisher,
        live=live,
        clock=clock,
        claim_timeout=0.1,
        poll_interval=0.05,
    )


async def _event_types(event_store, workflow_id: str) -> list[EventType]:
    return [e.type for e in await event_store.read_ordered(workflow_id)]


async def _drain(pubsub) -> list[dict]:
    updates = []
    for _ in range(5):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
        if message is not None:
            updates.append(json.loads(message["data"]))
    return updates


@pytest.mark.asyncio
async def test_job_succeeds_on_third_attempt(pool, clock, event_store) -> None:
    attempts = []

    async def flaky(job):
        attempts.append(job.attempts_made)
        if len(attempts) < 3:
            raise RuntimeError("upstream timeout")
        return "PR opened"

    queue = pool.register("workflow-jobs", flaky, options=RETRY_OPTIONS)
    job_id = await queue.enqueue("resolveIssue", {"workflowId": "w1"})

    job = await queue.claim(timeout=1)
    assert await pool.process_job("workflow-jobs", job) is JobState.DELAYED

    clock.advance(2000)
    assert await queue.promote_delayed() == 1
    job = await queue.claim(timeout=1)
    assert await pool.process_job("workflow-jobs", job) is JobState.DELAYED

    clock.advance(3999)
    assert await queue.promote_delayed() == 0
    clock.advance(1)
    assert await queue.promote_delayed() == 1
    job = await queue.claim(timeout=1)
    assert await pool.process_job("workflow-jobs", job) is JobState.COMPLETED

    stored = await queue.get_job(job_id)
    assert stored.state is JobState.COMPLETED
    assert stored.attempts_made == 3
    assert stored.return_value == "PR opened"
    assert attempts == [1, 2, 3]
    assert await _event_types(event_store, "w1") == [
        EventType.WORKFLOW_STARTED,
        EventType.WORKFLOW_COMPLETED,
    ]


@pytest.mark.asyncio
async def test_exhausted_job_publishes_error(pool, clock, event_store, redis_server) -> None:
    subscriber = FakeAsyncRedis(server=redis_server, decode_responses=True)
    pubsub = subscriber.pubsub()
    await pubsub.subscribe("job-status")

    async def broken(job):
        raise RuntimeError("model refused")

    queue = pool.register("workflow-jobs", broken, options=JobOptions(attempts=2))
    await queue.enqueue("resolveIssue", {"workflowId": "w1"})

    states = []
    for _ in range(2):
        job = await queue.claim(timeout=1)
        states.append(await pool.process_job("workflow-jobs", job))
        clock.advance(60_000)
        await queue.promote_delayed()

    assert states == [JobState.DELAYED, JobState.FAILED]
    events = await event_store.read_ordered("w1")
    assert [e.type for e in events] == [EventType.WORKFLOW_STARTED, EventType.WORKFLOW_ERROR]
    assert events[-1].content == "model refused"
    assert await _drain(pubsub) == [{"workflowId": "w1", "status": "Failed: model refused"}]

    await pubsub.aclose()
    await subscriber.aclose()


@pytest.mark.asyncio
async def test_unknown_job_name_fails_without_retry(pool, event_store) -> None:
    router = JobRouter()
    queue = pool.register("workflow-jobs", router, options=RETRY_OPTIONS)
    job_id = await queue.enqueue("noSuchWorkflow", {"workflowId": "w1"})

    job = await queue.claim(timeout=1)

    assert await pool.process_job("workflow-jobs", job) is JobState.FAILED
    stored = await queue.get_job(job_id)
    assert stored.attempts_made == 1
    assert "noSuchWorkflow" in stored.failed_reason
    assert (await _event_types(event_store, "w1"))[-1] is EventType.WORKFLOW_ERROR


def test_one_processor_per_queue(pool) -> None:
    pool.register("workflow-jobs", JobRouter())

    with pytest.raises(ConfigurationError):
        pool.register("workflow-jobs", JobRouter())
    with pytest.raises(UnknownQueueError):
        pool.get_queue("other")


@pytest.mark.asyncio
async def test_running_pool_processes_jobs(pool, event_store) -> None:
    done = asyncio.Event()

    async def handler(job):
        done.set()
        return "ok"

    queue = pool.register("workflow-jobs", handler, concurrency=2)
    await queue.enqueue("resolveIssue", {"workflowId": "w1"}, job_id="j1")

    await pool.start()
    await asyncio.wait_for(done.wait(), timeout=5)
    for _ in range(100):
        if (await queue.get_job("j1")).state is JobState.COMPLETED:
            break
        await asyncio.sleep(0.02)
    await pool.stop(timeout=5)

    assert (await queue.get_job("j1")).state is JobState.COMPLETED
    assert not pool.is_running


@pytest.mark.asyncio
async def test_stop_cancels_stragglers_and_records_attempt(pool) -> None:
    started = asyncio.Event()

    async def hangs(job):
        started.set()
        await asyncio.Event().wait()

    queue = pool.register("workflow-jobs", hangs, options=RETRY_OPTIONS)
    await queue.enqueue("resolveIssue", {"workflowId": "w1"}, job_id="j1")

    await pool.start()
    await asyncio.wait_for(started.wait(), timeout=5)
    assert pool.current_load == 1

    await pool.stop(timeout=0.1)

    stored = await queue.get_job("j1")
    assert stored.state is JobState.DELAYED
    assert stored.failed_reason == SHUTDOWN_REASON
    assert pool.current_load == 0


class FlakyStore(InMemoryEventStore):
    """In-memory log whose appends of the given kinds fail until healed."""

    def __init__(self, *failing: EventType) -> None:
        super().__init__()
        self.failing = set(failing)

    async def append(self, workflow_id: str, event: WorkflowEvent) -> str:
        if event.type in self.failing:
            raise StoreConnectionError("store blip")
        return await super().append(workflow_id, event)


class BrokenLive:
    async def completed(self, workflow_id: str, detail: str | None = None) -> int:
        raise ConnectionError("pubsub down")

    async def failed(self, workflow_id: str, reason: str) -> int:
        raise ConnectionError("pubsub down")


@pytest.mark.asyncio
async def test_unrecorded_completion_leaves_job_for_redelivery(connections, clock, sync_redis) -> None:
    store = FlakyStore(EventType.WORKFLOW_COMPLETED)
    pool = WorkerPool(connections, publisher=EventPublisher(store), clock=clock)

    async def handler(job):
        return "done"

    queue = pool.register("workflow-jobs", handler, options=RETRY_OPTIONS)
    await queue.enqueue("resolveIssue", {"workflowId": "w1"}, job_id="j1")

    with pytest.raises(StoreConnectionError):
        await pool.process_job("workflow-jobs", await queue.claim(timeout=1))

    assert (await queue.get_job("j1")).state is JobState.ACTIVE
    assert await WorkflowStateTracker(store).get_state("w1") is WorkflowState.RUNNING

    store.failing.clear()
    sync_redis.delete("runstream:queue:workflow-jobs:lock:j1")
    await queue.recover_stalled()
    assert await queue.recover_stalled() == ["j1"]

    job = await queue.claim(timeout=1)
    assert await pool.process_job("workflow-jobs", job) is JobState.COMPLETED
    assert await WorkflowStateTracker(store).get_state("w1") is WorkflowState.COMPLETED


@pytest.mark.asyncio
async def test_unrecorded_final_failure_is_not_marked_failed(connections, clock) -> None:
    store = FlakyStore(EventType.WORKFLOW_ERROR)
    pool = WorkerPool(connections, publisher=EventPublisher(store), clock=clock)

    async def broken(job):
        raise RuntimeError("model refused")

    queue = pool.register("workflow-jobs", broken, options=JobOptions(attempts=1))
    await queue.enqueue("resolveIssue", {"workflowId": "w1"}, job_id="j1")

    with pytest.raises(StoreConnectionError):
        await pool.process_job("workflow-jobs", await queue.claim(timeout=1))

    assert (await queue.get_job("j1")).state is JobState.ACTIVE


@pytest.mark.asyncio
async def test_live_channel_outage_does_not_block_terminal_event(connections, clock, memory_store) -> None:
    pool = WorkerPool(
        connections, publisher=EventPublisher(memory_store), live=BrokenLive(), clock=clock
    )

    async def broken(job):
        raise RuntimeError("model refused")

    queue = pool.register("workflow-jobs", broken, options=JobOptions(attempts=1))
    await queue.enqueue("resolveIssue", {"workflowId": "w1"}, job_id="j1")

    assert await pool.process_job("workflow-jobs", await queue.claim(timeout=1)) is JobState.FAILED
    assert (await queue.get_job("j1")).state is JobState.FAILED
    assert await WorkflowStateTracker(memory_store).get_state("w1") is WorkflowState.ERROR


@pytest.mark.asyncio
async def test_job_stalled_past_its_limit_is_reported_failed(
    pool, event_store, redis_server, sync_redis
) -> None:
    subscriber = FakeAsyncRedis(server=redis_server, decode_responses=True)
    pubsub = subscriber.pubsub()
    await pubsub.subscribe("job-status")

    async def handler(job):
        return "never runs"

    queue = pool.register("workflow-jobs", handler, options=JobOptions(attempts=1))
    await queue.enqueue("resolveIssue", {"workflowId": "w1"}, job_id="j1")
    await queue.claim(timeout=1)
    sync_redis.delete("runstream:queue:workflow-jobs:lock:j1")
    await queue.recover_stalled()
    await queue.recover_stalled()

    job = await queue.claim(timeout=1)
    assert job.state is JobState.FAILED

    assert await pool.process_job("workflow-jobs", job) is JobState.FAILED
    events = await event_store.read_ordered("w1")
    assert [e.type for e in events] == [EventType.WORKFLOW_ERROR]
    assert events[0].content == STALLED_REASON
    assert await _drain(pubsub) == [{"workflowId": "w1", "status": f"Failed: {STALLED_REASON}"}]

    await pubsub.aclose()
    await subscriber.aclose()


@pytest.mark.asyncio
async def test_run_until_stop_requested_then_restores_signals(pool) -> None:
    async def handler(job):
        return "ok"

    pool.register("workflow-jobs", handler)
    task = asyncio.create_task(pool.run())
    for _ in range(100):
        if pool.is_running:
            break
        await asyncio.sleep(0.01)
    assert pool.is_running

    pool.request_stop()
    await asyncio.wait_for(task, timeout=5)

    assert not pool.is_running
    loop = asyncio.get_running_loop()
    assert loop.remove_signal_handler(signal.SIGTERM) is False
    assert loop.remove_signal_handler(signal.SIGINT) is False
