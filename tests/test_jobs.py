from __future__ import annotations

import pytest

from runstream.core.errors import UnknownJobError
from runstream.core.jobs import BackoffPolicy, BackoffType, JobOptions, JobState, QueueJob
from runstream.core.registry import JobRouter


def test_exponential_backoff_doubles_per_attempt() -> None:
    policy = BackoffPolicy(delay=2000)

    assert [policy.delay_for(n) for n in (1, 2, 3)] == [2000, 4000, 8000]


def test_fixed_backoff_is_constant() -> None:
    policy = BackoffPolicy(type=BackoffType.FIXED, delay=500)

    assert [policy.delay_for(n) for n in (1, 2, 5)] == [500, 500, 500]


def test_default_options() -> None:
    options = JobOptions()

    assert options.attempts == 3
    assert options.backoff == BackoffPolicy(BackoffType.EXPONENTIAL, 2000)
    assert options.remove_on_complete == 100
    assert options.remove_on_fail == 50


def test_job_record_uses_wire_keys() -> None:
    job = QueueJob(name="resolveIssue", data={"issueNumber": 5}, queue="workflow-jobs", id="j1")
    job.attempts_made = 2
    job.state = JobState.DELAYED

    data = job.to_dict()
    restored = QueueJob.from_dict(data)

    assert data["attemptsMade"] == 2
    assert data["opts"]["backoff"] == {"type": "exponential", "delay": 2000}
    assert restored.state is JobState.DELAYED
    assert restored.attempts_left == 1


def test_workflow_id_defaults_to_job_id() -> None:
    assert QueueJob(name="x", data={}, queue="q", id="j1").workflow_id == "j1"
    assert QueueJob(name="x", data={"workflowId": "w9"}, queue="q", id="j1").workflow_id == "w9"


@pytest.mark.asyncio
async def test_router_dispatches_by_job_name() -> None:
    router = JobRouter()

    @router.register("resolveIssue")
    async def resolve(job):
        return f"resolved {job.data['issueNumber']}"

    @router.register("summarize")
    def summarize(job):
        return "sync result"

    assert await router(QueueJob(name="resolveIssue", data={"issueNumber": 5}, queue="q")) == "resolved 5"
    assert await router(QueueJob(name="summarize", data={}, queue="q")) == "sync result"
    assert router.list_jobs() == ["resolveIssue", "summarize"]


@pytest.mark.asyncio
async def test_router_rejects_unknown_job_name() -> None:
    router = JobRouter()

    with pytest.raises(UnknownJobError):
        await router(QueueJob(name="nope", data={}, queue="q"))


def test_router_rejects_duplicate_registration() -> None:
    router = JobRouter()
    router.register_handler("a", lambda job: None)

    with pytest.raises(ValueError):
        router.register_handler("a", lambda job: None)
