"""
runstream
=========

Durable job queue, per-run event log and live status streaming for
long-running agent workflows.

Quick Start
-----------

Submit a run (web process or script):

    from runstream.distributed import ConnectionManager, RedisJobQueue

    connections = ConnectionManager("redis://localhost:6379/0")
    await connections.connect()

    queue = RedisJobQueue(connections, "workflow-jobs")
    job_id = await queue.enqueue(
        "resolveIssue",
        {"workflowId": "w1", "repoFullName": "acme/widgets", "issueNumber": 42},
    )

Run it (worker machines):

    from runstream import JobRouter
    from runstream.distributed import (
        EventPublisher, LiveStatusChannel, RedisEventStore, WorkerPool,
    )

    live = LiveStatusChannel(connections)
    publisher = EventPublisher(RedisEventStore(connections), live=live)

    router = JobRouter()

    @router.register("resolveIssue")
    async def resolve_issue(job):
        await publisher.status(job.workflow_id, "Fetching issue")
        ...
        return "PR opened"

    pool = WorkerPool(connections, publisher=publisher, live=live)
    pool.register("workflow-jobs", router, concurrency=1)
    await pool.run()  # until SIGINT/SIGTERM

Follow it (browser):

    GET /api/sse?workflowId=w1      live status, ends with "Stream finished"
    GET /api/workflow-runs/w1/status   state derived from the event log
"""

__version__ = "0.1.0"

from runstream.core import (
    EventType,
    WorkflowEvent,
    QueueJob,
    JobOptions,
    BackoffPolicy,
    JobState,
    JobRouter,
    WorkflowState,
    WorkflowStateTracker,
    EventStore,
    InMemoryEventStore,
    RunstreamError,
)

__all__ = [
    "__version__",
    # Events
    "EventType",
    "WorkflowEvent",
    # Jobs
    "QueueJob",
    "JobOptions",
    "BackoffPolicy",
    "JobState",
    "JobRouter",
    # Run state
    "WorkflowState",
    "WorkflowStateTracker",
    # Storage
    "EventStore",
    "InMemoryEventStore",
    # Errors
    "RunstreamError",
]
