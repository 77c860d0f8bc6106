# Core types: events, jobs, run state, event storage

from .errors import (
    RunstreamError,
    StoreConnectionError,
    ConfigurationError,
    UnknownQueueError,
    UnknownJobError,
    JobExecutionError,
    MalformedEventError,
    ClientDisconnectError,
)
from .events import EventType, WorkflowEvent, parse_event
from .jobs import BackoffPolicy, BackoffType, JobOptions, JobState, QueueJob
from .registry import JobRouter
from .state import WorkflowRun, WorkflowState, WorkflowStateTracker, derive_state
from .store import EventStore, InMemoryEventStore

__all__ = [
    "RunstreamError",
    "StoreConnectionError",
    "ConfigurationError",
    "UnknownQueueError",
    "UnknownJobError",
    "JobExecutionError",
    "MalformedEventError",
    "ClientDisconnectError",
    "EventType",
    "WorkflowEvent",
    "parse_event",
    "BackoffPolicy",
    "BackoffType",
    "JobOptions",
    "JobState",
    "QueueJob",
    "JobRouter",
    "WorkflowRun",
    "WorkflowState",
    "WorkflowStateTracker",
    "derive_state",
    "EventStore",
    "InMemoryEventStore",
]
