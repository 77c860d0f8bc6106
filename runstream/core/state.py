"""
Workflow run state.

A run's lifecycle state is never stored directly. It is derived from the
run's event log: the latest lifecycle event, by log position, wins.
Embedded timestamps are ignored so clock skew between producers cannot
reorder transitions.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional
from datetime import datetime
from enum import Enum

from .events import EventType, WorkflowEvent
from .jobs import QueueJob
from .store import EventStore


class WorkflowState(Enum):
    """Lifecycle state of a workflow run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.COMPLETED, WorkflowState.ERROR)


_LIFECYCLE_STATES = {
    EventType.WORKFLOW_STARTED: WorkflowState.RUNNING,
    EventType.WORKFLOW_COMPLETED: WorkflowState.COMPLETED,
    EventType.WORKFLOW_ERROR: WorkflowState.ERROR,
}


def derive_state(events: Iterable[WorkflowEvent]) -> WorkflowState:
    """Return the state named by the last lifecycle event in ``events``."""
    state = WorkflowState.PENDING
    for event in events:
        state = _LIFECYCLE_STATES.get(event.type, state)
    return state


@dataclass
class WorkflowRun:
    """One execution of a named workflow."""
    id: str
    workflow_name: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    actor: Optional[str] = None
    repo_full_name: Optional[str] = None
    issue_number: Optional[int] = None
    commit_sha: Optional[str] = None

    @classmethod
    def from_job(cls, job: QueueJob) -> "WorkflowRun":
        data = job.data
        return cls(
            id=job.workflow_id,
            workflow_name=job.name,
            created_at=datetime.utcfromtimestamp(job.timestamp / 1000),
            actor=data.get("actor"),
            repo_full_name=data.get("repoFullName"),
            issue_number=data.get("issueNumber"),
            commit_sha=data.get("commitSha"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflowName": self.workflow_name,
            "createdAt": self.created_at.isoformat(),
            "actor": self.actor,
            "repoFullName": self.repo_full_name,
            "issueNumber": self.issue_number,
            "commitSha": self.commit_sha,
        }


class WorkflowStateTracker:
    """
    Answers "what state is run W in?" by scanning its event log.

    Each query is linear in the number of events in the run.

    Example:
        tracker = WorkflowStateTracker(store)
        state = await tracker.get_state("w1")
        if state.is_terminal:
            ...
    """

    def __init__(self, store: EventStore):
        self.store = store

    async def get_state(self, workflow_id: str) -> WorkflowState:
        events = await self.store.read_ordered(workflow_id)
        return derive_state(events)

    async def is_terminal(self, workflow_id: str) -> bool:
        return (await self.get_state(workflow_id)).is_terminal

    async def get_last_lifecycle_event(self, workflow_id: str) -> Optional[WorkflowEvent]:
        events = await self.store.read_ordered(workflow_id)
        for event in reversed(events):
            if event.type in _LIFECYCLE_STATES:
                return event
        return None
