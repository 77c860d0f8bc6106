"""
Queue job records and retry policy.

A job moves through:

    waiting -> active -> completed
    active -> delayed (retry backoff) -> waiting -> active
    active -> failed (terminal)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
import time
import uuid


class JobState(Enum):
    """Position of a job in its queue."""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class BackoffType(Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay growth between retry attempts."""
    type: BackoffType = BackoffType.EXPONENTIAL
    delay: int = 2000  # milliseconds

    def delay_for(self, attempts_made: int) -> int:
        """Delay in ms before the attempt following attempt number ``attempts_made``."""
        if self.type == BackoffType.FIXED:
            return self.delay
        return self.delay * (2 ** max(0, attempts_made - 1))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "delay": self.delay}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackoffPolicy":
        return cls(
            type=BackoffType(data.get("type", "exponential")),
            delay=int(data.get("delay", 0)),
        )


@dataclass(frozen=True)
class JobOptions:
    """Per-queue retry and retention policy."""
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    remove_on_complete: int = 100  # completed records kept
    remove_on_fail: int = 50  # failed records kept

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": self.backoff.to_dict(),
            "removeOnComplete": self.remove_on_complete,
            "removeOnFail": self.remove_on_fail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobOptions":
        return cls(
            attempts=int(data.get("attempts", 3)),
            backoff=BackoffPolicy.from_dict(data.get("backoff") or {}),
            remove_on_complete=int(data.get("removeOnComplete", 100)),
            remove_on_fail=int(data.get("removeOnFail", 50)),
        )


DEFAULT_JOB_OPTIONS = JobOptions()


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class QueueJob:
    """A unit of work: a named workflow plus its parameters."""
    name: str
    data: Dict[str, Any]
    queue: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    opts: JobOptions = field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    timestamp: int = field(default_factory=now_ms)  # creation time, ms
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None
    return_value: Any = None

    @property
    def workflow_id(self) -> str:
        """Run this job drives. Callers may pin it with ``data['workflowId']``."""
        return str(self.data.get("workflowId") or self.id)

    @property
    def attempts_left(self) -> int:
        return max(0, self.opts.attempts - self.attempts_made)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "queue": self.queue,
            "data": self.data,
            "opts": self.opts.to_dict(),
            "state": self.state.value,
            "attemptsMade": self.attempts_made,
            "timestamp": self.timestamp,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
            "failedReason": self.failed_reason,
            "returnvalue": self.return_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueJob":
        return cls(
            id=data["id"],
            name=data["name"],
            queue=data["queue"],
            data=data.get("data") or {},
            opts=JobOptions.from_dict(data.get("opts") or {}),
            state=JobState(data.get("state", "waiting")),
            attempts_made=data.get("attemptsMade", 0),
            timestamp=data.get("timestamp", 0),
            processed_on=data.get("processedOn"),
            finished_on=data.get("finishedOn"),
            failed_reason=data.get("failedReason"),
            return_value=data.get("returnvalue"),
        )
