"""
Workflow events.

An event is an immutable, typed record of one step in a workflow run.
Events live in a per-run append-only log; their order is the log order,
never the embedded timestamp.

The set of event kinds is closed (``EventType``). Each kind declares the
fields it requires in ``EVENT_FIELDS``; any table keyed by ``EventType``
can be checked for exhaustiveness with ``assert_exhaustive``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union
from datetime import datetime, timezone
from enum import Enum
import json

from .errors import MalformedEventError


class EventType(Enum):
    """Kinds of events in a workflow run's log."""
    STATUS = "status"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_ERROR = "workflow.error"
    ISSUE_FETCHED = "issue.fetched"
    SYSTEM_PROMPT = "system_prompt"
    USER_MESSAGE = "user_message"
    ASSISTANT_MESSAGE = "assistant_message"
    TOOL_CALL = "tool_call"
    TOOL_CALL_RESULT = "tool_call_result"
    REASONING = "reasoning"
    LLM_STARTED = "llm.started"
    LLM_COMPLETED = "llm.completed"

    @property
    def is_lifecycle(self) -> bool:
        return self in LIFECYCLE_EVENTS


LIFECYCLE_EVENTS = frozenset({
    EventType.WORKFLOW_STARTED,
    EventType.WORKFLOW_COMPLETED,
    EventType.WORKFLOW_ERROR,
})

# Fields that must be present (non-None) for each kind.
EVENT_FIELDS: Dict[EventType, Tuple[str, ...]] = {
    EventType.STATUS: ("content",),
    EventType.WORKFLOW_STARTED: (),
    EventType.WORKFLOW_COMPLETED: (),
    EventType.WORKFLOW_ERROR: ("content",),
    EventType.ISSUE_FETCHED: (),
    EventType.SYSTEM_PROMPT: ("content",),
    EventType.USER_MESSAGE: ("content",),
    EventType.ASSISTANT_MESSAGE: ("content",),
    EventType.TOOL_CALL: ("tool_name", "tool_call_id", "args"),
    EventType.TOOL_CALL_RESULT: ("tool_name", "tool_call_id", "content"),
    EventType.REASONING: ("content",),
    EventType.LLM_STARTED: (),
    EventType.LLM_COMPLETED: (),
}

# Python attribute -> wire key
_WIRE_KEYS = {
    "workflow_id": "workflowId",
    "tool_name": "toolName",
    "tool_call_id": "toolCallId",
    "args": "args",
    "model": "model",
    "content": "content",
    "metadata": "metadata",
    "timestamp": "timestamp",
}


def assert_exhaustive(table: Mapping[EventType, Any], name: str) -> None:
    """Fail loudly when a table keyed by EventType misses a kind."""
    missing = [t.value for t in EventType if t not in table]
    if missing:
        raise TypeError(f"{name} does not handle event types: {', '.join(missing)}")


assert_exhaustive(EVENT_FIELDS, "EVENT_FIELDS")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class WorkflowEvent:
    """
    One event in a workflow run.

    ``id`` is assigned by the log on append and is ``None`` until then.

    Example:
        event = WorkflowEvent(
            type=EventType.TOOL_CALL,
            workflow_id="w1",
            tool_name="search",
            tool_call_id="call_1",
            args='{"q": "redis"}',
        )
    """
    type: EventType
    workflow_id: str
    content: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    tool_name: Optional[str] = None
    tool_call_id: Optional[str] = None
    args: Optional[str] = None
    model: Optional[str] = None
    timestamp: Optional[str] = None
    id: Optional[str] = field(default=None, compare=False)

    def validate(self) -> "WorkflowEvent":
        missing = [f for f in EVENT_FIELDS[self.type] if getattr(self, f) is None]
        if missing:
            raise MalformedEventError(
                f"{self.type.value} event is missing {', '.join(missing)}"
            )
        return self

    def with_id(self, entry_id: str) -> "WorkflowEvent":
        return WorkflowEvent(**{**self.__dict__, "id": entry_id})

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value}
        for attr, key in _WIRE_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], entry_id: Optional[str] = None) -> "WorkflowEvent":
        if not isinstance(data, Mapping):
            raise MalformedEventError("Event payload is not an object", raw=data)
        try:
            event_type = EventType(data.get("type"))
        except ValueError:
            raise MalformedEventError(f"Unknown event type {data.get('type')!r}", raw=data)

        workflow_id = data.get("workflowId")
        if not isinstance(workflow_id, str) or not workflow_id:
            raise MalformedEventError("Event has no workflowId", raw=data)

        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise MalformedEventError("Event metadata must be an object", raw=data)

        args = data.get("args")
        if args is not None and not isinstance(args, str):
            args = json.dumps(args)

        event = cls(
            type=event_type,
            workflow_id=workflow_id,
            content=data.get("content"),
            metadata=metadata,
            tool_name=data.get("toolName"),
            tool_call_id=data.get("toolCallId"),
            args=args,
            model=data.get("model"),
            timestamp=data.get("timestamp"),
            id=entry_id,
        )
        try:
            return event.validate()
        except MalformedEventError as e:
            e.raw = data
            raise


def parse_event(raw: Union[str, bytes, Mapping[str, Any]], entry_id: Optional[str] = None) -> WorkflowEvent:
    """Parse a wire payload into a validated event. Raises MalformedEventError."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEventError(f"Event is not valid JSON: {e}", raw=raw)
    return WorkflowEvent.from_dict(raw, entry_id=entry_id)


def try_parse_event(raw: Any, entry_id: Optional[str] = None) -> Optional[WorkflowEvent]:
    """Safe variant of parse_event returning None for malformed payloads."""
    try:
        return parse_event(raw, entry_id=entry_id)
    except MalformedEventError:
        return None


def lifecycle_events(events: Iterable[WorkflowEvent]) -> Iterable[WorkflowEvent]:
    return (e for e in events if e.type.is_lifecycle)
