"""
Event publisher.

Appends typed events to a run's event log. ``emit`` resolves once the log
has durably accepted the append and returns the entry id; it never waits
for any consumer.
"""

from typing import Any, Dict, Optional, Union
import json
import logging

from ..core.events import EventType, WorkflowEvent, utc_now_iso
from ..core.store import EventStore
from .message_bus import LiveStatusChannel

logger = logging.getLogger(__name__)


class EventPublisher:
    """
    Writes workflow events to per-run logs.

    Example:
        publisher = EventPublisher(RedisEventStore(connections), live=live)

        await publisher.workflow_started("w1", "Resolving issue #5")
        await publisher.tool_call("w1", "search", "call_1", {"q": "bug"})
        await publisher.status("w1", "Opening pull request")
        await publisher.workflow_completed("w1", "PR opened")
    """

    def __init__(self, store: EventStore, live: Optional[LiveStatusChannel] = None):
        self.store = store
        self.live = live

    async def emit(
        self,
        event_type: Union[EventType, str],
        workflow_id: str,
        content: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **fields,
    ) -> str:
        """
        Build, validate and append one event.

        Raises MalformedEventError if the kind's required fields are missing.
        Returns the entry id assigned by the log.
        """
        event = WorkflowEvent(
            type=EventType(event_type),
            workflow_id=workflow_id,
            content=content,
            metadata=metadata,
            timestamp=fields.pop("timestamp", None) or utc_now_iso(),
            **fields,
        ).validate()
        return await self.append(event)

    async def append(self, event: WorkflowEvent) -> str:
        entry_id = await self.store.append(event.workflow_id, event)
        logger.debug(f"Emitted {event.type.value} for {event.workflow_id} ({entry_id})")
        return entry_id

    # Lifecycle

    async def workflow_started(self, workflow_id: str, content: Optional[str] = None, **metadata) -> str:
        return await self.emit(EventType.WORKFLOW_STARTED, workflow_id, content, metadata or None)

    async def workflow_completed(self, workflow_id: str, content: Optional[str] = None, **metadata) -> str:
        return await self.emit(EventType.WORKFLOW_COMPLETED, workflow_id, content, metadata or None)

    async def workflow_error(self, workflow_id: str, error: str, **metadata) -> str:
        return await self.emit(EventType.WORKFLOW_ERROR, workflow_id, error, metadata or None)

    # Progress

    async def status(self, workflow_id: str, content: str, **metadata) -> str:
        """Append a status event and mirror it to the live channel."""
        entry_id = await self.emit(EventType.STATUS, workflow_id, content, metadata or None)
        if self.live is not None:
            await self.live.publish(workflow_id, content)
        return entry_id

    async def issue_fetched(self, workflow_id: str, content: Optional[str] = None, **metadata) -> str:
        return await self.emit(EventType.ISSUE_FETCHED, workflow_id, content, metadata or None)

    # Conversation

    async def system_prompt(self, workflow_id: str, content: str) -> str:
        return await self.emit(EventType.SYSTEM_PROMPT, workflow_id, content)

    async def user_message(self, workflow_id: str, content: str) -> str:
        return await self.emit(EventType.USER_MESSAGE, workflow_id, content)

    async def assistant_message(self, workflow_id: str, content: str, model: Optional[str] = None) -> str:
        return await self.emit(EventType.ASSISTANT_MESSAGE, workflow_id, content, model=model)

    async def reasoning(self, workflow_id: str, content: str) -> str:
        return await self.emit(EventType.REASONING, workflow_id, content)

    async def tool_call(
        self,
        workflow_id: str,
        tool_name: str,
        tool_call_id: str,
        args: Union[str, Dict[str, Any]],
    ) -> str:
        if not isinstance(args, str):
            args = json.dumps(args)
        return await self.emit(
            EventType.TOOL_CALL,
            workflow_id,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            args=args,
        )

    async def tool_call_result(self, workflow_id: str, tool_name: str, tool_call_id: str, content: str) -> str:
        return await self.emit(
            EventType.TOOL_CALL_RESULT,
            workflow_id,
            content,
            tool_name=tool_name,
            tool_call_id=tool_call_id,
        )

    # Model calls

    async def llm_started(self, workflow_id: str, model: Optional[str] = None, **metadata) -> str:
        return await self.emit(EventType.LLM_STARTED, workflow_id, model=model, metadata=metadata or None)

    async def llm_completed(self, workflow_id: str, model: Optional[str] = None, **metadata) -> str:
        return await self.emit(EventType.LLM_COMPLETED, workflow_id, model=model, metadata=metadata or None)
