"""
Durable event storage.

``EventStore`` is the narrow shape the core needs from long-term
persistence: append an event to a run and read a run's events back in
log order. Concrete stores can sit on Redis streams, a graph database,
Postgres, etc.
"""

from typing import Dict, List, Optional
import asyncio

from .events import WorkflowEvent


class EventStore:
    """
    Abstract event store.

    ``append`` returns the id under which the event was stored. When
    ``event.id`` is already set, stores treat the append as idempotent:
    a second append with the same id is ignored.
    """

    async def append(self, workflow_id: str, event: WorkflowEvent) -> str:
        """Append an event to a run's log."""
        raise NotImplementedError

    async def read_ordered(self, workflow_id: str) -> List[WorkflowEvent]:
        """Read a run's events in log order."""
        raise NotImplementedError

    async def get_event(self, workflow_id: str, event_id: str) -> Optional[WorkflowEvent]:
        """Look up one event by id."""
        for event in await self.read_ordered(workflow_id):
            if event.id == event_id:
                return event
        return None


class InMemoryEventStore(EventStore):
    """
    In-memory event store for testing and single-process deployments.
    """

    def __init__(self):
        self._events: Dict[str, List[WorkflowEvent]] = {}
        self._ids: Dict[str, set] = {}
        self._seq = 0
        self._lock = asyncio.Lock()

    async def append(self, workflow_id: str, event: WorkflowEvent) -> str:
        async with self._lock:
            seen = self._ids.setdefault(workflow_id, set())
            if event.id is not None and event.id in seen:
                return event.id

            if event.id is None:
                self._seq += 1
                event = event.with_id(f"{self._seq}-0")

            self._events.setdefault(workflow_id, []).append(event)
            seen.add(event.id)
            return event.id

    async def read_ordered(self, workflow_id: str) -> List[WorkflowEvent]:
        async with self._lock:
            return list(self._events.get(workflow_id, []))

    def workflow_ids(self) -> List[str]:
        return list(self._events.keys())
