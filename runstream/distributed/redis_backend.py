"""
Redis streams event log.

Each workflow run has its own stream, ``workflow:{id}:events``, holding
one field, ``event``, with the JSON-encoded event. Streams are capped
approximately at ``maxlen`` entries; Redis assigns monotonically
increasing entry ids that define the log order.
"""

import re
from typing import List, Optional
import logging

from ..core.errors import MalformedEventError
from ..core.events import WorkflowEvent, parse_event
from ..core.store import EventStore
from .connection import ConnectionManager, ConnectionRole, surface_connection_errors

logger = logging.getLogger(__name__)

EVENT_FIELD = "event"
STREAM_PATTERN = "workflow:*:events"
_STREAM_RE = re.compile(r"^workflow:(?P<workflow_id>.+):events$")


def stream_key(workflow_id: str) -> str:
    return f"workflow:{workflow_id}:events"


def workflow_id_from_stream(stream: str) -> Optional[str]:
    match = _STREAM_RE.match(stream)
    return match.group("workflow_id") if match else None


class RedisEventStore(EventStore):
    """
    Event store on top of per-run Redis streams.

    Appends go through the publisher connection; reads use the general one.

    Example:
        store = RedisEventStore(connections)
        entry_id = await store.append("w1", event)
        events = await store.read_ordered("w1")
    """

    def __init__(self, connections: ConnectionManager, maxlen: int = 10_000):
        self.connections = connections
        self.maxlen = maxlen

    @surface_connection_errors
    async def append(self, workflow_id: str, event: WorkflowEvent) -> str:
        # Redis assigns entry ids, so a preset event.id only guards replays.
        client = self.connections.get(ConnectionRole.PUBLISHER)
        key = stream_key(workflow_id)
        if event.id is not None and await client.xrange(key, event.id, event.id):
            return event.id

        entry_id = await client.xadd(
            key,
            {EVENT_FIELD: event.to_json()},
            maxlen=self.maxlen,
            approximate=True,
        )
        logger.debug(f"Appended {event.type.value} to {workflow_id} as {entry_id}")
        return entry_id

    @surface_connection_errors
    async def read_ordered(self, workflow_id: str) -> List[WorkflowEvent]:
        client = self.connections.get(ConnectionRole.GENERAL)
        entries = await client.xrange(stream_key(workflow_id), "-", "+")

        events = []
        for entry_id, fields in entries:
            try:
                events.append(parse_event((fields or {}).get(EVENT_FIELD), entry_id=entry_id))
            except MalformedEventError as e:
                logger.warning(f"Skipping malformed entry {entry_id} in {workflow_id}: {e}")
        return events

    @surface_connection_errors
    async def length(self, workflow_id: str) -> int:
        client = self.connections.get(ConnectionRole.GENERAL)
        return await client.xlen(stream_key(workflow_id))

    @surface_connection_errors
    async def list_streams(self, pattern: str = STREAM_PATTERN) -> List[str]:
        """Return the keys of every run's stream."""
        client = self.connections.get(ConnectionRole.GENERAL)
        return [key async for key in client.scan_iter(match=pattern, _type="stream")]
