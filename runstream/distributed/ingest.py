"""
Event ingestion: run streams -> durable store.

The ingestor reads every run's stream through one consumer group, copies
each event into an ``EventStore`` keyed by its stream entry id (so
redelivery is harmless), and notifies an optional port when a run ends.
"""

from typing import Awaitable, Callable, Dict, List, Optional, Protocol
import asyncio
import json
import os
import socket
import logging

from ..core.events import EventType, WorkflowEvent, assert_exhaustive, utc_now_iso
from ..core.store import EventStore
from .consumer import RedisStreamsConsumer, StreamMessage
from .redis_backend import RedisEventStore, workflow_id_from_stream

logger = logging.getLogger(__name__)

DEFAULT_GROUP = "event_ingest"


class RunNotifier(Protocol):
    """Told when a run reaches a terminal state."""

    async def notify(self, workflow_id: str, event: WorkflowEvent) -> None:
        ...


async def _persist(ingestor: "EventIngestor", workflow_id: str, event: WorkflowEvent) -> None:
    await ingestor.store.append(workflow_id, event)


async def _persist_message(ingestor: "EventIngestor", workflow_id: str, event: WorkflowEvent) -> None:
    if not event.content:
        logger.debug(f"Skipping empty {event.type.value} in {workflow_id}")
        return
    await ingestor.store.append(workflow_id, event)


async def _persist_and_notify(ingestor: "EventIngestor", workflow_id: str, event: WorkflowEvent) -> None:
    await ingestor.store.append(workflow_id, event)
    if ingestor.notifier is not None:
        await ingestor.notifier.notify(workflow_id, event)


IngestAction = Callable[["EventIngestor", str, WorkflowEvent], Awaitable[None]]

INGEST_ACTIONS: Dict[EventType, IngestAction] = {
    EventType.STATUS: _persist,
    EventType.WORKFLOW_STARTED: _persist,
    EventType.WORKFLOW_COMPLETED: _persist_and_notify,
    EventType.WORKFLOW_ERROR: _persist_and_notify,
    EventType.ISSUE_FETCHED: _persist,
    EventType.SYSTEM_PROMPT: _persist_message,
    EventType.USER_MESSAGE: _persist_message,
    EventType.ASSISTANT_MESSAGE: _persist_message,
    EventType.TOOL_CALL: _persist,
    EventType.TOOL_CALL_RESULT: _persist,
    EventType.REASONING: _persist_message,
    EventType.LLM_STARTED: _persist,
    EventType.LLM_COMPLETED: _persist,
}

assert_exhaustive(INGEST_ACTIONS, "INGEST_ACTIONS")


class EventIngestor:
    """
    Copies events from run streams into a durable store.

    Example:
        ingestor = EventIngestor(consumer, store, redis_store, notifier=notifier)
        stop = asyncio.Event()
        await ingestor.run(stop_event=stop)
    """

    def __init__(
        self,
        consumer: RedisStreamsConsumer,
        store: EventStore,
        streams: RedisEventStore,
        notifier: Optional[RunNotifier] = None,
        group: str = DEFAULT_GROUP,
        consumer_name: Optional[str] = None,
        discovery_interval: float = 5.0,
    ):
        self.consumer = consumer
        self.store = store
        self.streams = streams
        self.notifier = notifier
        self.group = group
        self.consumer_name = consumer_name or f"consumer-{socket.gethostname()}-{os.getpid()}"
        self.discovery_interval = discovery_interval
        self._known: List[str] = []

    async def handle(self, message: StreamMessage) -> None:
        """Ingest one delivered entry. Raising leaves it pending for redelivery."""
        if message.malformed:
            workflow_id = workflow_id_from_stream(message.stream)
            if workflow_id is None:
                logger.warning(f"Dropping entry {message.id} from unrecognised stream {message.stream}")
                return
            raw = message.event if isinstance(message.event, str) else json.dumps(message.event)
            event = WorkflowEvent(
                type=EventType.STATUS,
                workflow_id=workflow_id,
                content=raw,
                timestamp=utc_now_iso(),
                id=message.id,
            )
            await self.store.append(workflow_id, event)
            return

        event: WorkflowEvent = message.event
        await INGEST_ACTIONS[event.type](self, event.workflow_id, event)

    async def discover(self) -> List[str]:
        """Join the group on run streams not seen before. Returns the new ones."""
        new_streams = []
        for stream in await self.streams.list_streams():
            if stream in self._known:
                continue
            await self.consumer.ensure_group(stream, self.group)
            await self.consumer.claim_pending(stream, self.group, self.consumer_name, self.handle)
            self._known.append(stream)
            new_streams.append(stream)
        if new_streams:
            logger.info(f"Ingesting {len(new_streams)} new streams")
        return new_streams

    async def run(self, stop_event: Optional[asyncio.Event] = None, block_ms: Optional[int] = None) -> None:
        """Ingest until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        last_discovery = None
        pending_from: Dict[str, str] = {}

        logger.info(f"Ingestor {self.consumer_name} started (group {self.group})")
        while not stop_event.is_set():
            if last_discovery is None or loop.time() - last_discovery >= self.discovery_interval:
                for stream in await self.discover():
                    pending_from[stream] = "0"
                last_discovery = loop.time()

            if not self._known:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.discovery_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            if pending_from:
                # Our own unacknowledged entries first
                last_ids = await self.consumer.read_once(
                    dict(pending_from), self.group, self.consumer_name, self.handle
                )
                for stream in list(pending_from):
                    if stream in last_ids:
                        pending_from[stream] = last_ids[stream]
                    else:
                        del pending_from[stream]
                continue

            await self.consumer.read_once(
                {stream: ">" for stream in self._known},
                self.group,
                self.consumer_name,
                self.handle,
                block_ms=block_ms or min(self.consumer.block_ms, int(self.discovery_interval * 1000)),
            )
        logger.info(f"Ingestor {self.consumer_name} stopped")
