"""
Durable event consumption with Redis consumer groups.

Delivery is at-least-once: an entry is acknowledged only after its handler
returns. If the handler raises, or the process dies first, the entry stays
pending and is delivered again, either to the same consumer when it
restarts (it re-reads its own pending entries first) or to another one
through ``claim_pending``.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple
import asyncio
import json
import logging

from redis.exceptions import ResponseError

from ..core.errors import MalformedEventError
from ..core.events import WorkflowEvent, parse_event
from .connection import ConnectionManager, ConnectionRole, surface_connection_errors
from .redis_backend import EVENT_FIELD

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamMessage:
    """
    One delivered entry.

    ``event`` is a parsed ``WorkflowEvent``, or the raw payload (decoded
    JSON when possible, else the original text) when it could not be parsed.
    """
    stream: str
    id: str
    event: Any

    @property
    def malformed(self) -> bool:
        return not isinstance(self.event, WorkflowEvent)


MessageHandler = Callable[[StreamMessage], Awaitable[None]]

Entry = Tuple[str, Optional[Dict[str, str]]]


def _raw_payload(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return raw
    return raw


class RedisStreamsConsumer:
    """
    Consumer-group reader for event streams.

    Blocking reads use the events connection; group management and
    acknowledgements go through the general one.

    Example:
        consumer = RedisStreamsConsumer(connections)

        async def on_message(message):
            if message.malformed:
                ...
            else:
                await store.append(message.event.workflow_id, message.event)

        stop = asyncio.Event()
        await consumer.read_group(
            "workflow:w1:events", "event_ingest", "consumer-1",
            on_message, stop_event=stop,
        )
    """

    def __init__(self, connections: ConnectionManager, block_ms: int = 15_000, count: int = 10):
        self.connections = connections
        self.block_ms = block_ms
        self.count = count

    @property
    def _client(self):
        return self.connections.get(ConnectionRole.GENERAL)

    @property
    def _blocking_client(self):
        return self.connections.get(ConnectionRole.EVENTS)

    @surface_connection_errors
    async def ensure_group(self, stream: str, group: str, start_id: str = "0") -> bool:
        """
        Create ``group`` on ``stream`` (creating the stream too if needed).

        Returns False when the group already existed.
        """
        try:
            await self._client.xgroup_create(stream, group, id=start_id, mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" in str(e):
                return False
            raise
        logger.info(f"Created consumer group {group} on {stream}")
        return True

    def _to_message(self, stream: str, entry_id: str, fields: Optional[Dict[str, str]]) -> StreamMessage:
        raw = (fields or {}).get(EVENT_FIELD)
        try:
            event = parse_event(raw, entry_id=entry_id)
        except MalformedEventError as e:
            logger.warning(f"Malformed entry {entry_id} on {stream}: {e}")
            event = _raw_payload(raw)
        return StreamMessage(stream=stream, id=entry_id, event=event)

    async def _deliver(
        self,
        stream: str,
        group: str,
        entries: Sequence[Entry],
        on_message: MessageHandler,
    ) -> int:
        """Hand entries to the handler in order, acknowledging each success."""
        acked = 0
        for entry_id, fields in entries:
            message = self._to_message(stream, entry_id, fields)
            try:
                await on_message(message)
            except Exception as e:
                logger.error(f"Handler failed for {entry_id} on {stream}; left pending: {e}")
                continue
            await self._client.xack(stream, group, entry_id)
            acked += 1
        return acked

    @surface_connection_errors
    async def read_once(
        self,
        streams: Dict[str, str],
        group: str,
        consumer: str,
        on_message: MessageHandler,
        block_ms: Optional[int] = None,
        count: Optional[int] = None,
    ) -> Dict[str, str]:
        """
        One XREADGROUP round over ``streams`` (stream -> start id).

        Returns the id of the last entry delivered per stream.
        """
        response = await self._blocking_client.xreadgroup(
            group,
            consumer,
            streams,
            count=count or self.count,
            block=block_ms,
        )

        last_ids: Dict[str, str] = {}
        for stream, entries in response or []:
            if not entries:
                continue
            await self._deliver(stream, group, entries, on_message)
            last_ids[stream] = entries[-1][0]
        return last_ids

    async def read_group(
        self,
        stream: str,
        group: str,
        consumer: str,
        on_message: MessageHandler,
        block_ms: Optional[int] = None,
        count: Optional[int] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Deliver entries from ``stream`` to ``on_message`` until ``stop_event``
        is set. Entries are handed over in log order within the stream.

        This consumer's own pending entries are re-read first, then new
        entries. ``stop_event`` is checked every time a bounded block returns.
        """
        block_ms = block_ms or self.block_ms
        await self.ensure_group(stream, group)

        # Own pending entries, starting from the beginning of the PEL
        pending_from: Optional[str] = "0"

        while not (stop_event and stop_event.is_set()):
            if pending_from is not None:
                last_ids = await self.read_once({stream: pending_from}, group, consumer, on_message, count=count)
                if stream in last_ids:
                    pending_from = last_ids[stream]
                else:
                    logger.debug(f"{consumer} caught up on pending entries of {stream}")
                    pending_from = None
                continue

            await self.read_once({stream: ">"}, group, consumer, on_message, block_ms=block_ms, count=count)

    @surface_connection_errors
    async def claim_pending(
        self,
        stream: str,
        group: str,
        consumer: str,
        on_message: MessageHandler,
        min_idle_ms: int = 60_000,
        count: int = 100,
    ) -> int:
        """
        Take over entries other consumers left pending for at least
        ``min_idle_ms`` and deliver them. Returns how many were claimed.
        """
        claimed = 0
        start_id = "0-0"
        while True:
            response = await self._client.xautoclaim(
                stream, group, consumer, min_idle_ms, start_id=start_id, count=count
            )
            next_id, entries = response[0], response[1]
            entries = [(entry_id, fields) for entry_id, fields in entries if entry_id]
            if entries:
                claimed += len(entries)
                await self._deliver(stream, group, entries, on_message)
            if next_id in ("0-0", b"0-0"):
                break
            start_id = next_id

        if claimed:
            logger.info(f"{consumer} claimed {claimed} stale entries on {stream}")
        return claimed

    async def pending_count(self, stream: str, group: str) -> int:
        info = await self._client.xpending(stream, group)
        return info["pending"] if isinstance(info, dict) else info[0]
