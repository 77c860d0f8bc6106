# Redis-backed queue, event log and live status channel

from .connection import ConnectionManager, ConnectionRole
from .job_queue import RedisJobQueue
from .worker import WorkerPool
from .publisher import EventPublisher
from .message_bus import LiveStatusChannel, StatusUpdate
from .consumer import RedisStreamsConsumer, StreamMessage
from .redis_backend import RedisEventStore, stream_key
from .ingest import EventIngestor

__all__ = [
    "ConnectionManager",
    "ConnectionRole",
    "RedisJobQueue",
    "WorkerPool",
    "EventPublisher",
    "LiveStatusChannel",
    "StatusUpdate",
    "RedisStreamsConsumer",
    "StreamMessage",
    "RedisEventStore",
    "stream_key",
    "EventIngestor",
]
