"""
Command line entry points.

    runstream worker example.resolve_issue:build_router --queue workflow-jobs
    runstream ingest mypkg.storage:make_store
    runstream serve --port 8000

``worker`` and ``ingest`` take ``module:attribute`` import paths. For
``worker`` the attribute is a factory called with the ``EventPublisher``
that returns the queue's processor (usually a ``JobRouter``). For
``ingest`` it is a factory returning the durable ``EventStore``.
"""

from typing import Any, Callable, List, Optional
import argparse
import asyncio
import importlib
import logging
import signal

from .core.config import Settings, load_settings
from .core.errors import ConfigurationError
from .distributed.connection import ConnectionManager
from .distributed.consumer import RedisStreamsConsumer
from .distributed.ingest import EventIngestor
from .distributed.message_bus import LiveStatusChannel
from .distributed.publisher import EventPublisher
from .distributed.redis_backend import RedisEventStore
from .distributed.worker import WorkerPool

logger = logging.getLogger(__name__)


def import_object(path: str) -> Any:
    """Resolve ``package.module:attribute``."""
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Expected 'module:attribute', got '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import {module_name}: {e}") from e
    try:
        return getattr(module, attribute)
    except AttributeError as e:
        raise ConfigurationError(f"{module_name} has no attribute {attribute}") from e


async def run_worker(settings: Settings, factory: Callable, queue_name: str, concurrency: int) -> None:
    connections = ConnectionManager.from_settings(settings)
    await connections.connect()

    live = LiveStatusChannel(connections, settings.status_channel)
    publisher = EventPublisher(
        RedisEventStore(connections, maxlen=settings.event_stream_maxlen),
        live=live,
    )
    pool = WorkerPool(
        connections,
        publisher=publisher,
        live=live,
        prefix=settings.key_prefix,
        lock_ttl=settings.worker_lock_ttl_s,
        shutdown_timeout=settings.worker_shutdown_timeout_s,
    )
    pool.register(queue_name, factory(publisher), concurrency=concurrency)

    logger.info(f"Worker {pool.worker_id} ready on {queue_name}; press Ctrl+C to stop")
    await pool.run()


async def run_ingest(settings: Settings, factory: Callable, group: str) -> None:
    connections = ConnectionManager.from_settings(settings)
    await connections.connect()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    ingestor = EventIngestor(
        RedisStreamsConsumer(
            connections,
            block_ms=settings.consumer_block_ms,
            count=settings.consumer_batch,
        ),
        factory(),
        RedisEventStore(connections, maxlen=settings.event_stream_maxlen),
        group=group,
    )
    try:
        await ingestor.run(stop_event=stop)
    finally:
        await connections.close()


def serve(settings: Settings, host: str, port: int) -> None:
    import uvicorn

    from .web.app import create_app

    uvicorn.run(create_app(settings_override=settings), host=host, port=port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="runstream", description="Workflow run queue and event streaming")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    worker = sub.add_parser("worker", help="Run queued workflow jobs")
    worker.add_argument("processor", help="module:factory returning the queue's processor")
    worker.add_argument("--queue", default="workflow-jobs", help="Queue to consume")
    worker.add_argument("--concurrency", type=int, default=1, help="Jobs run at once")

    ingest = sub.add_parser("ingest", help="Copy run events into a durable store")
    ingest.add_argument("store", help="module:factory returning an EventStore")
    ingest.add_argument("--group", default="event_ingest", help="Consumer group name")

    web = sub.add_parser("serve", help="Serve the HTTP API and SSE streams")
    web.add_argument("--host", default="0.0.0.0")
    web.add_argument("--port", type=int, default=8000)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = load_settings()

    if args.command == "worker":
        asyncio.run(run_worker(settings, import_object(args.processor), args.queue, args.concurrency))
    elif args.command == "ingest":
        asyncio.run(run_ingest(settings, import_object(args.store), args.group))
    elif args.command == "serve":
        serve(settings, args.host, args.port)
