from __future__ import annotations

import asyncio
from typing import Any

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from runstream.core.store import InMemoryEventStore
from runstream.distributed.connection import ConnectionManager
from runstream.distributed.message_bus import LiveStatusChannel
from runstream.distributed.publisher import EventPublisher
from runstream.distributed.redis_backend import RedisEventStore


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class DummyPubSub:
    """Replays canned channel messages and counts teardown calls."""

    def __init__(self, messages: list[Any]) -> None:
        self.messages = list(messages)
        self.subscribed: list[str] = []
        self.unsubscribe_calls = 0
        self.aclose_calls = 0
        self.fail_unsubscribe = False
        self.fail_get_message = False

    async def subscribe(self, channel: str) -> None:
        self.subscribed.append(channel)

    async def get_message(self, ignore_subscribe_messages: bool = True, timeout: float | None = None):
        if self.fail_get_message:
            raise ConnectionError("connection reset")
        if self.messages:
            return {"type": "message", "channel": "job-status", "data": self.messages.pop(0)}
        await asyncio.sleep(0)
        return None

    async def unsubscribe(self, channel: str) -> None:
        self.unsubscribe_calls += 1
        if self.fail_unsubscribe:
            raise ConnectionError("connection reset")

    async def aclose(self) -> None:
        self.aclose_calls += 1


class DummySubscriber:
    def __init__(self, messages: list[Any] | None = None) -> None:
        self.pubsub_obj = DummyPubSub(messages or [])
        self.aclose_calls = 0

    def pubsub(self) -> DummyPubSub:
        return self.pubsub_obj

    async def aclose(self) -> None:
        self.aclose_calls += 1


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def sync_redis(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def client_factory(redis_server):
    def factory(url: str, **kwargs: Any) -> FakeAsyncRedis:
        return FakeAsyncRedis(server=redis_server, decode_responses=True)

    return factory


@pytest_asyncio.fixture
async def connections(client_factory):
    manager = ConnectionManager("redis://fake:6379/0", client_factory=client_factory)
    yield manager
    await manager.close()


@pytest.fixture
def live(connections) -> LiveStatusChannel:
    return LiveStatusChannel(connections)


@pytest.fixture
def event_store(connections) -> RedisEventStore:
    return RedisEventStore(connections, maxlen=1000)


@pytest.fixture
def publisher(event_store, live) -> EventPublisher:
    return EventPublisher(event_store, live=live)


@pytest.fixture
def memory_store() -> InMemoryEventStore:
    return InMemoryEventStore()
