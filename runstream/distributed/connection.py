"""
Role-scoped Redis connections.

One Redis client (with its own connection pool) is cached per
``(url, role)``. Blocking commands (BLMOVE, XREADGROUP BLOCK, SUBSCRIBE)
only ever run on clients of a blocking role, so a long wait can never sit
in front of a publisher's XADD on the same socket.

Non-blocking roles retry each command a bounded number of times. Blocking
roles retry without limit and have no socket timeout, so a blocking wait
may legitimately last forever. Reconnects back off exponentially with
jitter, capped at ``backoff_cap``.
"""

from typing import Any, Callable, Dict, Optional, Tuple
from enum import Enum
import functools
import logging

import redis.asyncio as redis
from redis.backoff import ExponentialWithJitterBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from ..core.config import Settings
from ..core.errors import ConfigurationError, StoreConnectionError

logger = logging.getLogger(__name__)


class ConnectionRole(Enum):
    """What a connection is used for."""
    GENERAL = "general"
    PUBLISHER = "publisher"
    SUBSCRIBER = "subscriber"
    QUEUE = "queue"
    WORKER = "worker"
    EVENTS = "events"

    @property
    def is_blocking(self) -> bool:
        return self in BLOCKING_ROLES


BLOCKING_ROLES = frozenset({
    ConnectionRole.SUBSCRIBER,
    ConnectionRole.WORKER,
    ConnectionRole.EVENTS,
})

ClientFactory = Callable[..., Any]


def surface_connection_errors(func: Callable) -> Callable:
    """Re-raise redis connectivity failures as StoreConnectionError."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Redis connection lost in {func.__qualname__}: {e}")
            raise StoreConnectionError(str(e)) from e
    return wrapper


class ConnectionManager:
    """
    Cache of role-scoped Redis clients.

    Built once at process start and passed to every component that needs
    Redis. ``close()`` releases everything it handed out except ephemeral
    subscribers, which belong to their caller.

    Example:
        connections = ConnectionManager("redis://localhost:6379/0")
        await connections.connect()

        publisher_client = connections.get(ConnectionRole.PUBLISHER)
        worker_client = connections.get(ConnectionRole.WORKER)
        ...
        await connections.close()
    """

    def __init__(
        self,
        redis_url: Optional[str],
        command_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_cap: float = 30.0,
        socket_timeout: float = 5.0,
        health_check_interval: int = 30,
        client_factory: Optional[ClientFactory] = None,
    ):
        if not redis_url:
            raise ConfigurationError("A Redis URL is required")
        self.redis_url = redis_url
        self.command_retries = command_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.socket_timeout = socket_timeout
        self.health_check_interval = health_check_interval
        self._client_factory = client_factory or redis.Redis.from_url
        self._clients: Dict[Tuple[str, ConnectionRole], Any] = {}
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ConnectionManager":
        return cls(
            settings.redis_url,
            command_retries=settings.command_retries,
            backoff_base=settings.backoff_base_s,
            backoff_cap=settings.backoff_cap_s,
            socket_timeout=settings.socket_timeout_s,
            **kwargs,
        )

    def _backoff(self) -> ExponentialWithJitterBackoff:
        return ExponentialWithJitterBackoff(cap=self.backoff_cap, base=self.backoff_base)

    def client_options(self, role: ConnectionRole) -> Dict[str, Any]:
        """Keyword arguments used to build a client for ``role``."""
        options: Dict[str, Any] = {
            "decode_responses": True,
            "health_check_interval": self.health_check_interval,
            "client_name": f"runstream:{role.value}",
        }
        if role.is_blocking:
            options["socket_timeout"] = None
            options["retry"] = Retry(self._backoff(), -1)
        else:
            options["socket_timeout"] = self.socket_timeout
            options["retry"] = Retry(self._backoff(), self.command_retries)
        return options

    def get(self, role: ConnectionRole, url: Optional[str] = None) -> Any:
        """Return the cached client for ``(url, role)``, creating it if needed."""
        if self._closed:
            raise RuntimeError("ConnectionManager is closed")
        url = url or self.redis_url
        key = (url, role)
        client = self._clients.get(key)
        if client is None:
            client = self._client_factory(url, **self.client_options(role))
            self._clients[key] = client
            logger.debug(f"Created {role.value} connection")
        return client

    def create_ephemeral_subscriber(self, url: Optional[str] = None) -> Any:
        """
        Create a fresh, uncached subscriber client.

        One per inbound client request; the caller must close it.
        """
        return self._client_factory(
            url or self.redis_url,
            **self.client_options(ConnectionRole.SUBSCRIBER),
        )

    @surface_connection_errors
    async def connect(self) -> None:
        """Verify the store is reachable. Fails fast at startup."""
        await self.get(ConnectionRole.GENERAL).ping()
        logger.info("Connected to Redis")

    async def close(self) -> None:
        """Close every cached client. Each close is attempted independently."""
        clients = list(self._clients.items())
        self._clients.clear()
        self._closed = True
        for (_, role), client in clients:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Failed to close {role.value} connection: {e}")
        logger.info("Redis connections closed")

    @property
    def open_roles(self) -> Tuple[ConnectionRole, ...]:
        return tuple(role for (_, role) in self._clients)
