"""
Server-Sent Events bridge.

Each inbound request gets its own subscriber connection on the shared
live status channel. Messages for other runs are dropped; messages for the
requested run are forwarded as ``data:`` frames. A status starting with
"Completed" or "Failed" is forwarded, the subscription is torn down and a
final ``Stream finished`` frame ends the response.

Teardown (unsubscribe, close the pubsub, close the connection) runs
exactly once per request, whether the stream ends normally, the client
goes away, or something fails.
"""

from typing import Any, AsyncIterator, Awaitable, Callable, Optional
import asyncio
import json
import logging

from ..core.errors import ClientDisconnectError
from ..core.state import WorkflowState, WorkflowStateTracker
from ..distributed.connection import ConnectionManager
from ..distributed.message_bus import DEFAULT_CHANNEL, parse_status_update

logger = logging.getLogger(__name__)

STREAM_FINISHED = "Stream finished"
KEEPALIVE_FRAME = ": keepalive\n\n"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_data(payload: str) -> str:
    """Escape line breaks so a payload always fits in one data line."""
    return payload.replace("\r", "\\r").replace("\n", "\\n")


def sse_frame(payload: str) -> str:
    return f"data: {encode_data(payload)}\n\n"


def sse_error_frame(message: str) -> str:
    return f"event: error\ndata: {encode_data(message)}\n\n"


class LiveSubscription:
    """One request's subscription to the live channel."""

    def __init__(self, client: Any, channel: str):
        self.client = client
        self.channel = channel
        self.pubsub = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        self.pubsub = self.client.pubsub()
        await self.pubsub.subscribe(self.channel)

    async def get_message(self, timeout: float) -> Optional[Any]:
        """Return the next message's data, or None after ``timeout`` seconds."""
        message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if message and message.get("type") == "message":
            return message["data"]
        return None

    async def close(self) -> None:
        """Unsubscribe and release the connection. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True

        if self.pubsub is not None:
            try:
                await self.pubsub.unsubscribe(self.channel)
            except Exception as e:
                logger.warning(f"Unsubscribe from {self.channel} failed: {e}")
            try:
                await self.pubsub.aclose()
            except Exception as e:
                logger.warning(f"Closing pubsub failed: {e}")
        try:
            await self.client.aclose()
        except Exception as e:
            logger.warning(f"Closing subscriber connection failed: {e}")


class SSEBridge:
    """
    Turns the live status channel into per-run SSE streams.

    When a tracker is given, the bridge also ends the stream of a run that
    is already finished (checked on connect and on every keepalive), since
    its terminal status may have been published before the subscription.

    Example:
        bridge = SSEBridge.from_connections(connections, tracker=tracker)

        @app.get("/api/sse")
        async def sse(workflowId: str, request: Request):
            return StreamingResponse(
                bridge.stream(workflowId, request.is_disconnected),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )
    """

    def __init__(
        self,
        subscriber_factory: Callable[[], Any],
        channel: str = DEFAULT_CHANNEL,
        tracker: Optional[WorkflowStateTracker] = None,
        keepalive: float = 15.0,
        poll_timeout: float = 1.0,
    ):
        self.subscriber_factory = subscriber_factory
        self.channel = channel
        self.tracker = tracker
        self.keepalive = keepalive
        self.poll_timeout = poll_timeout

    @classmethod
    def from_connections(cls, connections: ConnectionManager, **kwargs) -> "SSEBridge":
        return cls(connections.create_ephemeral_subscriber, **kwargs)

    async def _finished_state(self, workflow_id: str) -> Optional[WorkflowState]:
        if self.tracker is None:
            return None
        state = await self.tracker.get_state(workflow_id)
        return state if state.is_terminal else None

    @staticmethod
    def _terminal_status(state: WorkflowState) -> str:
        if state == WorkflowState.COMPLETED:
            return "Completed"
        return "Failed: workflow ended with an error"

    async def stream(
        self,
        workflow_id: str,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """Yield SSE frames for ``workflow_id`` until its run ends or the client leaves."""
        subscription = LiveSubscription(self.subscriber_factory(), self.channel)
        loop = asyncio.get_running_loop()
        try:
            await subscription.open()
            logger.info(f"SSE stream opened for {workflow_id}")

            state = await self._finished_state(workflow_id)
            if state is not None:
                await subscription.close()
                yield sse_frame(self._terminal_status(state))
                yield sse_frame(STREAM_FINISHED)
                return

            last_sent = loop.time()
            while True:
                if is_disconnected is not None and await is_disconnected():
                    raise ClientDisconnectError(workflow_id)

                if loop.time() - last_sent >= self.keepalive:
                    state = await self._finished_state(workflow_id)
                    if state is not None:
                        await subscription.close()
                        yield sse_frame(self._terminal_status(state))
                        yield sse_frame(STREAM_FINISHED)
                        return
                    last_sent = loop.time()
                    yield KEEPALIVE_FRAME

                raw = await subscription.get_message(self.poll_timeout)
                if raw is None:
                    continue

                update = parse_status_update(raw)
                if update is None or update.workflow_id != workflow_id:
                    continue

                last_sent = loop.time()
                yield sse_frame(update.status)
                if update.is_terminal:
                    await subscription.close()
                    yield sse_frame(STREAM_FINISHED)
                    return

        except ClientDisconnectError:
            logger.info(f"SSE client for {workflow_id} disconnected")
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(f"SSE client for {workflow_id} disconnected")
            raise
        except Exception as e:
            logger.error(f"SSE stream for {workflow_id} failed: {e}")
            yield sse_error_frame(json.dumps({"error": str(e)}))
        finally:
            await subscription.close()
