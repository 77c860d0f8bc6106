"""
Live status channel.

A single shared pub/sub channel carries short human-readable status
strings for every run. Each message embeds the run's workflow id so that
subscribers can filter. Delivery is at-most-once: subscribers only see
messages published while they are subscribed. The durable record of a run
is its event log, never this channel.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from .connection import ConnectionManager, ConnectionRole, surface_connection_errors

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "job-status"

# A status starting with one of these ends the live stream for its run.
TERMINAL_PREFIXES = ("Completed", "Failed")


@dataclass(frozen=True)
class StatusUpdate:
    """One message on the live channel."""
    workflow_id: str
    status: str

    @property
    def is_terminal(self) -> bool:
        return self.status.startswith(TERMINAL_PREFIXES)

    def to_dict(self) -> Dict[str, Any]:
        return {"workflowId": self.workflow_id, "status": self.status}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: Any) -> "StatusUpdate":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        data = json.loads(raw)
        workflow_id = data.get("workflowId")
        status = data.get("status")
        if not isinstance(workflow_id, str) or not isinstance(status, str):
            raise ValueError("status update needs string workflowId and status")
        return cls(workflow_id=workflow_id, status=status)


def parse_status_update(raw: Any) -> Optional[StatusUpdate]:
    """Parse a channel message, logging and returning None when malformed."""
    try:
        return StatusUpdate.from_json(raw)
    except (ValueError, TypeError, AttributeError) as e:
        logger.error(f"Failed to parse status update: {e}")
        return None


class LiveStatusChannel:
    """
    Publisher side of the live channel.

    Example:
        live = LiveStatusChannel(connections)
        await live.publish("w1", "Fetching issue")
        await live.publish("w1", "Completed: opened PR #12")
    """

    def __init__(self, connections: ConnectionManager, channel: str = DEFAULT_CHANNEL):
        self.connections = connections
        self.channel = channel

    @surface_connection_errors
    async def publish(self, workflow_id: str, status: str) -> int:
        """Publish a status. Returns the number of subscribers that received it."""
        update = StatusUpdate(workflow_id=workflow_id, status=status)
        client = self.connections.get(ConnectionRole.PUBLISHER)
        receivers = await client.publish(self.channel, update.to_json())
        logger.debug(f"Published status for {workflow_id} to {receivers} subscribers")
        return receivers

    async def completed(self, workflow_id: str, detail: str = "") -> int:
        return await self.publish(workflow_id, f"Completed: {detail}" if detail else "Completed")

    async def failed(self, workflow_id: str, reason: str) -> int:
        return await self.publish(workflow_id, f"Failed: {reason}")
