# HTTP surface: job submission, run status and SSE

from .app import create_app
from .sse import SSEBridge

__all__ = ["create_app", "SSEBridge"]
