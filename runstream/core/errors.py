"""
Error taxonomy for runstream.

Infrastructure and configuration errors bubble straight to the caller.
Job-level errors are retried by the queue and only become visible as a
terminal ``workflow.error`` event.
"""

from typing import Any, Optional


class RunstreamError(Exception):
    """Base class for all runstream errors."""


class StoreConnectionError(RunstreamError):
    """The backing store is unreachable and reconnect attempts gave up."""


class ConfigurationError(RunstreamError):
    """Invalid or missing configuration. Never retried."""


class UnknownQueueError(ConfigurationError):
    """No processor (or queue) is registered under the given name."""

    def __init__(self, queue_name: str):
        super().__init__(f"Unknown queue '{queue_name}'")
        self.queue_name = queue_name


class UnknownJobError(ConfigurationError):
    """A job name has no handler in the router."""

    def __init__(self, job_name: str):
        super().__init__(f"Unknown job name '{job_name}'")
        self.job_name = job_name


class JobExecutionError(RunstreamError):
    """A processor raised while running a job."""

    def __init__(self, job_id: str, attempt: int, cause: BaseException):
        super().__init__(f"Job {job_id} failed on attempt {attempt}: {cause}")
        self.job_id = job_id
        self.attempt = attempt
        self.cause = cause


class MalformedEventError(RunstreamError):
    """An event log entry is not JSON or does not match its kind's shape."""

    def __init__(self, message: str, raw: Optional[Any] = None):
        super().__init__(message)
        self.raw = raw


class ClientDisconnectError(RunstreamError):
    """The SSE client went away. Triggers teardown, not an application failure."""
