"""
Job router: maps workflow/job names to their implementations.

A router is itself a processor, so one router can be registered as the
processor for a queue that carries several kinds of workflow.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio

from .errors import UnknownJobError
from .jobs import QueueJob

# An async callable taking the job and returning a result or raising.
Processor = Callable[[QueueJob], Awaitable[Any]]


@dataclass
class HandlerRegistration:
    """Registration of a workflow implementation."""
    job_name: str
    func: Callable
    metadata: Dict[str, Any] = field(default_factory=dict)


class JobRouter:
    """
    Routes jobs to handlers by ``job.name``.

    Example:
        router = JobRouter()

        @router.register("resolveIssue")
        async def resolve_issue(job):
            ...

        pool.register("workflow-jobs", router, concurrency=1)
    """

    def __init__(self):
        self._handlers: Dict[str, HandlerRegistration] = {}

    def register(self, job_name: str, **metadata) -> Callable:
        """Decorator to register a handler."""
        def decorator(func: Callable) -> Callable:
            self.register_handler(job_name, func, **metadata)
            return func
        return decorator

    def register_handler(self, job_name: str, func: Callable, **metadata) -> None:
        if job_name in self._handlers:
            raise ValueError(f"Handler for '{job_name}' is already registered")
        self._handlers[job_name] = HandlerRegistration(job_name, func, metadata)

    def get_handler(self, job_name: str) -> Optional[Callable]:
        reg = self._handlers.get(job_name)
        return reg.func if reg else None

    def has_handler(self, job_name: str) -> bool:
        return job_name in self._handlers

    def list_jobs(self) -> List[str]:
        return list(self._handlers.keys())

    async def __call__(self, job: QueueJob) -> Any:
        func = self.get_handler(job.name)
        if func is None:
            raise UnknownJobError(job.name)

        if asyncio.iscoroutinefunction(func):
            return await func(job)
        # Run sync handlers off the event loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, job)
