"""
Worker pool for queued workflow runs.

Workers:
- Claim jobs from their queue (at most ``concurrency`` at once per queue)
- Run the queue's processor
- Record the outcome, retrying with backoff per the job's options
- Publish the run's lifecycle events and live status
- Recover jobs abandoned by crashed workers
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import asyncio
import os
import signal
import socket
import logging

from ..core.errors import ConfigurationError, JobExecutionError, UnknownQueueError
from ..core.jobs import DEFAULT_JOB_OPTIONS, JobOptions, JobState, QueueJob, now_ms
from ..core.registry import Processor
from .connection import ConnectionManager
from .job_queue import RedisJobQueue
from .message_bus import LiveStatusChannel
from .publisher import EventPublisher

logger = logging.getLogger(__name__)

SHUTDOWN_REASON = "worker shut down before the job finished"


@dataclass
class QueueRegistration:
    """A queue and the one processor that serves it."""
    queue: RedisJobQueue
    processor: Processor
    concurrency: int = 1
    tasks: List[asyncio.Task] = field(default_factory=list)


class WorkerPool:
    """
    Runs processors against Redis job queues.

    Example:
        pool = WorkerPool(connections, publisher=publisher, live=live)

        router = JobRouter()

        @router.register("resolveIssue")
        async def resolve_issue(job):
            ...

        pool.register("workflow-jobs", router, concurrency=1)
        await pool.run()  # until SIGINT/SIGTERM
    """

    def __init__(
        self,
        connections: ConnectionManager,
        publisher: Optional[EventPublisher] = None,
        live: Optional[LiveStatusChannel] = None,
        prefix: str = "runstream",
        lock_ttl: int = 30,
        claim_timeout: float = 1.0,
        poll_interval: float = 1.0,
        shutdown_timeout: float = 30.0,
        worker_id: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.connections = connections
        self.publisher = publisher
        self.live = live
        self.prefix = prefix
        self.lock_ttl = lock_ttl
        self.claim_timeout = claim_timeout
        self.poll_interval = poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}"
        self.clock = clock

        self._queues: Dict[str, QueueRegistration] = {}
        self._current_jobs: Dict[str, QueueJob] = {}
        self._maintenance_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._stop_requested = asyncio.Event()
        self._running = False

    def register(
        self,
        queue_name: str,
        processor: Processor,
        concurrency: int = 1,
        options: Optional[JobOptions] = None,
    ) -> RedisJobQueue:
        """Attach the processor for ``queue_name``. Each queue gets exactly one."""
        if queue_name in self._queues:
            raise ConfigurationError(f"Queue '{queue_name}' already has a processor")
        if concurrency < 1:
            raise ConfigurationError("concurrency must be at least 1")

        queue = RedisJobQueue(
            self.connections,
            queue_name,
            default_options=options or DEFAULT_JOB_OPTIONS,
            prefix=self.prefix,
            lock_ttl=self.lock_ttl,
            clock=self.clock,
        )
        self._queues[queue_name] = QueueRegistration(queue, processor, concurrency)
        logger.info(f"Registered processor for queue {queue_name} (concurrency {concurrency})")
        return queue

    def processor(self, queue_name: str, concurrency: int = 1, options: Optional[JobOptions] = None):
        """Decorator form of ``register``."""
        def decorator(func: Processor) -> Processor:
            self.register(queue_name, func, concurrency, options)
            return func
        return decorator

    def get_queue(self, queue_name: str) -> RedisJobQueue:
        registration = self._queues.get(queue_name)
        if registration is None:
            raise UnknownQueueError(queue_name)
        return registration.queue

    async def process_job(self, queue_name: str, job: QueueJob) -> JobState:
        """
        Run one claimed job to an outcome and record it.

        Returns the job's resulting state: COMPLETED, DELAYED (will retry)
        or FAILED. An error appending the terminal lifecycle event
        propagates and leaves the job active for redelivery.
        """
        registration = self._queues.get(queue_name)
        if registration is None:
            raise UnknownQueueError(queue_name)
        queue = registration.queue

        if job.state == JobState.FAILED:
            # Exhausted its attempts by stalling; claim already failed it.
            reason = job.failed_reason or "job failed"
            await self._append_failure(job, reason)
            await self._announce_failure(job, reason)
            return JobState.FAILED

        if job.attempts_made == 1:
            await self._emit_started(job)

        self._current_jobs[job.id] = job
        lock_keeper = asyncio.create_task(self._keep_lock(queue, job))
        try:
            result = await registration.processor(job)
        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} cancelled on attempt {job.attempts_made}")
            await self._record_failure(queue, job, SHUTDOWN_REASON)
            raise
        except Exception as e:
            error = JobExecutionError(job.id, job.attempts_made, e)
            retriable = not isinstance(e, ConfigurationError)
            state = await self._record_failure(queue, job, str(e), retriable=retriable)
            if state == JobState.FAILED:
                logger.error(f"{error}; no attempts left")
            else:
                logger.warning(f"{error}; will retry")
            return state
        else:
            detail = result if isinstance(result, str) else job.name
            # Terminal event before queue state; a failed append leaves the job for redelivery.
            if self.publisher is not None:
                await self.publisher.workflow_completed(job.workflow_id, detail)
            await queue.complete(job, result)
            await self._announce_success(job, detail)
            logger.info(f"Job {job.id} completed on attempt {job.attempts_made}")
            return JobState.COMPLETED
        finally:
            lock_keeper.cancel()
            self._current_jobs.pop(job.id, None)

    async def _record_failure(
        self, queue: RedisJobQueue, job: QueueJob, reason: str, retriable: bool = True
    ) -> JobState:
        """Fail the attempt, appending ``workflow.error`` first when it is the last one."""
        terminal = not retriable or job.attempts_made >= job.opts.attempts
        if terminal:
            await self._append_failure(job, reason)
        state = await queue.fail(job, reason, retriable=retriable)
        if state == JobState.FAILED:
            await self._announce_failure(job, reason)
        return state

    async def _keep_lock(self, queue: RedisJobQueue, job: QueueJob) -> None:
        """Renew the job's lease until cancelled."""
        interval = max(queue.lock_ttl / 2, 0.1)
        while True:
            await asyncio.sleep(interval)
            try:
                await queue.extend_lock(job)
            except Exception as e:
                logger.warning(f"Failed to renew lease on job {job.id}: {e}")

    async def _emit_started(self, job: QueueJob) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher.workflow_started(job.workflow_id, f"Started {job.name}")
        except Exception as e:
            logger.error(f"Failed to publish start of {job.workflow_id}: {e}")

    async def _append_failure(self, job: QueueJob, reason: str) -> None:
        if self.publisher is not None:
            await self.publisher.workflow_error(job.workflow_id, reason)

    async def _announce_success(self, job: QueueJob, detail: str) -> None:
        if self.live is None:
            return
        try:
            await self.live.completed(job.workflow_id, detail)
        except Exception as e:
            logger.error(f"Failed to announce completion of {job.workflow_id}: {e}")

    async def _announce_failure(self, job: QueueJob, reason: str) -> None:
        if self.live is None:
            return
        try:
            await self.live.failed(job.workflow_id, reason)
        except Exception as e:
            logger.error(f"Failed to announce failure of {job.workflow_id}: {e}")

    async def _worker_loop(self, queue_name: str, slot: int) -> None:
        """Claim and run jobs until shutdown."""
        queue = self._queues[queue_name].queue
        logger.info(f"Worker loop {queue_name}/{slot} started")

        while not self._shutdown_event.is_set():
            try:
                job = await queue.claim(timeout=self.claim_timeout)
                if job is None:
                    continue
                logger.info(f"Worker {queue_name}/{slot} running job {job.id} ({job.name})")
                await self.process_job(queue_name, job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Worker loop {queue_name}/{slot} error: {e}")
                await asyncio.sleep(self.poll_interval)

        logger.info(f"Worker loop {queue_name}/{slot} stopped")

    async def _maintenance_loop(self) -> None:
        """Promote due retries and recover stalled jobs on every queue."""
        last_stall_check = 0.0
        loop = asyncio.get_running_loop()

        while not self._shutdown_event.is_set():
            try:
                check_stalled = loop.time() - last_stall_check >= self.lock_ttl
                for registration in self._queues.values():
                    await registration.queue.promote_delayed()
                    if check_stalled:
                        await registration.queue.recover_stalled()
                if check_stalled:
                    last_stall_check = loop.time()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Maintenance loop error: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def start(self) -> None:
        """Start claiming jobs."""
        if self._running:
            return
        if not self._queues:
            raise ConfigurationError("No queues registered")

        self._running = True
        self._shutdown_event.clear()

        for queue_name, registration in self._queues.items():
            for slot in range(registration.concurrency):
                registration.tasks.append(
                    asyncio.create_task(self._worker_loop(queue_name, slot))
                )
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        logger.info(f"Worker {self.worker_id} started on queues: {', '.join(self._queues)}")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop claiming, let in-flight jobs finish for up to ``timeout``
        seconds, then cancel the rest. Each cancelled job is recorded as
        a failed attempt.
        """
        if not self._running:
            return
        timeout = self.shutdown_timeout if timeout is None else timeout

        logger.info(f"Stopping worker {self.worker_id}...")
        self._shutdown_event.set()

        tasks = [t for r in self._queues.values() for t in r.tasks]
        if self._maintenance_task:
            tasks.append(self._maintenance_task)

        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} workers still busy after {timeout}s")
                await asyncio.gather(*pending, return_exceptions=True)

        for registration in self._queues.values():
            registration.tasks.clear()
        self._maintenance_task = None
        self._running = False

        logger.info(f"Worker {self.worker_id} stopped")

    def request_stop(self) -> None:
        self._stop_requested.set()

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Run until SIGINT/SIGTERM (or ``request_stop``), then shut down and close connections."""
        loop = asyncio.get_running_loop()
        installed = []
        if install_signal_handlers:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.request_stop)
                installed.append(sig)

        try:
            await self.start()
            await self._stop_requested.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.stop()
            await self.connections.close()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_load(self) -> int:
        return len(self._current_jobs)
