"""
Redis-backed job queue.

Keys for queue ``q`` (under ``{prefix}:queue:q``):

- ``:job:{id}``   JSON job record
- ``:wait``       list of ids ready to run (LPUSH in, BLMOVE out of the right)
- ``:active``     list of ids claimed by a worker
- ``:lock:{id}``  lease held by the worker running the job
- ``:stalled``    active ids seen without a lease on the previous check
- ``:delayed``    sorted set of ids waiting out a retry backoff, scored by due time
- ``:completed``  / ``:failed``  most recent finished ids, capped by retention

A job is always in exactly one of wait/active/delayed/completed/failed, so
a crash at any point leaves it recoverable.
"""

from typing import Any, Callable, Dict, List, Optional
import json
import logging

from redis.exceptions import WatchError

from ..core.jobs import DEFAULT_JOB_OPTIONS, JobOptions, JobState, QueueJob, now_ms
from .connection import ConnectionManager, ConnectionRole, surface_connection_errors

logger = logging.getLogger(__name__)

STALLED_REASON = "job stalled more than allowable limit"


class RedisJobQueue:
    """
    Durable, retryable job queue.

    Example:
        queue = RedisJobQueue(connections, "workflow-jobs")

        job_id = await queue.enqueue(
            "resolveIssue",
            {"repoFullName": "a/b", "issueNumber": 5},
        )

        # worker side
        job = await queue.claim(timeout=1.0)
        try:
            result = await run(job)
        except Exception as e:
            await queue.fail(job, str(e))
        else:
            await queue.complete(job, result)
    """

    def __init__(
        self,
        connections: ConnectionManager,
        name: str,
        default_options: JobOptions = DEFAULT_JOB_OPTIONS,
        prefix: str = "runstream",
        lock_ttl: int = 30,  # seconds
        clock: Callable[[], int] = now_ms,
    ):
        self.connections = connections
        self.name = name
        self.default_options = default_options
        self.prefix = prefix
        self.lock_ttl = lock_ttl
        self.clock = clock

    @property
    def _client(self):
        return self.connections.get(ConnectionRole.QUEUE)

    @property
    def _blocking_client(self):
        return self.connections.get(ConnectionRole.WORKER)

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:queue:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _lock_key(self, job_id: str) -> str:
        return self._key(f"lock:{job_id}")

    @property
    def _wait_key(self) -> str:
        return self._key("wait")

    @property
    def _active_key(self) -> str:
        return self._key("active")

    @property
    def _delayed_key(self) -> str:
        return self._key("delayed")

    @property
    def _stalled_key(self) -> str:
        return self._key("stalled")

    @property
    def _completed_key(self) -> str:
        return self._key("completed")

    @property
    def _failed_key(self) -> str:
        return self._key("failed")

    @staticmethod
    def _dump(job: QueueJob) -> str:
        return json.dumps(job.to_dict(), default=str)

    @surface_connection_errors
    async def enqueue(
        self,
        name: str,
        data: Dict[str, Any],
        job_id: Optional[str] = None,
        options: Optional[JobOptions] = None,
    ) -> str:
        """Record a job and return its id without waiting for it to run."""
        job = QueueJob(
            name=name,
            data=data,
            queue=self.name,
            opts=options or self.default_options,
            timestamp=self.clock(),
        )
        if job_id:
            job.id = job_id

        job_key = self._job_key(job.id)
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                if await pipe.exists(job_key):
                    logger.info(f"Job {job.id} already exists in queue {self.name}")
                    return job.id
                pipe.multi()
                pipe.set(job_key, self._dump(job))
                pipe.lpush(self._wait_key, job.id)
                await pipe.execute()
            except WatchError:
                logger.info(f"Job {job.id} was enqueued concurrently in queue {self.name}")
                return job.id

        logger.debug(f"Job {job.id} ({name}) enqueued on {self.name}")
        return job.id

    @surface_connection_errors
    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        data = await self._client.get(self._job_key(job_id))
        if data:
            return QueueJob.from_dict(json.loads(data))
        return None

    @surface_connection_errors
    async def claim(self, timeout: float = 1.0) -> Optional[QueueJob]:
        """
        Block up to ``timeout`` seconds for a job and take a lease on it.

        The returned job has ``attempts_made`` already counting this
        attempt. A job that was redelivered after stalling on its last
        allowed attempt comes back in state FAILED and must not be run.
        """
        job_id = await self._blocking_client.blmove(
            self._wait_key, self._active_key, timeout, "RIGHT", "LEFT"
        )
        if job_id is None:
            return None

        job = await self.get_job(job_id)
        if job is None:
            logger.warning(f"Job {job_id} has no record in queue {self.name}; dropping id")
            await self._client.lrem(self._active_key, 1, job_id)
            return None

        if job.attempts_made >= job.opts.attempts:
            await self._finish_failed(job, STALLED_REASON)
            return job

        job.attempts_made += 1
        job.state = JobState.ACTIVE
        job.processed_on = self.clock()
        job.failed_reason = None
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), self._dump(job))
            pipe.set(self._lock_key(job.id), "1", ex=self.lock_ttl)
            await pipe.execute()

        logger.debug(f"Job {job.id} claimed (attempt {job.attempts_made}/{job.opts.attempts})")
        return job

    @surface_connection_errors
    async def extend_lock(self, job: QueueJob) -> None:
        await self._client.set(self._lock_key(job.id), "1", ex=self.lock_ttl)

    @surface_connection_errors
    async def complete(self, job: QueueJob, result: Any = None) -> None:
        job.state = JobState.COMPLETED
        job.finished_on = self.clock()
        job.return_value = result

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._active_key, 1, job.id)
            pipe.set(self._job_key(job.id), self._dump(job))
            pipe.lpush(self._completed_key, job.id)
            pipe.delete(self._lock_key(job.id))
            await pipe.execute()

        await self._trim(self._completed_key, job.opts.remove_on_complete)
        logger.debug(f"Job {job.id} completed")

    @surface_connection_errors
    async def fail(self, job: QueueJob, error: str, retriable: bool = True) -> JobState:
        """
        Record a failed attempt.

        Returns DELAYED when the job will be retried after its backoff, or
        FAILED when the failure is terminal.
        """
        if retriable and job.attempts_made < job.opts.attempts:
            delay = job.opts.backoff.delay_for(job.attempts_made)
            job.state = JobState.DELAYED
            job.failed_reason = error

            async with self._client.pipeline(transaction=True) as pipe:
                pipe.lrem(self._active_key, 1, job.id)
                pipe.set(self._job_key(job.id), self._dump(job))
                pipe.zadd(self._delayed_key, {job.id: self.clock() + delay})
                pipe.delete(self._lock_key(job.id))
                await pipe.execute()

            logger.info(
                f"Job {job.id} attempt {job.attempts_made}/{job.opts.attempts} failed; "
                f"retrying in {delay}ms"
            )
            return JobState.DELAYED

        await self._finish_failed(job, error)
        return JobState.FAILED

    async def _finish_failed(self, job: QueueJob, error: str) -> None:
        job.state = JobState.FAILED
        job.failed_reason = error
        job.finished_on = self.clock()

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._active_key, 1, job.id)
            pipe.set(self._job_key(job.id), self._dump(job))
            pipe.lpush(self._failed_key, job.id)
            pipe.delete(self._lock_key(job.id))
            await pipe.execute()

        await self._trim(self._failed_key, job.opts.remove_on_fail)
        logger.warning(f"Job {job.id} failed permanently after {job.attempts_made} attempts: {error}")

    async def _trim(self, list_key: str, keep: int) -> None:
        """Drop finished records beyond the newest ``keep``."""
        keep = max(keep, 0)
        stale = await self._client.lrange(list_key, keep, -1)
        if not stale:
            return
        async with self._client.pipeline(transaction=True) as pipe:
            if keep == 0:
                pipe.delete(list_key)
            else:
                pipe.ltrim(list_key, 0, keep - 1)
            pipe.delete(*[self._job_key(job_id) for job_id in stale])
            await pipe.execute()

    @surface_connection_errors
    async def promote_delayed(self) -> int:
        """Move jobs whose backoff has elapsed back to the wait list."""
        async with self._client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self._delayed_key)
                due = await pipe.zrangebyscore(self._delayed_key, "-inf", self.clock())
                if not due:
                    return 0
                pipe.multi()
                pipe.zrem(self._delayed_key, *due)
                pipe.lpush(self._wait_key, *due)
                await pipe.execute()
            except WatchError:
                # Another worker promoted them first
                return 0

        logger.debug(f"Promoted {len(due)} delayed jobs on {self.name}")
        return len(due)

    @surface_connection_errors
    async def recover_stalled(self) -> List[str]:
        """
        Return abandoned active jobs to the front of the wait list.

        A job is abandoned when it was active without a lease on the
        previous check and still is now. Call this at least every
        ``lock_ttl`` seconds.
        """
        client = self._client
        suspects = set(await client.smembers(self._stalled_key))
        recovered: List[str] = []

        for job_id in suspects:
            async with client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._active_key, self._lock_key(job_id))
                    if await pipe.exists(self._lock_key(job_id)):
                        continue
                    if job_id not in await pipe.lrange(self._active_key, 0, -1):
                        continue
                    pipe.multi()
                    pipe.lrem(self._active_key, 1, job_id)
                    pipe.rpush(self._wait_key, job_id)
                    await pipe.execute()
                    recovered.append(job_id)
                except WatchError:
                    continue

        active = await client.lrange(self._active_key, 0, -1)
        unlocked = []
        for job_id in active:
            if not await client.exists(self._lock_key(job_id)):
                unlocked.append(job_id)

        async with client.pipeline(transaction=True) as pipe:
            pipe.delete(self._stalled_key)
            if unlocked:
                pipe.sadd(self._stalled_key, *unlocked)
            await pipe.execute()

        for job_id in recovered:
            logger.warning(f"Job {job_id} stalled on {self.name}; returned to wait list")
        return recovered

    @surface_connection_errors
    async def get_counts(self) -> Dict[str, int]:
        client = self._client
        return {
            "waiting": await client.llen(self._wait_key),
            "active": await client.llen(self._active_key),
            "delayed": await client.zcard(self._delayed_key),
            "completed": await client.llen(self._completed_key),
            "failed": await client.llen(self._failed_key),
        }
