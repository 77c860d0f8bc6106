"""FastAPI app: enqueue runs, query their state, stream their live status."""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from ..core.config import Settings, get_settings
from ..core.errors import StoreConnectionError, UnknownQueueError
from ..core.state import WorkflowRun, WorkflowStateTracker
from ..distributed.connection import ConnectionManager
from ..distributed.job_queue import RedisJobQueue
from ..distributed.redis_backend import RedisEventStore
from .sse import SSE_HEADERS, SSEBridge


class EnqueueJobRequest(BaseModel):
    name: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    jobId: Optional[str] = None


@dataclass
class Runtime:
    """Per-process collaborators built at startup."""
    connections: ConnectionManager
    queues: Dict[str, RedisJobQueue]
    tracker: WorkflowStateTracker
    bridge: SSEBridge

    def get_queue(self, queue_name: str) -> RedisJobQueue:
        queue = self.queues.get(queue_name)
        if queue is None:
            raise UnknownQueueError(queue_name)
        return queue


def build_runtime(settings: Settings, connections: ConnectionManager) -> Runtime:
    store = RedisEventStore(connections, maxlen=settings.event_stream_maxlen)
    tracker = WorkflowStateTracker(store)
    return Runtime(
        connections=connections,
        queues={
            name: RedisJobQueue(
                connections,
                name,
                prefix=settings.key_prefix,
                lock_ttl=settings.worker_lock_ttl_s,
            )
            for name in settings.queues
        },
        tracker=tracker,
        bridge=SSEBridge.from_connections(
            connections,
            channel=settings.status_channel,
            tracker=tracker,
            keepalive=settings.sse_keepalive_s,
        ),
    )


def create_app(
    *,
    settings_override: Optional[Settings] = None,
    connections: Optional[ConnectionManager] = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        manager = connections or ConnectionManager.from_settings(settings)
        await manager.connect()
        app.state.runtime = build_runtime(settings, manager)
        try:
            yield
        finally:
            await manager.close()

    app = FastAPI(title="runstream", lifespan=lifespan)

    def _runtime(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.exception_handler(UnknownQueueError)
    async def unknown_queue_handler(request: Request, exc: UnknownQueueError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(StoreConnectionError)
    async def store_unavailable_handler(request: Request, exc: StoreConnectionError):
        return JSONResponse(status_code=503, content={"error": "Backing store unavailable"})

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/queues/{queue_name}/jobs", status_code=201)
    async def enqueue_job(queue_name: str, payload: EnqueueJobRequest, request: Request) -> Dict[str, Any]:
        queue = _runtime(request).get_queue(queue_name)
        job_id = await queue.enqueue(payload.name, payload.data, job_id=payload.jobId)
        job = await queue.get_job(job_id)
        return {
            "jobId": job_id,
            "workflowId": job.workflow_id if job else job_id,
            "run": WorkflowRun.from_job(job).to_dict() if job else None,
        }

    @app.get("/api/queues/{queue_name}/jobs/{job_id}")
    async def get_job(queue_name: str, job_id: str, request: Request) -> Dict[str, Any]:
        job = await _runtime(request).get_queue(queue_name).get_job(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_dict()

    @app.get("/api/queues/{queue_name}/counts")
    async def get_counts(queue_name: str, request: Request) -> Dict[str, int]:
        return await _runtime(request).get_queue(queue_name).get_counts()

    @app.get("/api/workflow-runs/{workflow_id}/status")
    async def get_run_status(workflow_id: str, request: Request) -> Dict[str, Any]:
        state = await _runtime(request).tracker.get_state(workflow_id)
        return {"workflowId": workflow_id, "state": state.value}

    @app.get("/api/sse")
    async def sse(request: Request, workflowId: Optional[str] = Query(default=None)):
        if not workflowId:
            return JSONResponse(status_code=400, content={"error": "workflowId query parameter is required"})
        return StreamingResponse(
            _runtime(request).bridge.stream(workflowId, request.is_disconnected),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return app
