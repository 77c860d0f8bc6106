"""
Example: Queued issue-resolution workflow

This example demonstrates:
- A job router serving the "workflow-jobs" queue
- An agent loop that records its conversation and tool use as events
- Live status updates a browser can follow over SSE

Note: This example uses a mock LLM. Replace it with a real client for
real use.

Prerequisites:
- Redis running at localhost:6379
- pip install -e .

Run this example with three terminals:
1. Terminal 1 (Worker): RUNSTREAM_REDIS_URL=redis://localhost:6379/0 \
       runstream worker example.resolve_issue:build_router
2. Terminal 2 (API):    RUNSTREAM_REDIS_URL=redis://localhost:6379/0 runstream serve
3. Terminal 3 (Submit): RUNSTREAM_REDIS_URL=redis://localhost:6379/0 \
       python example/resolve_issue.py acme/widgets 42

then open http://localhost:8000/api/sse?workflowId=<printed workflow id>
"""

import asyncio
import sys
import uuid
import logging
from typing import Any, Dict

from runstream.core import JobRouter, QueueJob
from runstream.core.config import load_settings
from runstream.distributed import ConnectionManager, EventPublisher, RedisJobQueue

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MODEL = "mock-model"


class MockLLM:
    """Mock LLM that asks for one tool call, then answers."""

    async def complete(self, messages: list) -> Dict[str, Any]:
        await asyncio.sleep(0.3)
        if not any(m["role"] == "tool" for m in messages):
            return {
                "reasoning": "I should read the failing file before proposing a fix.",
                "tool_calls": [{"name": "read_file", "arguments": {"path": "src/app.py"}}],
            }
        return {"content": "The handler never awaits the coroutine; add `await` on line 12."}


async def read_file(path: str) -> str:
    await asyncio.sleep(0.2)
    return f"# contents of {path}\nresult = fetch()\n"


def build_router(publisher: EventPublisher) -> JobRouter:
    """Factory used by `runstream worker`."""
    router = JobRouter()
    llm = MockLLM()

    @router.register("resolveIssue")
    async def resolve_issue(job: QueueJob) -> str:
        workflow_id = job.workflow_id
        repo = job.data["repoFullName"]
        issue = job.data["issueNumber"]

        await publisher.status(workflow_id, f"Fetching issue #{issue} from {repo}")
        await publisher.issue_fetched(workflow_id, f"Issue #{issue}", repo=repo)

        messages = [
            {"role": "system", "content": "You fix bugs in small repositories."},
            {"role": "user", "content": f"Resolve issue #{issue} in {repo}."},
        ]
        await publisher.system_prompt(workflow_id, messages[0]["content"])
        await publisher.user_message(workflow_id, messages[1]["content"])

        while True:
            await publisher.llm_started(workflow_id, model=MODEL)
            reply = await llm.complete(messages)
            await publisher.llm_completed(workflow_id, model=MODEL)

            if reply.get("reasoning"):
                await publisher.reasoning(workflow_id, reply["reasoning"])

            if not reply.get("tool_calls"):
                await publisher.assistant_message(workflow_id, reply["content"], model=MODEL)
                return reply["content"]

            for call in reply["tool_calls"]:
                call_id = f"call_{uuid.uuid4().hex[:8]}"
                await publisher.status(workflow_id, f"Running {call['name']}")
                await publisher.tool_call(workflow_id, call["name"], call_id, call["arguments"])
                output = await read_file(**call["arguments"])
                await publisher.tool_call_result(workflow_id, call["name"], call_id, output)
                messages.append({"role": "tool", "content": output})

    return router


async def submit(repo: str, issue: int) -> None:
    settings = load_settings()
    connections = ConnectionManager.from_settings(settings)
    await connections.connect()
    try:
        queue = RedisJobQueue(connections, "workflow-jobs", prefix=settings.key_prefix)
        workflow_id = uuid.uuid4().hex
        job_id = await queue.enqueue(
            "resolveIssue",
            {"workflowId": workflow_id, "repoFullName": repo, "issueNumber": issue},
        )
        logger.info(f"Enqueued job {job_id} for workflow {workflow_id}")
    finally:
        await connections.close()


def main():
    if len(sys.argv) < 3:
        print("Usage: python resolve_issue.py <owner/repo> <issue number>")
        sys.exit(1)
    asyncio.run(submit(sys.argv[1], int(sys.argv[2])))


if __name__ == "__main__":
    main()
