# agent/agent.py
from __future__ import annotations

import asyncio
import signal
from pathlib import Path
from typing import Any, Dict, Optional

from ..artifacts import ArtifactStore
from ..context import CancelToken, RetryPolicy
from ..dag import build_graph
from ..errors import RunNotFound, ShiplineError, WorkflowError
from ..history import RunHistory
from ..loader import load_workflow
from ..model import Run, RunStatus
from ..runner import Executor, print_transition
from ..settings import Settings
from ..step_workflows.deploy import DirectoryDeployTarget
from ..ui.console import get_console


class Agent:
    """Pulls triggered runs off the queue and executes them one at a time."""

    def __init__(
        self,
        queue,
        history: RunHistory,
        settings: Settings,
        *,
        repo_root: str | Path = ".",
        poll_interval: int = 5,
    ):
        """
        Args:
            queue: RedisRunQueue (or anything with dequeue/is_cancelled)
            history: where Run records are read and written
            settings: store/work/deploy dirs, worker and retry knobs
            repo_root: checkout the workflow commands run in
            poll_interval: seconds between cancel-flag checks and empty-queue waits
        """
        self.queue = queue
        self.history = history
        self.settings = settings
        self.repo_root = Path(repo_root)
        self.poll_interval = poll_interval
        self.running = True

    def stop(self, *_args) -> None:
        get_console().print_info("\nShutting down gracefully...")
        self.running = False

    async def _load_or_create(self, request: Dict[str, Any]) -> Run:
        run_id = request["run_id"]
        try:
            return await self.history.load(run_id)
        except RunNotFound:
            run = Run.create(ref=request.get("ref"), workflow=request.get("workflow"), run_id=run_id)
            await self.history.save(run)
            return run

    async def _fail(self, run: Run, reason: str) -> Run:
        run.finish(RunStatus.FAILED, reason)
        await self.history.save(run)
        get_console().print_error("Run failed before execution", reason, details=[f"run={run.run_id}"])
        return run

    def _workflow_path(self, workflow: str) -> Path:
        """Resolve a queued workflow path; it must stay inside the agent checkout."""
        root = self.repo_root.resolve()
        path = (root / workflow).resolve()
        if not path.is_relative_to(root):
            raise WorkflowError(f"workflow {workflow!r} is outside the checkout {root}")
        return path

    async def _watch_cancel(self, run_id: str, token: CancelToken) -> None:
        while not token.cancelled:
            if await self.queue.is_cancelled(run_id):
                token.cancel("cancel requested via API")
                return
            await asyncio.sleep(self.poll_interval)

    async def process(self, request: Dict[str, Any]) -> Run:
        """Execute one queued trigger: {"run_id", "workflow", "ref"}."""
        console = get_console()
        run = await self._load_or_create(request)
        if run.finished:
            console.print_info(f"Run {run.run_id} already {run.status.value}, ignoring")
            return run

        if await self.queue.is_cancelled(run.run_id):
            return await self._fail(run, "cancelled: cancel requested via API")

        workflow = request.get("workflow") or run.workflow
        try:
            jobs = load_workflow(self._workflow_path(workflow))
            graph = build_graph(jobs)
        except (ShiplineError, OSError, TypeError, ValueError) as e:
            # graph/load errors abort the run before any job executes
            return await self._fail(run, f"{type(e).__name__}: {e}")

        console.print_run_started(run.run_id, str(workflow), len(graph), ref=run.ref)
        executor = Executor(
            graph,
            ArtifactStore(self.settings.store_dir),
            max_workers=self.settings.max_workers,
            repo_root=self.repo_root,
            work_root=self.settings.work_dir,
            retry=RetryPolicy(retries=self.settings.retries, backoff=self.settings.backoff),
            deploy_target=DirectoryDeployTarget(self.settings.deploy_dir),
            history=self.history,
            listeners=[print_transition],
        )

        token = CancelToken()
        watcher = asyncio.ensure_future(self._watch_cancel(run.run_id, token))
        try:
            await executor.execute(run, cancel=token)
        finally:
            watcher.cancel()

        console.print_results(run)
        return run

    async def run_forever(self) -> None:
        await self.history.init()
        try:
            while self.running:
                request = await self.queue.dequeue(timeout_s=self.poll_interval)
                if request is None:
                    continue
                get_console().print_debug(f"dequeued {request}")
                try:
                    await self.process(request)
                except ShiplineError as e:
                    get_console().print_exception(e)
        finally:
            await self.history.close()


def run_agent(settings: Settings, *, repo_root: str | Path = ".", poll_interval: int = 5,
              queue=None, history: Optional[RunHistory] = None) -> None:
    """Blocking entry point used by `shipline agent`."""
    from ..cloud.redisq import RedisRunQueue

    queue = queue if queue is not None else RedisRunQueue.from_url(settings.redis_url, settings.queue_name)
    history = history if history is not None else RunHistory(settings.database_url)
    agent = Agent(queue, history, settings, repo_root=repo_root, poll_interval=poll_interval)

    # Setup signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, agent.stop)
    signal.signal(signal.SIGTERM, agent.stop)

    get_console().print_agent_started(queue=settings.queue_name, poll_interval=poll_interval)
    asyncio.run(agent.run_forever())
