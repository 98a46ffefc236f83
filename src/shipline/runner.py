# runner.py
from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .artifacts import DEFAULT_STORE_DIR, ArtifactStore
from .context import CancelToken, JobContext, RetryPolicy
from .dag import Graph, build_graph
from .errors import (
    ArtifactNotFound,
    JobCancelled,
    JobFailed,
    JobTimeout,
    StepFailure,
    WorkflowError,
)
from .model import ArtifactRef, JobDefinition, JobState, JobStatus, Run, RunStatus
from .step_workflows.registry import handler_for
from .ui.console import get_console

DEFAULT_WORK_DIR = ".shipline/work"

Listener = Callable[[Run, str, JobState], None]


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class JobOutcome:
    status: JobStatus
    reason: str = ""
    exit_code: Optional[int] = None
    log: str = ""
    inputs: Dict[str, ArtifactRef] = field(default_factory=dict)
    outputs: Dict[str, ArtifactRef] = field(default_factory=dict)


class Executor:
    """
    Bounded-concurrency scheduler for one Run over a validated Graph.

    The coroutine running `execute()` is the only writer of the Run: job
    tasks return a JobOutcome and the coordinator applies it, then
    re-evaluates the ready set. This keeps a newly-ready job from being
    dispatched twice when several jobs finish together.
    """

    def __init__(
        self,
        graph: Graph,
        store: ArtifactStore,
        *,
        max_workers: int | None = None,
        repo_root: str | Path = ".",
        work_root: str | Path = DEFAULT_WORK_DIR,
        retry: RetryPolicy | None = None,
        stop_on_failure: bool = False,
        deploy_target=None,
        history=None,
        listeners: Sequence[Listener] = (),
    ):
        self.graph = graph
        self.store = store
        self.max_workers = max(1, max_workers or default_workers())
        self.repo_root = Path(repo_root).resolve()
        self.work_root = Path(work_root).resolve()
        self.retry = retry if retry is not None else RetryPolicy()
        self.stop_on_failure = stop_on_failure
        self.deploy_target = deploy_target
        self.history = history
        self.listeners = list(listeners)

    # ------------------------------------------------------------------
    # State bookkeeping (coordinator only)
    # ------------------------------------------------------------------

    async def _transition(self, run: Run, job_id: str, status: JobStatus, **fields) -> None:
        state = run.transition(job_id, status, **fields)
        for listener in self.listeners:
            listener(run, job_id, state)
        await self._persist(run)

    async def _persist(self, run: Run) -> None:
        if self.history is not None:
            await self.history.save(run)

    def _tolerated(self, job: JobDefinition, dep: str, run: Run) -> bool:
        dep_state = run.job_states[dep]
        return (
            dep_state.status is JobStatus.FAILED
            and self.graph.jobs[dep].continue_on_error
            and dep in job.tolerates
        )

    def _blocking_dependency(self, job: JobDefinition, run: Run) -> Optional[str]:
        """Return a reason if some need can no longer succeed, else None."""
        for dep in job.needs:
            st = run.job_states[dep].status
            if st is JobStatus.SKIPPED:
                return f"dependency '{dep}' skipped"
            if st is JobStatus.FAILED and not self._tolerated(job, dep, run):
                return f"dependency '{dep}' failed"
        return None

    def _is_ready(self, job: JobDefinition, run: Run) -> bool:
        return all(
            run.job_states[dep].status is JobStatus.SUCCEEDED or self._tolerated(job, dep, run)
            for dep in job.needs
        )

    def _is_fatal(self, job_id: str, run: Run) -> bool:
        return (
            run.job_states[job_id].status is JobStatus.FAILED
            and not self.graph.jobs[job_id].continue_on_error
        )

    # ------------------------------------------------------------------
    # Coordinator
    # ------------------------------------------------------------------

    async def execute(self, run: Run, *, cancel: CancelToken | None = None) -> Run:
        cancel = cancel if cancel is not None else CancelToken()
        if run.status is RunStatus.PENDING:
            run.start(self.graph.order)
        await self._persist(run)

        queued: List[str] = list(self.graph.order)      # topological order = dispatch priority
        in_flight: Dict[asyncio.Task, str] = {}
        halted = False
        cancel_wait = asyncio.ensure_future(cancel.wait())

        try:
            while True:
                if cancel.cancelled:
                    await self._cancel(run, queued, in_flight, cancel.reason)
                    break

                # skip jobs whose dependencies failed; cascades in one pass (topo order)
                for job_id in list(queued):
                    reason = self._blocking_dependency(self.graph.jobs[job_id], run)
                    if reason:
                        queued.remove(job_id)
                        await self._transition(run, job_id, JobStatus.SKIPPED, reason=reason)

                if not halted:
                    for job_id in list(queued):
                        if len(in_flight) >= self.max_workers:
                            break
                        job = self.graph.jobs[job_id]
                        if not self._is_ready(job, run):
                            continue
                        queued.remove(job_id)
                        await self._transition(run, job_id, JobStatus.RUNNING)
                        task = asyncio.ensure_future(self._run_job(job, run, cancel))
                        in_flight[task] = job_id

                if not in_flight:
                    break

                done, _ = await asyncio.wait(
                    [*in_flight, cancel_wait], return_when=asyncio.FIRST_COMPLETED
                )
                finished = [t for t in done if t is not cancel_wait]
                for task in sorted(finished, key=lambda t: self.graph.index(in_flight[t])):
                    job_id = in_flight.pop(task)
                    outcome = task.result()
                    await self._transition(
                        run,
                        job_id,
                        outcome.status,
                        reason=outcome.reason,
                        exit_code=outcome.exit_code,
                        log=outcome.log,
                        inputs=outcome.inputs,
                        outputs=outcome.outputs,
                    )
                    if self.stop_on_failure and self._is_fatal(job_id, run):
                        halted = True

            for job_id in queued:
                await self._transition(run, job_id, JobStatus.SKIPPED, reason="run stopped after failure")
        finally:
            cancel_wait.cancel()

        status, reason = self._summarize(run, cancel)
        run.finish(status, reason)
        await self._persist(run)
        return run

    async def _cancel(self, run: Run, queued: List[str], in_flight: Dict[asyncio.Task, str],
                      reason: str) -> None:
        for job_id in list(queued):
            queued.remove(job_id)
            await self._transition(run, job_id, JobStatus.SKIPPED, reason="Cancelled")

        for task in in_flight:
            task.cancel()
        results = await asyncio.gather(*in_flight, return_exceptions=True)
        ordered = sorted(zip(in_flight.values(), results), key=lambda p: self.graph.index(p[0]))
        in_flight.clear()
        for job_id, result in ordered:
            if isinstance(result, JobOutcome):
                # finished before the cancellation reached it
                await self._transition(
                    run, job_id, result.status,
                    reason=result.reason, exit_code=result.exit_code, log=result.log,
                    inputs=result.inputs, outputs=result.outputs,
                )
            else:
                await self._transition(run, job_id, JobStatus.FAILED, reason="Cancelled")

    def _summarize(self, run: Run, cancel: CancelToken) -> tuple[RunStatus, str]:
        order = self.graph.order
        states = run.job_states
        failed = [j for j in order if self._is_fatal(j, run)]
        tolerated = [j for j in order if states[j].status is JobStatus.FAILED and j not in failed]
        skipped = [j for j in order if states[j].status is JobStatus.SKIPPED]

        if cancel.cancelled:
            return RunStatus.FAILED, f"cancelled: {cancel.reason}"
        if failed:
            parts = ["failed: " + ", ".join(failed)]
            if skipped:
                parts.append("skipped: " + ", ".join(skipped))
            return RunStatus.FAILED, "; ".join(parts)

        # only tolerable failures left: the run succeeds, skipped jobs included
        if not tolerated and not skipped:
            return RunStatus.SUCCEEDED, f"all {len(order)} jobs succeeded"
        succeeded = sum(1 for j in order if states[j].status is JobStatus.SUCCEEDED)
        parts = [f"{succeeded} jobs succeeded"]
        if tolerated:
            parts.append(f"{len(tolerated)} tolerated failure(s): {', '.join(tolerated)}")
        if skipped:
            parts.append("skipped: " + ", ".join(skipped))
        return RunStatus.SUCCEEDED, "; ".join(parts)

    # ------------------------------------------------------------------
    # Job execution (runs in a worker task, never touches the Run)
    # ------------------------------------------------------------------

    def _context(self, job: JobDefinition, run: Run, cancel: CancelToken) -> JobContext:
        return JobContext(
            job=job,
            run=run,
            repo_root=self.repo_root,
            inputs_dir=self.work_root / run.run_id / job.id,
            store=self.store,
            cancel=cancel,
            retry=self.retry,
            deploy_target=self.deploy_target,
        )

    async def _materialize_inputs(self, ctx: JobContext) -> None:
        ctx.inputs_dir.mkdir(parents=True, exist_ok=True)
        for inp in ctx.job.inputs:
            ref = ctx.run.job_states[inp.producer].outputs.get(inp.artifact)
            if ref is None:
                if inp.optional:
                    continue
                raise ArtifactNotFound(
                    f"{inp.producer}/{inp.artifact}", detail="producer did not publish it"
                )
            try:
                data = await ctx.store_call(ctx.store.get, ref)
            except ArtifactNotFound:
                if inp.optional:
                    continue
                raise
            dest = ctx.inputs_dir / inp.target_name
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_bytes(data)
            ctx.inputs[inp.artifact] = ref
            ctx.input_paths[inp.artifact] = dest

    async def _run_steps(self, ctx: JobContext) -> None:
        await self._materialize_inputs(ctx)
        for step in ctx.job.steps:
            ctx.check_cancelled()
            await handler_for(step)(step, ctx)

        missing = [o for o in ctx.job.declared_outputs() if o not in ctx.outputs]
        if missing:
            raise WorkflowError(f"[{ctx.job.id}] declared outputs not produced: {missing}")

    async def _run_job(self, job: JobDefinition, run: Run, cancel: CancelToken) -> JobOutcome:
        ctx = self._context(job, run, cancel)
        try:
            if job.timeout is not None:
                await asyncio.wait_for(self._run_steps(ctx), timeout=job.timeout)
            else:
                await self._run_steps(ctx)
        except asyncio.TimeoutError:
            err = JobTimeout(job=job.id, reason="Timeout", timeout=job.timeout or 0.0)
            return self._failed(ctx, str(err))
        except JobCancelled as e:
            return self._failed(ctx, str(e))
        except StepFailure as e:
            return self._failed(ctx, str(e), exit_code=e.exit_code)
        except JobFailed as e:
            return self._failed(ctx, e.reason, exit_code=e.exit_code)
        except Exception as e:
            return self._failed(ctx, f"{type(e).__name__}: {e}")

        return JobOutcome(
            status=JobStatus.SUCCEEDED,
            exit_code=ctx.exit_code if ctx.exit_code is not None else 0,
            log=ctx.log,
            inputs=dict(ctx.inputs),
            outputs=dict(ctx.outputs),
        )

    @staticmethod
    def _failed(ctx: JobContext, reason: str, exit_code: Optional[int] = None) -> JobOutcome:
        return JobOutcome(
            status=JobStatus.FAILED,
            reason=reason,
            exit_code=exit_code if exit_code is not None else ctx.exit_code,
            log=ctx.log,
            inputs=dict(ctx.inputs),
            outputs=dict(ctx.outputs),
        )


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_dag(
    jobs: Iterable[JobDefinition],
    *,
    ref: str | None = None,
    workflow: str | None = None,
    run_id: str | None = None,
    repo_root: str | Path = ".",
    store: ArtifactStore | None = None,
    store_root: str | Path = DEFAULT_STORE_DIR,
    work_root: str | Path = DEFAULT_WORK_DIR,
    max_workers: int | None = None,
    retry: RetryPolicy | None = None,
    stop_on_failure: bool = False,
    deploy_target=None,
    history=None,
    listeners: Sequence[Listener] = (),
    cancel: CancelToken | None = None,
    interrupt_signals: Sequence[int] = (),
) -> Run:
    """
    Build the graph (graph errors raise before anything runs), create a Run
    and execute it to completion. Returns the finished Run.

    Each signal in `interrupt_signals` cancels the run from inside the event
    loop, so running jobs are terminated and the run is finalized and saved.
    """
    graph = build_graph(jobs)
    cancel = cancel if cancel is not None else CancelToken()
    run = Run.create(ref=ref, workflow=workflow, run_id=run_id)
    executor = Executor(
        graph,
        store if store is not None else ArtifactStore(store_root),
        max_workers=max_workers,
        repo_root=repo_root,
        work_root=work_root,
        retry=retry,
        stop_on_failure=stop_on_failure,
        deploy_target=deploy_target,
        history=history,
        listeners=listeners,
    )

    async def _main() -> Run:
        loop = asyncio.get_running_loop()
        for sig in interrupt_signals:
            loop.add_signal_handler(sig, cancel.cancel, "interrupted by user")
        try:
            if history is not None:
                await history.init()
            try:
                return await executor.execute(run, cancel=cancel)
            finally:
                if history is not None:
                    await history.close()
        finally:
            for sig in interrupt_signals:
                loop.remove_signal_handler(sig)

    return asyncio.run(_main())


def print_transition(run: Run, job_id: str, state: JobState) -> None:
    """Listener that forwards transitions to the active console."""
    get_console().on_transition(run, job_id, state)
