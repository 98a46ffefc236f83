# step_workflows/deploy.py
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Mapping, Protocol

from ..artifacts import ArtifactStore
from ..errors import JobFailed, WorkflowError
from ..model import ArtifactRef, DeployStep, JobStatus, PromotionDecision, Run

if TYPE_CHECKING:
    from ..context import JobContext


class DeployTarget(Protocol):
    """Anything that accepts an artifact set for an environment (static host, bucket, ...)."""

    def deploy(self, environment: str, artifacts: Mapping[str, bytes]) -> bool:
        ...


class DirectoryDeployTarget:
    """
    Deploy by copying artifacts into a directory per environment:
      root/<environment>/<artifact name>
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def deploy(self, environment: str, artifacts: Mapping[str, bytes]) -> bool:
        env_dir = self.root / environment
        env_dir.mkdir(parents=True, exist_ok=True)
        for name, data in artifacts.items():
            dest = env_dir / name
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp = dest.with_name(dest.name + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(dest)
        return True


async def run_deploy(step: DeployStep, ctx: JobContext) -> None:
    """Hand the job's resolved inputs (or the named subset) to the deploy target."""
    if ctx.deploy_target is None:
        raise WorkflowError(f"[{ctx.job.id}] step '{step.name}': no deploy target configured")

    names = list(step.artifacts) or list(ctx.inputs)
    missing = [n for n in names if n not in ctx.inputs]
    if missing:
        raise WorkflowError(
            f"[{ctx.job.id}] step '{step.name}' deploys {missing} which are not job inputs"
        )

    payload: Dict[str, bytes] = {}
    for name in names:
        ctx.check_cancelled()
        payload[name] = await ctx.store_call(ctx.store.get, ctx.inputs[name])

    ok = await asyncio.to_thread(ctx.deploy_target.deploy, step.environment, payload)
    if not ok:
        raise JobFailed(job=ctx.job.id, reason=f"deploy to '{step.environment}' rejected by target")


def run_artifacts(run: Run) -> Dict[str, ArtifactRef]:
    """Every output produced by a succeeded job of the run, keyed '<job>/<artifact>'."""
    out: Dict[str, ArtifactRef] = {}
    for job_id, state in run.job_states.items():
        if state.status is not JobStatus.SUCCEEDED:
            continue
        for name, ref in state.outputs.items():
            out[f"{job_id}/{name}"] = ref
    return out


def deploy_run(
    decision: PromotionDecision,
    store: ArtifactStore,
    target: DeployTarget,
) -> Dict[str, ArtifactRef]:
    """
    Deploy the artifact set of an approved run to the decision's environment.
    Raises PromotionDenied when the decision was not approved.
    """
    decision.require()
    artifacts = run_artifacts(decision.run)
    payload = {name: store.get(ref) for name, ref in artifacts.items()}
    if not target.deploy(decision.target_environment, payload):
        raise JobFailed(
            job="promote",
            reason=f"deploy to '{decision.target_environment}' rejected by target",
        )
    return artifacts
