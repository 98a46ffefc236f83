# step_workflows/upload.py
from __future__ import annotations

from typing import TYPE_CHECKING

from ..model import UploadStep

if TYPE_CHECKING:
    from ..context import JobContext


async def run_upload(step: UploadStep, ctx: JobContext) -> None:
    """Store a workspace file as the job output `step.artifact`."""
    path = (ctx.repo_root / step.path).resolve()
    ref = await ctx.store_call(
        ctx.store.put_file,
        path,
        produced_by=ctx.job.id,
        name=step.artifact,
    )
    ctx.outputs[step.artifact] = ref
