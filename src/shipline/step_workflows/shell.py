# step_workflows/shell.py
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from ..errors import StepFailure
from ..model import ShellStep

if TYPE_CHECKING:
    from ..context import JobContext

# Keep the tail of step output on the job state so failures are explainable
OUTPUT_TAIL = 4000


async def run_shell(step: ShellStep, ctx: JobContext) -> None:
    """Run a shell step; non-zero exit raises StepFailure. Cancellation kills the process."""
    cwd = (ctx.repo_root / (step.cwd or ".")).resolve()
    if not cwd.exists():
        raise FileNotFoundError(f"[{ctx.job.id}] step '{step.name}' cwd not found: {cwd}")

    proc = await asyncio.create_subprocess_shell(
        step.run,
        cwd=str(cwd),
        env=ctx.environ(),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        out, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    text = (out or b"").decode("utf-8", errors="replace")
    ctx.log = (ctx.log + text)[-OUTPUT_TAIL:]
    ctx.exit_code = proc.returncode

    if proc.returncode != 0:
        raise StepFailure(
            job=ctx.job.id,
            reason=f"step '{step.name}' exited with {proc.returncode}",
            exit_code=proc.returncode,
            step=step.name,
            cmd=step.run,
            output=text[-OUTPUT_TAIL:],
        )
