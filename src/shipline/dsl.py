# src/shipline/dsl.py
from __future__ import annotations

from dataclasses import replace
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .model import ArtifactInput, DeployStep, JobDefinition, ShellStep, Step, UploadStep


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None) -> ShellStep:
    """Create a shell step."""
    return ShellStep(name=name, run=cmd, cwd=cwd)


def upload(path: str, artifact: str | None = None, *, name: str | None = None) -> UploadStep:
    """Publish the file at `path` as job output `artifact` (defaults to the file name)."""
    artifact = artifact or PurePosixPath(path).name
    return UploadStep(name=name or f"Upload {artifact}", path=path, artifact=artifact)


def deploy(environment: str, *artifacts: str, name: str | None = None) -> DeployStep:
    """Deploy the job's inputs (or just `artifacts`) to `environment`."""
    return DeployStep(
        name=name or f"Deploy to {environment}",
        environment=environment,
        artifacts=tuple(artifacts),
    )


def use(source: str, *, dest: str | None = None, optional: bool = False) -> ArtifactInput:
    """Consume an upstream artifact: use("build/app.tar")."""
    producer, sep, artifact = source.partition("/")
    if not sep or not producer or not artifact:
        raise ValueError(f"artifact input must look like '<job>/<artifact>', got {source!r}")
    return ArtifactInput(producer=producer, artifact=artifact, dest=dest, optional=optional)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), upload(...))
    needs: Optional[Sequence[str]] = None,
    inputs: Optional[Sequence[Union[str, ArtifactInput]]] = None,
    outputs: Optional[Sequence[str]] = None,
    env: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
    continue_on_error: bool = False,
    tolerates: Optional[Sequence[str]] = None,
    cwd: str | None = None,  # default cwd applied to shell steps missing cwd
) -> JobDefinition:
    if not steps:
        raise ValueError(f"job({id!r}) must have at least one step")

    steps_final: List[Step] = list(steps)
    if cwd is not None:
        steps_final = [
            replace(s, cwd=cwd) if isinstance(s, ShellStep) and s.cwd is None else s
            for s in steps_final
        ]

    inputs_final = tuple(use(i) if isinstance(i, str) else i for i in (inputs or ()))

    # consuming an artifact implies needing its producer
    needs_final: List[str] = list(needs or [])
    for inp in inputs_final:
        if inp.producer not in needs_final:
            needs_final.append(inp.producer)

    return JobDefinition(
        id=id,
        steps=tuple(steps_final),
        needs=tuple(needs_final),
        inputs=inputs_final,
        outputs=tuple(outputs or ()),
        # force values to str for subprocess env compatibility
        env={k: str(v) for k, v in (env or {}).items()},
        timeout=timeout,
        continue_on_error=continue_on_error,
        tolerates=frozenset(tolerates or ()),
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11", "3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobDefinition]) -> List[JobDefinition]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Union[JobDefinition, List[JobDefinition]]) -> List[JobDefinition]:
    """
    Workflow definition helper. Matrix expansions may be passed inline.

        from shipline import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )
    """
    out: List[JobDefinition] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out
