# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List

import yaml

from . import dsl
from .errors import WorkflowError
from .gate import PromotionPolicy
from .model import ArtifactInput, JobDefinition, Step

YAML_SUFFIXES = {".yaml", ".yml", ".json"}


# ----------------------------------------------------------------------
# Workflow loading (python module or YAML/JSON document)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[JobDefinition]:
    """
    Load a workflow file.

    Python files must define either:
      - workflow() -> List[JobDefinition]
      - JOBS = [JobDefinition, ...]

    YAML/JSON files must contain a top-level `jobs` mapping.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        return jobs_from_document(_read_document(wf_path), source=wf_path.name)
    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py, .yaml or .json file, got: {wf_path.name}")

    module_name = f"shipline_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, JobDefinition) for j in jobs):
        raise WorkflowError(
            "Workflow must return/define a List[JobDefinition]. "
            "Define workflow() -> List[JobDefinition] or JOBS = [...]."
        )
    return jobs


def _read_document(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise WorkflowError(f"Could not parse {path.name}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise WorkflowError(f"{path.name}: top level must be a mapping")
    return data


def _as_list(value: Any, what: str) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (str, dict)):
        return [value]
    if isinstance(value, list):
        return value
    raise WorkflowError(f"{what} must be a list, got {type(value).__name__}")


def _parse_step(job_id: str, idx: int, raw: Any) -> Step:
    if not isinstance(raw, dict):
        raise WorkflowError(f"job '{job_id}' step {idx}: must be a mapping")

    kinds = [k for k in ("run", "upload", "deploy") if k in raw]
    if len(kinds) != 1:
        raise WorkflowError(
            f"job '{job_id}' step {idx}: exactly one of 'run', 'upload', 'deploy' is required, "
            f"got {kinds or 'none'}"
        )
    kind = kinds[0]
    name = raw.get("name")

    if kind == "run":
        return dsl.sh(name or f"step {idx + 1}", str(raw["run"]), cwd=raw.get("cwd"))
    if kind == "upload":
        return dsl.upload(str(raw["upload"]), raw.get("artifact"), name=name)
    artifacts = [str(a) for a in _as_list(raw.get("artifacts"), f"job '{job_id}' deploy artifacts")]
    return dsl.deploy(str(raw["deploy"]), *artifacts, name=name)


def _parse_input(job_id: str, raw: Any) -> ArtifactInput:
    if isinstance(raw, str):
        try:
            return dsl.use(raw)
        except ValueError as e:
            raise WorkflowError(f"job '{job_id}': {e}") from e
    if isinstance(raw, dict) and "from" in raw and "artifact" in raw:
        return ArtifactInput(
            producer=str(raw["from"]),
            artifact=str(raw["artifact"]),
            dest=raw.get("dest"),
            optional=bool(raw.get("optional", False)),
        )
    raise WorkflowError(
        f"job '{job_id}': inputs must be '<job>/<artifact>' or {{from, artifact}} mappings"
    )


def jobs_from_document(data: Dict[str, Any], *, source: str = "<workflow>") -> List[JobDefinition]:
    raw_jobs = data.get("jobs")
    if not isinstance(raw_jobs, dict) or not raw_jobs:
        raise WorkflowError(f"{source}: expected a non-empty 'jobs' mapping")

    jobs: List[JobDefinition] = []
    for job_id, body in raw_jobs.items():
        job_id = str(job_id)
        if not isinstance(body, dict):
            raise WorkflowError(f"{source}: job '{job_id}' must be a mapping")
        steps = [_parse_step(job_id, i, s) for i, s in enumerate(_as_list(body.get("steps"), "steps"))]
        if not steps:
            raise WorkflowError(f"{source}: job '{job_id}' has no steps")
        timeout = body.get("timeout")
        jobs.append(
            dsl.job(
                job_id,
                *steps,
                needs=[str(n) for n in _as_list(body.get("needs"), "needs")],
                inputs=[_parse_input(job_id, i) for i in _as_list(body.get("inputs"), "inputs")],
                outputs=[str(o) for o in _as_list(body.get("outputs"), "outputs")],
                env=dict(body.get("env") or {}),
                timeout=float(timeout) if timeout is not None else None,
                continue_on_error=bool(body.get("continue_on_error", False)),
                tolerates=[str(t) for t in _as_list(body.get("tolerates"), "tolerates")],
            )
        )
    return jobs


# ----------------------------------------------------------------------
# Promotion policy
# ----------------------------------------------------------------------

def load_policy(path: str | Path | None) -> PromotionPolicy:
    """Read the `promotion:` section of a YAML/JSON file; defaults when absent."""
    if path is None:
        return PromotionPolicy()
    p = Path(path).expanduser()
    if not p.exists():
        raise FileNotFoundError(f"Policy file not found: {p}")
    data = _read_document(p)
    section = data.get("promotion", data)
    if not isinstance(section, dict):
        raise WorkflowError(f"{p.name}: 'promotion' must be a mapping")
    return PromotionPolicy.from_dict(section)
