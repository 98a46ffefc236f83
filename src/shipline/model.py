# model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Union

from .errors import InvalidTransition, PromotionDenied


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ----------------------------------------------------------------------
# Steps: closed set of variants, dispatched by step_workflows.handler_for
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ShellStep:
    """A single shell command inside a job."""
    name: str
    run: str
    cwd: str | None = None


@dataclass(frozen=True)
class UploadStep:
    """Store a workspace file in the artifact store as a job output."""
    name: str
    path: str
    artifact: str


@dataclass(frozen=True)
class DeployStep:
    """Hand the job's input artifacts (all, or the named ones) to the deploy target."""
    name: str
    environment: str
    artifacts: Tuple[str, ...] = ()


Step = Union[ShellStep, UploadStep, DeployStep]


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ArtifactRef:
    key: str                       # sha256 of the content
    produced_by: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "produced_by": self.produced_by, "name": self.name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ArtifactRef:
        return cls(key=data["key"], produced_by=data.get("produced_by"), name=data.get("name"))


@dataclass(frozen=True)
class ArtifactInput:
    """An artifact a job consumes: output `artifact` of job `producer`."""
    producer: str
    artifact: str
    dest: Optional[str] = None     # file name inside the job inputs dir
    optional: bool = False

    @property
    def target_name(self) -> str:
        return self.dest or self.artifact


# ----------------------------------------------------------------------
# Job definition
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class JobDefinition:
    """
    A pipeline job: typed steps + dependencies + artifact wiring.

    `needs` lists the jobs that must succeed before this one starts.
    `tolerates` is the subset of `needs` whose failure is acceptable, provided
    the failed job itself was declared with `continue_on_error`.
    """
    id: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()
    inputs: Tuple[ArtifactInput, ...] = ()
    outputs: Tuple[str, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    timeout: Optional[float] = None
    continue_on_error: bool = False
    tolerates: FrozenSet[str] = frozenset()

    def declared_outputs(self) -> Tuple[str, ...]:
        if self.outputs:
            return self.outputs
        return tuple(s.artifact for s in self.steps if isinstance(s, UploadStep))


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def done(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_JOB_TRANSITIONS = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.SKIPPED},
    JobStatus.RUNNING: {JobStatus.SUCCEEDED, JobStatus.FAILED},
}


@dataclass
class JobState:
    status: JobStatus = JobStatus.QUEUED
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    reason: str = ""
    log: str = ""
    inputs: Dict[str, ArtifactRef] = field(default_factory=dict)
    outputs: Dict[str, ArtifactRef] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "exit_code": self.exit_code,
            "reason": self.reason,
            "log": self.log,
            "inputs": {k: v.to_dict() for k, v in self.inputs.items()},
            "outputs": {k: v.to_dict() for k, v in self.outputs.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobState:
        return cls(
            status=JobStatus(data.get("status", "queued")),
            started_at=_parse_ts(data.get("started_at")),
            finished_at=_parse_ts(data.get("finished_at")),
            exit_code=data.get("exit_code"),
            reason=data.get("reason") or "",
            log=data.get("log") or "",
            inputs={k: ArtifactRef.from_dict(v) for k, v in (data.get("inputs") or {}).items()},
            outputs={k: ArtifactRef.from_dict(v) for k, v in (data.get("outputs") or {}).items()},
        )


@dataclass
class Run:
    """
    One execution of a job graph.

    Created `pending` by a trigger, moved to `running` by `start()`, mutated
    only through `transition()` while running, and sealed by `finish()`.
    """
    run_id: str
    ref: Optional[str] = None
    workflow: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    reason: str = ""
    job_states: Dict[str, JobState] = field(default_factory=dict)
    created_at: datetime = field(default_factory=now_utc)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def create(cls, *, ref: Optional[str] = None, workflow: Optional[str] = None,
               run_id: Optional[str] = None) -> Run:
        return cls(run_id=run_id or uuid.uuid4().hex, ref=ref, workflow=workflow)

    @property
    def finished(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)

    def start(self, job_ids: Iterable[str]) -> None:
        if self.status is not RunStatus.PENDING:
            raise InvalidTransition(f"run {self.run_id} cannot start from {self.status.value}")
        self.job_states = {job_id: JobState() for job_id in job_ids}
        self.status = RunStatus.RUNNING
        self.started_at = now_utc()

    def transition(self, job_id: str, status: JobStatus, **fields: Any) -> JobState:
        if self.status is not RunStatus.RUNNING:
            raise InvalidTransition(
                f"run {self.run_id} is {self.status.value}; job '{job_id}' cannot change state"
            )
        state = self.job_states[job_id]
        if status not in _JOB_TRANSITIONS.get(state.status, set()):
            raise InvalidTransition(
                f"job '{job_id}' cannot go from {state.status.value} to {status.value}"
            )
        state.status = status
        if status is JobStatus.RUNNING:
            state.started_at = now_utc()
        else:
            state.finished_at = now_utc()
        for name, value in fields.items():
            if not hasattr(state, name):
                raise AttributeError(f"JobState has no field {name!r}")
            setattr(state, name, value)
        return state

    def finish(self, status: RunStatus, reason: str) -> None:
        if self.finished:
            raise InvalidTransition(f"run {self.run_id} already finished ({self.status.value})")
        if status not in (RunStatus.SUCCEEDED, RunStatus.FAILED):
            raise InvalidTransition(f"run cannot finish as {status.value}")
        self.status = status
        self.reason = reason
        self.finished_at = now_utc()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "ref": self.ref,
            "workflow": self.workflow,
            "status": self.status.value,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "jobs": {job_id: st.to_dict() for job_id, st in self.job_states.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Run:
        return cls(
            run_id=data["run_id"],
            ref=data.get("ref"),
            workflow=data.get("workflow"),
            status=RunStatus(data.get("status", "pending")),
            reason=data.get("reason") or "",
            job_states={k: JobState.from_dict(v) for k, v in (data.get("jobs") or {}).items()},
            created_at=_parse_ts(data.get("created_at")) or now_utc(),
            started_at=_parse_ts(data.get("started_at")),
            finished_at=_parse_ts(data.get("finished_at")),
        )


# ----------------------------------------------------------------------
# Promotion
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PromotionDecision:
    run: Run
    target_environment: str
    approved: bool
    reason: str

    def require(self) -> PromotionDecision:
        """Return self when approved, raise PromotionDenied otherwise."""
        if not self.approved:
            raise PromotionDenied(self)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run.run_id,
            "target_environment": self.target_environment,
            "approved": self.approved,
            "reason": self.reason,
        }
