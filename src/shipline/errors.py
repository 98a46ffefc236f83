# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class ShiplineError(Exception):
    """Base class for every error raised by shipline."""


class WorkflowError(ShiplineError, ValueError):
    """A workflow file or job definition is malformed."""


# ----------------------------------------------------------------------
# Graph build (fatal, raised before any job runs)
# ----------------------------------------------------------------------

class GraphError(ShiplineError):
    pass


@dataclass(eq=False)
class DuplicateJob(GraphError):
    job: str

    def __str__(self) -> str:
        return f"Duplicate job id: {self.job}"


@dataclass(eq=False)
class UnknownDependency(GraphError):
    job: str
    missing: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' needs missing job '{self.missing}'. "
            f"Known jobs: {sorted(self.known)}"
        )


@dataclass(eq=False)
class CyclicDependency(GraphError):
    cycle: List[str]

    def __str__(self) -> str:
        return "Dependency cycle: " + " -> ".join(self.cycle)


# ----------------------------------------------------------------------
# Job level (recorded on the job, propagates as dependents skipped)
# ----------------------------------------------------------------------

@dataclass(eq=False)
class JobFailed(ShiplineError):
    job: str
    reason: str
    exit_code: Optional[int] = None

    def __str__(self) -> str:
        return f"[{self.job}] {self.reason}"


@dataclass(eq=False)
class StepFailure(JobFailed):
    step: str = ""
    cmd: str = ""
    output: str = ""

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass(eq=False)
class JobTimeout(JobFailed):
    timeout: float = 0.0

    def __str__(self) -> str:
        return "Timeout"


@dataclass(eq=False)
class JobCancelled(JobFailed):
    def __str__(self) -> str:
        return "Cancelled"


# ----------------------------------------------------------------------
# Artifact store
# ----------------------------------------------------------------------

@dataclass(eq=False)
class ArtifactNotFound(ShiplineError):
    key: str
    detail: str = ""

    def __str__(self) -> str:
        msg = f"Artifact not found: {self.key}"
        if self.detail:
            msg += f" ({self.detail})"
        return msg


class TransientStoreError(ShiplineError):
    """The artifact store could not be reached; the operation may be retried."""


# ----------------------------------------------------------------------
# Run bookkeeping / promotion
# ----------------------------------------------------------------------

class InvalidTransition(ShiplineError, RuntimeError):
    pass


@dataclass(eq=False)
class RunNotFound(ShiplineError):
    run_id: str

    def __str__(self) -> str:
        return f"Run not found: {self.run_id}"


@dataclass(eq=False)
class UnknownEnvironment(ShiplineError, ValueError):
    environment: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"Unknown environment '{self.environment}'. Known environments: {self.known}"


class PromotionDenied(ShiplineError):
    """Raised by callers that treat a denied promotion as an error."""

    def __init__(self, decision):
        super().__init__(decision.reason)
        self.decision = decision

    def __str__(self) -> str:
        return (
            f"Promotion of run {self.decision.run.run_id} to "
            f"'{self.decision.target_environment}' denied: {self.decision.reason}"
        )
