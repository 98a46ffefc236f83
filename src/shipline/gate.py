# gate.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .errors import UnknownEnvironment
from .model import JobStatus, PromotionDecision, Run, RunStatus

# v1.2.3, 1.2.3, v1.2.3-rc.1, v1.2.3+build.5
DEFAULT_TAG_PATTERN = r"^v?\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?$"


@dataclass(frozen=True)
class PromotionPolicy:
    """
    require_tag:           run ref must be a release tag
    required_environments: ordered promotion ladder, e.g. ("dev", "staging", "prod")
    required_checks:       job ids that must have succeeded
    """
    require_tag: bool = False
    required_environments: Tuple[str, ...] = ()
    required_checks: FrozenSet[str] = frozenset()
    tag_pattern: str = DEFAULT_TAG_PATTERN

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> PromotionPolicy:
        data = data or {}
        return cls(
            require_tag=bool(data.get("require_tag", False)),
            required_environments=tuple(data.get("environments") or data.get("required_environments") or ()),
            required_checks=frozenset(data.get("required_checks") or ()),
            tag_pattern=str(data.get("tag_pattern") or DEFAULT_TAG_PATTERN),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "require_tag": self.require_tag,
            "environments": list(self.required_environments),
            "required_checks": sorted(self.required_checks),
            "tag_pattern": self.tag_pattern,
        }

    def next_environment(self, current: Optional[str] = None) -> Optional[str]:
        """First rung of the ladder when current is None, else the one after it."""
        ladder = self.required_environments
        if not ladder:
            return None
        if current is None:
            return ladder[0]
        if current not in ladder:
            raise UnknownEnvironment(current, list(ladder))
        idx = ladder.index(current)
        return ladder[idx + 1] if idx + 1 < len(ladder) else None


def release_tag(ref: Optional[str], pattern: str = DEFAULT_TAG_PATTERN) -> Optional[str]:
    """Return the tag name if `ref` is a release tag, else None. Branch refs never match."""
    if not ref:
        return None
    if ref.startswith("refs/tags/"):
        ref = ref[len("refs/tags/"):]
    elif ref.startswith("refs/"):
        return None
    return ref if re.match(pattern, ref) else None


def evaluate(run: Run, policy: PromotionPolicy, target_environment: str) -> PromotionDecision:
    """
    Decide whether `run` may be promoted to `target_environment`.

    approved iff the run succeeded, every required check succeeded, and
    (when required) the run ref is a release tag. Always explains itself.
    """
    ladder = policy.required_environments
    if ladder and target_environment not in ladder:
        raise UnknownEnvironment(target_environment, list(ladder))

    problems: List[str] = []

    if run.status is not RunStatus.SUCCEEDED:
        detail = f": {run.reason}" if run.reason else ""
        problems.append(f"run {run.run_id} is {run.status.value}{detail}")

    checks = sorted(policy.required_checks)
    not_passed: List[str] = []
    for check in checks:
        state = run.job_states.get(check)
        if state is None:
            not_passed.append(f"{check} (missing)")
        elif state.status is not JobStatus.SUCCEEDED:
            not_passed.append(f"{check} ({state.status.value})")
    if not_passed:
        problems.append("required checks not passed: " + ", ".join(not_passed))

    tag = release_tag(run.ref, policy.tag_pattern)
    if policy.require_tag and tag is None:
        problems.append(f"ref {run.ref!r} is not a release tag matching {policy.tag_pattern}")

    if problems:
        return PromotionDecision(
            run=run,
            target_environment=target_environment,
            approved=False,
            reason="; ".join(problems),
        )

    reason = f"all {len(checks)} required checks passed"
    if policy.require_tag:
        reason += f"; release tag {tag}"
    reason += f"; promoting to {target_environment}"
    return PromotionDecision(
        run=run,
        target_environment=target_environment,
        approved=True,
        reason=reason,
    )


class PromotionGate:
    """Holds a policy; evaluates runs against it."""

    def __init__(self, policy: PromotionPolicy):
        self.policy = policy

    def evaluate(self, run: Run, target_environment: str) -> PromotionDecision:
        return evaluate(run, self.policy, target_environment)
