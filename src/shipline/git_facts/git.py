# git.py
# Small wrapper around the Git CLI, used to discover the ref that triggered a
# local run. The orchestrator itself never needs git; this only fills in
# `Run.ref` when the caller did not pass one.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout without surrounding whitespace.

    Raises subprocess.CalledProcessError when git exits non-zero and
    FileNotFoundError when git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def exact_tag(cwd: Optional[str] = None) -> Optional[str]:
    """The tag pointing exactly at HEAD, if any."""
    try:
        return _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd) or None
    except subprocess.CalledProcessError:
        return None


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Fully qualified ref for HEAD:
      refs/tags/<tag>   when HEAD is exactly tagged
      refs/heads/<br>   when on a branch
      <sha>             when detached
    """
    tag = exact_tag(cwd)
    if tag:
        return f"refs/tags/{tag}"
    branch = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if branch and branch != "HEAD":
        return f"refs/heads/{branch}"
    return head_sha(cwd)


def discover_ref(cwd: Optional[str] = None) -> Optional[str]:
    """current_ref(), or None outside a git checkout."""
    try:
        return current_ref(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
