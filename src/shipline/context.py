# context.py
from __future__ import annotations

import asyncio
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

from .artifacts import ArtifactStore
from .errors import JobCancelled, TransientStoreError
from .model import ArtifactRef, JobDefinition, Run
from .ui.console import get_console

T = TypeVar("T")


class CancelToken:
    """
    Cooperative cancellation flag shared by the executor and every job.

    `cancel()` may be called from any thread (signal handler, queue watcher).
    Jobs check it before each retry attempt and between steps; the executor
    waits on it alongside running jobs.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancel requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self, poll_interval: float = 0.05) -> None:
        while not self._event.is_set():
            await asyncio.sleep(poll_interval)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient artifact store errors."""
    retries: int = 3
    backoff: float = 0.5
    max_backoff: float = 30.0

    def delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** attempt), self.max_backoff)


def input_env_name(name: str) -> str:
    return "SHIPLINE_INPUT_" + re.sub(r"[^A-Za-z0-9]", "_", name).upper()


@dataclass
class JobContext:
    """Everything a step handler may touch while its job runs."""
    job: JobDefinition
    run: Run
    repo_root: Path
    inputs_dir: Path
    store: ArtifactStore
    cancel: CancelToken
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    deploy_target: Any = None
    inputs: Dict[str, ArtifactRef] = field(default_factory=dict)
    input_paths: Dict[str, Path] = field(default_factory=dict)
    outputs: Dict[str, ArtifactRef] = field(default_factory=dict)
    exit_code: Optional[int] = None
    log: str = ""

    def check_cancelled(self) -> None:
        if self.cancel.cancelled:
            raise JobCancelled(job=self.job.id, reason="Cancelled")

    def environ(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update({
            "SHIPLINE_RUN_ID": self.run.run_id,
            "SHIPLINE_JOB_ID": self.job.id,
            "SHIPLINE_REF": self.run.ref or "",
            "SHIPLINE_INPUTS_DIR": str(self.inputs_dir),
        })
        for name, path in self.input_paths.items():
            env[input_env_name(name)] = str(path)
        env.update(self.job.env or {})
        return env

    async def store_call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run a blocking store operation in a thread, retrying transient
        failures with exponential backoff. Cancellation is checked before
        every attempt.
        """
        attempt = 0
        while True:
            self.check_cancelled()
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except TransientStoreError as e:
                if attempt >= self.retry.retries:
                    raise TransientStoreError(
                        f"{e} (gave up after {self.retry.retries} retries)"
                    ) from e
                delay = self.retry.delay(attempt)
                attempt += 1
                get_console().print_retry(self.job.id, attempt, self.retry.retries, delay, str(e))
                await asyncio.sleep(delay)
