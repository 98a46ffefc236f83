"""Console output formatting utilities for shipline."""

from __future__ import annotations

import sys
from typing import List, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-job progress lines
        """
        self.debug = debug
        self.quiet = quiet

    def print_run_started(
        self,
        run_id: str,
        workflow: str,
        job_count: int,
        ref: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Run ID: {run_id}")
        print(f"Workflow: {workflow}")
        if ref:
            print(f"Ref: {ref}")
        print(f"Jobs: {job_count}")
        print()

    def on_transition(self, run, job_id: str, state) -> None:
        """Executor listener: print one line per job state change."""
        if self.quiet:
            return
        status = state.status.value
        if status == "running":
            print(f"JOB STARTED: {job_id}")
        elif status == "succeeded":
            print(f"JOB SUCCEEDED: {job_id}")
        elif status == "failed":
            self.print_failure(job_id, state.reason, exit_code=state.exit_code, is_job=True)
            if self.debug and state.log:
                print(state.log)
        elif status == "skipped":
            print(f"JOB SKIPPED: {job_id} ({state.reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_retry(self, job: str, attempt: int, retries: int, delay: float, reason: str) -> None:
        """Print a transient-error retry notice."""
        print(f"[{job}] store unavailable, retry {attempt}/{retries} in {delay:.1f}s: {reason}")

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the stage layout of a job graph."""
        for idx, level in enumerate(levels):
            print(f"=== Stage {idx + 1}: {level} ===")

    def print_results(self, run) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job, state in run.job_states.items():
            line = f"  {job}: {state.status.value.upper()}"
            if state.reason and state.status.value != "succeeded":
                line += f" ({state.reason.splitlines()[0]})"
            print(line)
        print(f"\nRUN {run.status.value.upper()}: {run.reason}")
        print(f"Run ID: {run.run_id}")

    def print_run(self, run) -> None:
        """Print a stored run record."""
        print(f"Run ID: {run.run_id}")
        print(f"Status: {run.status.value}")
        if run.ref:
            print(f"Ref: {run.ref}")
        if run.workflow:
            print(f"Workflow: {run.workflow}")
        if run.reason:
            print(f"Reason: {run.reason}")
        for job, state in run.job_states.items():
            print(f"  {job}: {state.status.value}")
            for name, ref in state.outputs.items():
                print(f"    -> {name} {ref.key[:12]}...")

    def print_decision(self, decision) -> None:
        """Print a promotion decision."""
        verdict = "APPROVED" if decision.approved else "DENIED"
        print(f"\nPROMOTION {verdict}: {decision.run.run_id} -> {decision.target_environment}")
        print(f"Reason: {decision.reason}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_agent_started(self, queue: str, poll_interval: int) -> None:
        """Print agent start information."""
        print("\nAGENT STARTED")
        print(f"Queue: {queue}")
        print(f"Polling every: {poll_interval}s")
        print()

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
