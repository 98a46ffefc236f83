import os
import signal
import threading

import pytest

from shipline.artifacts import ArtifactStore, content_key
from shipline.context import CancelToken, RetryPolicy
from shipline.dsl import deploy, job, sh, upload, use
from shipline.errors import ArtifactNotFound, CyclicDependency, TransientStoreError
from shipline.gate import PromotionPolicy, evaluate
from shipline.model import JobStatus, RunStatus
from shipline.runner import run_dag


class RecordingTarget:
    def __init__(self, accept=True):
        self.accept = accept
        self.deployed = []

    def deploy(self, environment, artifacts):
        self.deployed.append((environment, dict(artifacts)))
        return self.accept


class FlakyStore(ArtifactStore):
    """put_file fails with a transient error `failures` times before working."""

    def __init__(self, root, failures):
        super().__init__(root)
        self.failures = failures
        self.calls = 0

    def put_file(self, path, **kw):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientStoreError("store unreachable")
        return super().put_file(path, **kw)


class EvictingStore(ArtifactStore):
    """Objects vanish between publish and read."""

    def get(self, ref):
        key = ref.key if hasattr(ref, "key") else ref
        raise ArtifactNotFound(key, detail="evicted")


def _run(jobs, ws, **kw):
    kw.setdefault("retry", RetryPolicy(retries=3, backoff=0.01))
    return run_dag(
        jobs,
        repo_root=ws["repo_root"],
        store_root=kw.pop("store_root", ws["store_root"]),
        work_root=ws["work_root"],
        **kw,
    )


def test_build_test_deploy_hands_the_same_artifact_downstream(workspace):
    target = RecordingTarget()
    jobs = [
        job("build", sh("Bundle", "printf 'app-v1' > app.tar"), upload("app.tar")),
        job(
            "test",
            sh("Check bundle", 'test "$(cat "$SHIPLINE_INPUT_APP_TAR")" = app-v1'),
            inputs=["build/app.tar"],
        ),
        job("deploy", deploy("staging"), needs=["test"], inputs=["build/app.tar"]),
    ]

    run = _run(jobs, workspace, deploy_target=target)

    key = content_key(b"app-v1")
    assert run.status is RunStatus.SUCCEEDED
    assert run.job_states["build"].outputs["app.tar"].key == key
    assert run.job_states["test"].inputs["app.tar"].key == key
    assert run.job_states["deploy"].inputs["app.tar"].key == key
    assert target.deployed == [("staging", {"app.tar": b"app-v1"})]

    decision = evaluate(run, PromotionPolicy(required_checks=frozenset({"test"})), "staging")
    assert decision.approved


def test_failed_dependency_skips_dependent(workspace):
    jobs = [
        job("a", sh("boom", "exit 1")),
        job("c", sh("ok", "true")),
        job("b", sh("never", "touch ran-b"), needs=["a", "c"]),
    ]

    run = _run(jobs, workspace)

    assert run.status is RunStatus.FAILED
    assert run.job_states["a"].status is JobStatus.FAILED
    assert run.job_states["a"].exit_code == 1
    assert run.job_states["c"].status is JobStatus.SUCCEEDED
    assert run.job_states["b"].status is JobStatus.SKIPPED
    assert run.job_states["b"].reason == "dependency 'a' failed"
    assert not (workspace["repo_root"] / "ran-b").exists()
    assert "failed: a" in run.reason and "skipped: b" in run.reason


def test_skips_cascade_down_the_chain(workspace):
    jobs = [
        job("a", sh("boom", "exit 2")),
        job("b", sh("ok", "true"), needs=["a"]),
        job("c", sh("ok", "true"), needs=["b"]),
    ]

    run = _run(jobs, workspace)

    assert run.job_states["b"].status is JobStatus.SKIPPED
    assert run.job_states["c"].status is JobStatus.SKIPPED
    assert run.job_states["c"].reason == "dependency 'b' skipped"


def test_concurrency_never_exceeds_max_workers(workspace):
    peak = []

    def count_running(run, job_id, state):
        peak.append(sum(1 for s in run.job_states.values() if s.status is JobStatus.RUNNING))

    jobs = [job(f"j{i}", sh("nap", "sleep 0.2")) for i in range(5)]

    run = _run(jobs, workspace, max_workers=2, listeners=[count_running])

    assert run.status is RunStatus.SUCCEEDED
    assert max(peak) == 2


def test_dependent_starts_after_dependency_finishes(workspace):
    jobs = [
        job("a", sh("nap", "sleep 0.1")),
        job("b", sh("ok", "true"), needs=["a"]),
    ]

    run = _run(jobs, workspace)

    assert run.job_states["b"].started_at >= run.job_states["a"].finished_at


def test_single_worker_runs_ready_jobs_in_declaration_order(workspace):
    started = []

    def record(run, job_id, state):
        if state.status is JobStatus.RUNNING:
            started.append(job_id)

    jobs = [job(name, sh("ok", "true")) for name in ("c", "a", "b")]

    _run(jobs, workspace, max_workers=1, listeners=[record])

    assert started == ["c", "a", "b"]


def test_timeout_fails_the_job(workspace):
    jobs = [job("slow", sh("hang", "sleep 5"), timeout=0.3)]

    run = _run(jobs, workspace)

    assert run.job_states["slow"].status is JobStatus.FAILED
    assert run.job_states["slow"].reason == "Timeout"
    assert run.status is RunStatus.FAILED


def test_continue_on_error_is_tolerated_only_where_declared(workspace):
    jobs = [
        job("lint", sh("lint", "exit 3"), continue_on_error=True),
        job("deploy", sh("ok", "true"), needs=["lint"], tolerates=["lint"]),
    ]

    run = _run(jobs, workspace)

    assert run.job_states["lint"].status is JobStatus.FAILED
    assert run.job_states["deploy"].status is JobStatus.SUCCEEDED
    assert run.status is RunStatus.SUCCEEDED
    assert "tolerated" in run.reason


def test_continue_on_error_without_tolerates_still_skips(workspace):
    jobs = [
        job("lint", sh("lint", "exit 3"), continue_on_error=True),
        job("deploy", sh("ok", "true"), needs=["lint"]),
    ]

    run = _run(jobs, workspace)

    assert run.job_states["deploy"].status is JobStatus.SKIPPED
    assert run.status is RunStatus.SUCCEEDED
    assert "tolerated failure(s): lint" in run.reason
    assert "skipped: deploy" in run.reason


def test_untolerated_failure_fails_run_next_to_tolerated_one(workspace):
    jobs = [
        job("lint", sh("lint", "exit 3"), continue_on_error=True),
        job("unit", sh("unit", "exit 1")),
    ]

    run = _run(jobs, workspace)

    assert run.status is RunStatus.FAILED
    assert run.reason == "failed: unit"


def test_transient_store_errors_are_retried(workspace):
    store = FlakyStore(workspace["store_root"], failures=2)
    jobs = [job("build", sh("make", "printf x > out.bin"), upload("out.bin"))]

    run = _run(jobs, workspace, store=store)

    assert run.status is RunStatus.SUCCEEDED
    assert store.calls == 3


def test_retries_exhausted_fails_the_job(workspace):
    store = FlakyStore(workspace["store_root"], failures=100)
    jobs = [job("build", sh("make", "printf x > out.bin"), upload("out.bin"))]

    run = _run(jobs, workspace, store=store, retry=RetryPolicy(retries=2, backoff=0.01))

    state = run.job_states["build"]
    assert state.status is JobStatus.FAILED
    assert "gave up after 2 retries" in state.reason
    assert store.calls == 3


def test_missing_upload_file_fails_the_job(workspace):
    jobs = [job("build", sh("noop", "true"), upload("missing.bin"))]

    run = _run(jobs, workspace)

    assert run.job_states["build"].status is JobStatus.FAILED
    assert "output file missing" in run.job_states["build"].reason


def test_cancel_terminates_running_and_skips_queued(workspace):
    cancel = CancelToken()
    jobs = [
        job("slow", sh("hang", "sleep 5")),
        job("after", sh("ok", "true"), needs=["slow"]),
    ]
    timer = threading.Timer(0.3, cancel.cancel, args=("stop requested",))
    timer.start()
    try:
        run = _run(jobs, workspace, cancel=cancel)
    finally:
        timer.cancel()

    assert run.job_states["slow"].status is JobStatus.FAILED
    assert run.job_states["slow"].reason == "Cancelled"
    assert run.job_states["after"].status is JobStatus.SKIPPED
    assert run.job_states["after"].reason == "Cancelled"
    assert run.status is RunStatus.FAILED
    assert run.reason == "cancelled: stop requested"


def test_cancel_before_start_skips_everything(workspace):
    cancel = CancelToken()
    cancel.cancel("not today")

    run = _run([job("a", sh("ok", "true"))], workspace, cancel=cancel)

    assert run.job_states["a"].status is JobStatus.SKIPPED
    assert run.status is RunStatus.FAILED


def test_stop_on_failure_skips_remaining_jobs(workspace):
    jobs = [
        job("a", sh("boom", "exit 1")),
        job("b", sh("ok", "true")),
    ]

    run = _run(jobs, workspace, max_workers=1, stop_on_failure=True)

    assert run.job_states["b"].status is JobStatus.SKIPPED
    assert run.job_states["b"].reason == "run stopped after failure"


def test_rejected_deploy_fails_the_job(workspace):
    jobs = [
        job("build", sh("make", "printf x > out.bin"), upload("out.bin")),
        job("ship", deploy("prod"), inputs=["build/out.bin"]),
    ]

    run = _run(jobs, workspace, deploy_target=RecordingTarget(accept=False))

    assert run.job_states["ship"].status is JobStatus.FAILED
    assert "rejected" in run.job_states["ship"].reason


def test_graph_errors_raise_before_any_job_runs(workspace):
    jobs = [
        job("a", sh("mark", "touch ran-a"), needs=["b"]),
        job("b", sh("mark", "touch ran-b"), needs=["a"]),
    ]

    with pytest.raises(CyclicDependency):
        _run(jobs, workspace)

    assert not (workspace["repo_root"] / "ran-a").exists()
    assert not (workspace["repo_root"] / "ran-b").exists()


def test_job_env_reaches_the_shell(workspace):
    jobs = [
        job(
            "build",
            sh("write", 'printf "%s" "$GREETING" > out.txt'),
            upload("out.txt"),
            env={"GREETING": "hi"},
        )
    ]

    run = _run(jobs, workspace)

    ref = run.job_states["build"].outputs["out.txt"]
    assert ArtifactStore(workspace["store_root"]).get(ref) == b"hi"


def test_empty_store_passed_in_is_the_one_used(workspace):
    store = FlakyStore(workspace["store_root"] / "mine", failures=0)
    assert len(store) == 0
    jobs = [job("build", sh("make", "printf x > out.bin"), upload("out.bin"))]

    run = _run(jobs, workspace, store=store, store_root=workspace["store_root"] / "other")

    assert run.status is RunStatus.SUCCEEDED
    assert store.calls == 1
    assert store.get(run.job_states["build"].outputs["out.bin"]) == b"x"
    assert not (workspace["store_root"] / "other").exists()


def test_optional_input_missing_from_store_is_skipped(workspace):
    store = EvictingStore(workspace["store_root"])
    jobs = [
        job("build", sh("make", "printf x > out.bin"), upload("out.bin")),
        job(
            "test",
            sh("no input", 'test -z "$SHIPLINE_INPUT_OUT_BIN"'),
            inputs=[use("build/out.bin", optional=True)],
        ),
    ]

    run = _run(jobs, workspace, store=store)

    assert run.job_states["test"].status is JobStatus.SUCCEEDED
    assert run.job_states["test"].inputs == {}
    assert run.status is RunStatus.SUCCEEDED


def test_required_input_missing_from_store_fails_the_job(workspace):
    store = EvictingStore(workspace["store_root"])
    jobs = [
        job("build", sh("make", "printf x > out.bin"), upload("out.bin")),
        job("test", sh("ok", "true"), inputs=["build/out.bin"]),
    ]

    run = _run(jobs, workspace, store=store)

    state = run.job_states["test"]
    assert state.status is JobStatus.FAILED
    assert "Artifact not found" in state.reason and "evicted" in state.reason
    assert run.status is RunStatus.FAILED


def test_interrupt_signal_cancels_and_finalizes_the_run(workspace):
    jobs = [
        job("slow", sh("hang", "sleep 5")),
        job("after", sh("ok", "true"), needs=["slow"]),
    ]
    timer = threading.Timer(0.3, os.kill, args=(os.getpid(), signal.SIGUSR1))
    timer.start()
    try:
        run = _run(jobs, workspace, interrupt_signals=(signal.SIGUSR1,))
    finally:
        timer.cancel()

    assert run.finished
    assert run.job_states["slow"].reason == "Cancelled"
    assert run.job_states["after"].status is JobStatus.SKIPPED
    assert run.reason == "cancelled: interrupted by user"
