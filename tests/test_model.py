import pytest

from shipline.errors import InvalidTransition
from shipline.model import ArtifactRef, JobStatus, Run, RunStatus


def test_job_lifecycle_sets_timestamps():
    run = Run.create(ref="refs/heads/main")
    run.start(["build"])

    running = run.transition("build", JobStatus.RUNNING)
    assert running.started_at is not None and running.finished_at is None

    done = run.transition("build", JobStatus.SUCCEEDED, exit_code=0)
    assert done.finished_at >= done.started_at
    assert done.exit_code == 0


@pytest.mark.parametrize(
    "path",
    [
        [JobStatus.SUCCEEDED],
        [JobStatus.RUNNING, JobStatus.SKIPPED],
        [JobStatus.SKIPPED, JobStatus.RUNNING],
        [JobStatus.RUNNING, JobStatus.FAILED, JobStatus.SUCCEEDED],
    ],
)
def test_illegal_transitions(path):
    run = Run.create()
    run.start(["a"])

    with pytest.raises(InvalidTransition):
        for status in path:
            run.transition("a", status)


def test_finished_run_is_sealed():
    run = Run.create()
    run.start(["a"])
    run.transition("a", JobStatus.SKIPPED)
    run.finish(RunStatus.FAILED, "skipped: a")

    with pytest.raises(InvalidTransition):
        run.finish(RunStatus.SUCCEEDED, "again")
    with pytest.raises(InvalidTransition):
        run.start(["a"])


def test_run_dict_roundtrip_keeps_artifact_refs():
    run = Run.create(ref="v1.0.0", workflow="wf.py")
    run.start(["build"])
    run.transition("build", JobStatus.RUNNING)
    run.transition(
        "build",
        JobStatus.SUCCEEDED,
        outputs={"app.tar": ArtifactRef(key="ab" * 32, produced_by="build", name="app.tar")},
    )
    run.finish(RunStatus.SUCCEEDED, "all 1 jobs succeeded")

    restored = Run.from_dict(run.to_dict())

    assert restored.to_dict() == run.to_dict()
    assert restored.job_states["build"].outputs["app.tar"].key == "ab" * 32
