import textwrap

import pytest

from shipline.errors import WorkflowError
from shipline.loader import load_policy, load_workflow
from shipline.model import DeployStep, ShellStep, UploadStep


def _write(path, text):
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def test_yaml_workflow(tmp_path):
    wf = _write(tmp_path / "shipline.yaml", """
        jobs:
          build:
            timeout: 30
            env: {LEVEL: 3}
            steps:
              - name: Make
                run: make dist
              - upload: dist/app.tar
          ship:
            needs: [build]
            continue_on_error: true
            inputs:
              - from: build
                artifact: app.tar
                dest: app.tar
            steps:
              - deploy: staging
                artifacts: [app.tar]
    """)

    build, ship = load_workflow(wf)

    assert build.id == "build"
    assert build.timeout == 30.0
    assert build.env == {"LEVEL": "3"}
    assert isinstance(build.steps[0], ShellStep) and build.steps[0].run == "make dist"
    assert isinstance(build.steps[1], UploadStep) and build.steps[1].artifact == "app.tar"
    assert build.declared_outputs() == ("app.tar",)

    assert ship.needs == ("build",)
    assert ship.continue_on_error
    assert ship.inputs[0].producer == "build"
    assert isinstance(ship.steps[0], DeployStep) and ship.steps[0].artifacts == ("app.tar",)


def test_python_workflow(tmp_path):
    wf = _write(tmp_path / "demo_workflow.py", """
        from shipline.dsl import wf, job, sh

        def workflow():
            return wf(
                job("lint", sh("Lint", "true")),
                job("test", sh("Test", "true"), needs=["lint"]),
            )
    """)

    jobs = load_workflow(wf)

    assert [j.id for j in jobs] == ["lint", "test"]


def test_python_workflow_with_jobs_list(tmp_path):
    wf = _write(tmp_path / "jobs_workflow.py", """
        from shipline.dsl import job, sh

        JOBS = [job("only", sh("Run", "true"))]
    """)

    assert [j.id for j in load_workflow(wf)] == ["only"]


def test_step_needs_exactly_one_kind(tmp_path):
    wf = _write(tmp_path / "bad.yaml", """
        jobs:
          build:
            steps:
              - run: make
                upload: dist/app.tar
    """)

    with pytest.raises(WorkflowError, match="exactly one"):
        load_workflow(wf)


def test_missing_jobs_section(tmp_path):
    wf = _write(tmp_path / "empty.yaml", "name: nothing\n")

    with pytest.raises(WorkflowError):
        load_workflow(wf)


def test_load_policy_section(tmp_path):
    policy_file = _write(tmp_path / "policy.yaml", """
        promotion:
          require_tag: true
          environments: [staging, production]
          required_checks: [test]
    """)

    policy = load_policy(policy_file)

    assert policy.require_tag
    assert policy.required_environments == ("staging", "production")
    assert policy.required_checks == frozenset({"test"})


def test_load_policy_defaults_without_file():
    policy = load_policy(None)

    assert not policy.require_tag
    assert policy.required_environments == ()
