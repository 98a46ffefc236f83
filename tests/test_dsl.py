import pytest

from shipline.dsl import deploy, job, matrix, sh, upload, use, wf
from shipline.model import ArtifactInput, ShellStep


def test_use_parses_producer_and_artifact():
    inp = use("build/app.tar", dest="bundle.tar")

    assert inp == ArtifactInput(producer="build", artifact="app.tar", dest="bundle.tar")
    assert inp.target_name == "bundle.tar"


def test_use_rejects_bad_spec():
    with pytest.raises(ValueError):
        use("app.tar")


def test_job_defaults_cwd_and_adds_producer_to_needs():
    j = job(
        "test",
        sh("Unit", "pytest -q"),
        sh("Docs", "make docs", cwd="docs"),
        needs=["lint"],
        inputs=["build/app.tar"],
        cwd="app",
    )

    assert [s.cwd for s in j.steps if isinstance(s, ShellStep)] == ["app", "docs"]
    assert j.needs == ("lint", "build")


def test_job_requires_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_upload_and_deploy_names():
    up = upload("dist/site.tar")
    dep = deploy("staging", "site.tar")

    assert up.artifact == "site.tar"
    assert up.name == "Upload site.tar"
    assert dep.artifacts == ("site.tar",)


def test_matrix_expands_inline_in_wf():
    jobs = wf(
        job("build", sh("Build", "make")),
        matrix("py", ["3.11", "3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh("Test", f"tox -e py{v}"), needs=["build"], env={"PY": v})
        ),
    )

    assert [j.id for j in jobs] == ["build", "test-py3.11", "test-py3.12"]
    assert jobs[2].env == {"PY": "3.12"}
