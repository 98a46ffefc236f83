import pytest

from shipline.dag import build_graph
from shipline.dsl import job, sh, upload
from shipline.errors import CyclicDependency, DuplicateJob, UnknownDependency, WorkflowError


def _job(name, needs=(), **kw):
    return job(name, sh("noop", "true"), needs=list(needs), **kw)


def test_three_job_ring_is_rejected_with_the_cycle():
    with pytest.raises(CyclicDependency) as exc:
        build_graph([_job("a", ["c"]), _job("b", ["a"]), _job("c", ["b"])])

    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert str(exc.value).startswith("Dependency cycle: ")


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependency):
        build_graph([_job("a", ["a"])])


def test_missing_dependency_names_it():
    with pytest.raises(UnknownDependency) as exc:
        build_graph([_job("a"), _job("b", ["x"])])

    assert exc.value.job == "b"
    assert exc.value.missing == "x"


def test_duplicate_job_ids():
    with pytest.raises(DuplicateJob):
        build_graph([_job("a"), _job("a")])


def test_tolerates_must_be_a_need():
    with pytest.raises(UnknownDependency):
        build_graph([_job("a"), _job("b", tolerates=["a"])])


def test_order_respects_dependencies_and_declaration_order():
    graph = build_graph([
        _job("deploy", ["test", "lint"]),
        _job("lint", ["build"]),
        _job("test", ["build"]),
        _job("build"),
    ])

    order = list(graph.order)
    assert order[0] == "build"
    assert order[-1] == "deploy"
    # lint is declared before test
    assert order.index("lint") < order.index("test")
    assert graph.levels() == [["build"], ["lint", "test"], ["deploy"]]
    assert graph.dependents["build"] == frozenset({"lint", "test"})


def test_input_producer_must_declare_the_artifact():
    producer = job("build", sh("noop", "true"))
    consumer = job("test", sh("noop", "true"), inputs=["build/app.tar"])

    with pytest.raises(WorkflowError, match="does not declare"):
        build_graph([producer, consumer])


def test_input_wiring_accepts_upload_outputs():
    producer = job("build", sh("make", "true"), upload("dist/app.tar"))
    consumer = job("test", sh("noop", "true"), inputs=["build/app.tar"])

    graph = build_graph([producer, consumer])

    # consuming an artifact implies needing its producer
    assert graph.needs("test") == ("build",)


def test_input_from_unknown_job():
    consumer = job("test", sh("noop", "true"), inputs=["ghost/app.tar"])

    with pytest.raises(UnknownDependency):
        build_graph([consumer])


def test_long_chain_builds_without_hitting_the_recursion_limit():
    names = [f"j{i}" for i in range(5000)]
    jobs = [_job(names[0])] + [_job(n, [prev]) for prev, n in zip(names, names[1:])]

    graph = build_graph(jobs)

    assert graph.order == tuple(names)


def test_cycle_at_the_end_of_a_long_chain_is_found():
    names = [f"j{i}" for i in range(5000)]
    jobs = [_job(names[0], [names[-1]])] + [_job(n, [prev]) for prev, n in zip(names, names[1:])]

    with pytest.raises(CyclicDependency) as exc:
        build_graph(jobs)

    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert len(cycle) == 5001
