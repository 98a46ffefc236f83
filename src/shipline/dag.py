# dag.py
from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Iterator, List, Set, Tuple

from .errors import CyclicDependency, DuplicateJob, UnknownDependency, WorkflowError
from .model import JobDefinition


@dataclass(frozen=True)
class Graph:
    """
    Validated job graph.

    jobs:       id -> JobDefinition
    dependents: id -> ids of jobs that need it
    order:      deterministic topological order (scheduling tie-break)
    """
    jobs: Dict[str, JobDefinition]
    dependents: Dict[str, FrozenSet[str]]
    order: Tuple[str, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "_index", {name: i for i, name in enumerate(self.order)})

    def __len__(self) -> int:
        return len(self.order)

    def index(self, job_id: str) -> int:
        return self._index[job_id]  # type: ignore[attr-defined]

    def needs(self, job_id: str) -> Tuple[str, ...]:
        return self.jobs[job_id].needs

    def levels(self) -> List[List[str]]:
        """
        Group jobs into topological "levels" (stages).
        Every job in a level only needs jobs from earlier levels.
        """
        depth: Dict[str, int] = {}
        for name in self.order:
            deps = self.jobs[name].needs
            depth[name] = 1 + max((depth[d] for d in deps), default=-1)

        levels: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for name in self.order:
            levels[depth[name]].append(name)
        return levels


def _find_cycle(jobs: Dict[str, JobDefinition]) -> List[str] | None:
    """
    Depth-first traversal over `needs` edges with an on-stack set, driven by
    an explicit stack so long chains do not hit the recursion limit.
    Returns the first cycle found as [a, b, ..., a], or None.
    """
    visited: Set[str] = set()
    on_stack: Set[str] = set()
    path: List[str] = []

    for root in jobs:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        path.append(root)
        stack: List[Iterator[str]] = [iter(jobs[root].needs)]
        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                stack.pop()
                on_stack.discard(path.pop())
            elif dep in on_stack:
                return path[path.index(dep):] + [dep]
            elif dep not in visited:
                visited.add(dep)
                on_stack.add(dep)
                path.append(dep)
                stack.append(iter(jobs[dep].needs))
    return None


def _check_artifact_wiring(jobs: Dict[str, JobDefinition]) -> None:
    for job in jobs.values():
        for inp in job.inputs:
            if inp.producer not in jobs:
                raise UnknownDependency(job=job.id, missing=inp.producer, known=list(jobs))
            if inp.producer not in job.needs:
                raise WorkflowError(
                    f"Job '{job.id}' consumes '{inp.producer}/{inp.artifact}' "
                    f"but does not need '{inp.producer}'"
                )
            if inp.artifact not in jobs[inp.producer].declared_outputs():
                raise WorkflowError(
                    f"Job '{job.id}' consumes '{inp.artifact}' which job "
                    f"'{inp.producer}' does not declare as an output"
                )


def build_graph(jobs: Iterable[JobDefinition]) -> Graph:
    """
    Build and validate the dependency graph.

    Raises DuplicateJob, UnknownDependency, CyclicDependency or WorkflowError;
    all of them before anything is executed.
    """
    by_id: Dict[str, JobDefinition] = {}
    for job in jobs:
        if job.id in by_id:
            raise DuplicateJob(job.id)
        by_id[job.id] = job

    dependents: Dict[str, Set[str]] = {name: set() for name in by_id}
    indeg: Dict[str, int] = {name: 0 for name in by_id}

    for job in by_id.values():
        for dep in job.needs:
            if dep not in by_id:
                raise UnknownDependency(job=job.id, missing=dep, known=list(by_id))
            # Edge dep -> job (dep must run before job)
            if job.id not in dependents[dep]:
                dependents[dep].add(job.id)
                indeg[job.id] += 1
        for tolerated in job.tolerates:
            if tolerated not in job.needs:
                raise UnknownDependency(job=job.id, missing=tolerated, known=list(job.needs))

    cycle = _find_cycle(by_id)
    if cycle:
        raise CyclicDependency(cycle)

    _check_artifact_wiring(by_id)

    # Kahn's algorithm; ties broken by declaration order
    declared = {name: i for i, name in enumerate(by_id)}
    heap = [(declared[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(heap)
    order: List[str] = []
    while heap:
        _, node = heapq.heappop(heap)
        order.append(node)
        for child in dependents[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(heap, (declared[child], child))

    return Graph(
        jobs=by_id,
        dependents={n: frozenset(d) for n, d in dependents.items()},
        order=tuple(order),
    )
