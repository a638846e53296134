from __future__ import annotations

import pytest
from hypothesis import given

from verifyflow.domain import JobSpec
from verifyflow.errors import GraphError
from verifyflow.graph import JobGraph

from .strategies import dag_specs


@pytest.mark.fuzz
@given(jobs=dag_specs())
def test_fuzz_waves_respect_dependencies(jobs: list[tuple[str, tuple[str, ...]]]) -> None:
    graph = JobGraph.from_specs(JobSpec(name=name, needs=needs) for name, needs in jobs)
    wave_of = {name: index for index, wave in enumerate(graph.waves()) for name in wave}

    assert sorted(wave_of) == sorted(name for name, _ in jobs)
    assert len(graph.order) == len(jobs)
    for name, needs in jobs:
        for dep in needs:
            assert wave_of[dep] < wave_of[name]


@pytest.mark.fuzz
@given(jobs=dag_specs(max_jobs=6))
def test_fuzz_back_edge_is_rejected(jobs: list[tuple[str, tuple[str, ...]]]) -> None:
    edges = [(name, dep) for name, needs in jobs for dep in needs]
    if not edges:
        return
    name, dep = edges[0]
    # adding dep -> name closes a cycle
    mutated = [
        (job, needs + (name,)) if job == dep else (job, needs) for job, needs in jobs
    ]
    with pytest.raises(GraphError):
        JobGraph.from_specs(JobSpec(name=job, needs=needs) for job, needs in mutated)
