from __future__ import annotations

import pytest

from verifyflow.config.models import PublishConfig
from verifyflow.domain import JobRun, JobSpec, JobState, MatrixEntry, PipelineRun
from verifyflow.errors import GraphError
from verifyflow.graph import JobGraph


def _spec(name: str, *needs: str, **kwargs) -> JobSpec:
    return JobSpec(name=name, needs=tuple(needs), **kwargs)


def test_waves_group_independent_jobs() -> None:
    graph = JobGraph.from_specs(
        [
            _spec("source-archive"),
            _spec("build-linux", "source-archive"),
            _spec("build-windows", "source-archive"),
            _spec("check-format"),
            _spec("report", "build-linux", "build-windows"),
        ]
    )
    assert graph.waves() == (
        ("source-archive", "check-format"),
        ("build-linux", "build-windows"),
        ("report",),
    )
    assert graph.order[0] == "source-archive"
    assert graph.ancestors("report") == frozenset(
        {"build-linux", "build-windows", "source-archive"}
    )


def test_cycle_is_rejected() -> None:
    with pytest.raises(GraphError, match="cycle through: a, b, c"):
        JobGraph.from_specs([_spec("a", "c"), _spec("b", "a"), _spec("c", "b"), _spec("d")])


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(GraphError, match="unknown job 'missing'"):
        JobGraph.from_specs([_spec("a", "missing")])


def test_self_dependency_is_rejected() -> None:
    with pytest.raises(GraphError, match="depends on itself"):
        JobGraph.from_specs([_spec("a", "a")])


def test_duplicate_job_is_rejected() -> None:
    with pytest.raises(GraphError, match="duplicate job"):
        JobGraph.from_specs([_spec("a"), _spec("a")])


def test_consumer_must_depend_on_producer() -> None:
    producer = _spec("source-archive", publish=(PublishConfig(name="archive-src", path="*.tar.gz"),))
    orphan = _spec("build", consumes=("archive-src",))
    with pytest.raises(GraphError, match="without depending on its producer"):
        JobGraph.from_specs([producer, orphan])


def test_consumer_of_unpublished_artifact_is_rejected() -> None:
    with pytest.raises(GraphError, match="no job publishes it"):
        JobGraph.from_specs([_spec("a"), _spec("b", "a", consumes=("nothing",))])


def test_transitive_producer_is_accepted() -> None:
    graph = JobGraph.from_specs(
        [
            _spec("source", publish=(PublishConfig(name="archive-src", path="*.tar.gz"),)),
            _spec("build", "source"),
            _spec("test", "build", consumes=("archive-src",)),
        ]
    )
    assert graph.waves()[-1] == ("test",)


def test_matrix_templates_expand_in_published_names() -> None:
    spec = _spec(
        "build-and-test",
        matrix=(MatrixEntry("debian", "bullseye"), MatrixEntry("freebsd", "13")),
        results_artifact="test-results-{os}-{ver}",
    )
    assert spec.published_names() == (
        "test-results-debian-bullseye",
        "test-results-freebsd-13",
    )


def test_blocking_dependency_considers_every_matrix_run() -> None:
    graph = JobGraph.from_specs([_spec("build"), _spec("package", "build")])
    run = PipelineRun(ref="refs/heads/main", commit="abc")
    first = run.add(JobRun(id="build[a-1]", job="build"))
    second = run.add(JobRun(id="build[b-2]", job="build"))
    run.add(JobRun(id="package", job="package"))

    first.start()
    first.succeed()
    second.start()
    second.fail("CommandFailure", "boom")

    blocker = graph.blocking_dependency(run, "package")
    assert blocker is second
    assert not graph.is_ready(run, "package")


def test_blocking_dependency_requires_terminal_dependencies() -> None:
    graph = JobGraph.from_specs([_spec("build"), _spec("package", "build")])
    run = PipelineRun(ref="main", commit="")
    run.add(JobRun(id="build", job="build"))
    with pytest.raises(GraphError, match="before dependency run"):
        graph.blocking_dependency(run, "package")


def test_skipped_dependency_blocks() -> None:
    graph = JobGraph.from_specs([_spec("build"), _spec("package", "build")])
    run = PipelineRun(ref="main", commit="")
    run.add(JobRun(id="build", job="build")).skip("gated")
    blocker = graph.blocking_dependency(run, "package")
    assert blocker is not None
    assert blocker.state is JobState.SKIPPED
