from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from verifyflow.domain import JobRun, JobSpec, JobState, PipelineRun
from verifyflow.errors import GraphError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JobGraph:
    """Validated, acyclic job graph.

    Construction through :meth:`from_specs` rejects unknown dependencies,
    cycles, and artifact consumers that do not depend on a producer.
    """

    specs: Mapping[str, JobSpec]
    order: tuple[str, ...]
    layers: tuple[tuple[str, ...], ...] = field(default=())

    @classmethod
    def from_specs(cls, specs: Iterable[JobSpec]) -> "JobGraph":
        by_name: dict[str, JobSpec] = {}
        for spec in specs:
            if spec.name in by_name:
                raise GraphError(f"duplicate job '{spec.name}'")
            by_name[spec.name] = spec

        for spec in by_name.values():
            for dep in spec.needs:
                if dep not in by_name:
                    raise GraphError(f"job '{spec.name}' needs unknown job '{dep}'")
                if dep == spec.name:
                    raise GraphError(f"job '{spec.name}' depends on itself")

        layers = _kahn_layers(by_name)
        order = tuple(name for layer in layers for name in layer)
        graph = cls(specs=by_name, order=order, layers=layers)
        graph._validate_artifact_links()
        LOGGER.debug("job graph validated: %d jobs in %d waves", len(order), len(layers))
        return graph

    def waves(self) -> tuple[tuple[str, ...], ...]:
        return self.layers

    def ancestors(self, name: str) -> frozenset[str]:
        seen: set[str] = set()
        stack = list(self.specs[name].needs)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.specs[current].needs)
        return frozenset(seen)

    def _validate_artifact_links(self) -> None:
        producers: dict[str, set[str]] = {}
        for spec in self.specs.values():
            for artifact in spec.published_names():
                producers.setdefault(artifact, set()).add(spec.name)

        for spec in self.specs.values():
            if not spec.consumes:
                continue
            upstream = self.ancestors(spec.name)
            for artifact in spec.consumes:
                owners = producers.get(artifact)
                if not owners:
                    raise GraphError(
                        f"job '{spec.name}' consumes '{artifact}' but no job publishes it"
                    )
                if not owners & upstream:
                    raise GraphError(
                        f"job '{spec.name}' consumes '{artifact}' without depending on "
                        f"its producer ({', '.join(sorted(owners))})"
                    )

    def blocking_dependency(self, run: PipelineRun, name: str) -> JobRun | None:
        """Return the first dependency run that prevents ``name`` from starting.

        A dependency blocks when it is Failed or Skipped. Every dependency run
        must already be terminal; a non-terminal one indicates a scheduling bug.
        """
        for dep in self.specs[name].needs:
            dep_runs = run.runs_for(dep)
            for dep_run in dep_runs:
                if not dep_run.terminal:
                    raise GraphError(
                        f"job '{name}' scheduled before dependency run '{dep_run.id}' finished"
                    )
                if dep_run.state is not JobState.SUCCEEDED:
                    return dep_run
        return None

    def is_ready(self, run: PipelineRun, name: str) -> bool:
        return self.blocking_dependency(run, name) is None


def _kahn_layers(specs: Mapping[str, JobSpec]) -> tuple[tuple[str, ...], ...]:
    indegree = {name: len(set(spec.needs)) for name, spec in specs.items()}
    dependents: dict[str, list[str]] = {name: [] for name in specs}
    for name, spec in specs.items():
        for dep in set(spec.needs):
            dependents[dep].append(name)

    declared = {name: index for index, name in enumerate(specs)}
    current = sorted((name for name, deg in indegree.items() if deg == 0), key=declared.__getitem__)
    layers: list[tuple[str, ...]] = []
    visited = 0
    while current:
        layers.append(tuple(current))
        visited += len(current)
        following: list[str] = []
        for name in current:
            for child in dependents[name]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    following.append(child)
        current = sorted(following, key=declared.__getitem__)

    if visited != len(specs):
        stuck = sorted(name for name, deg in indegree.items() if deg > 0)
        raise GraphError(f"job graph contains a cycle through: {', '.join(stuck)}")
    return tuple(layers)
