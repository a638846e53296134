from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from verifyflow.config.models import (
    JobConfig,
    MatrixEntryConfig,
    PublishConfig,
    StepConfig,
    TargetKindName,
    matrix_label,
)
from verifyflow.gating import GatingRule, rule_for


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({JobState.SKIPPED, JobState.SUCCEEDED, JobState.FAILED})

_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.RUNNING, JobState.SKIPPED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED}),
    JobState.SKIPPED: frozenset(),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
}


class Outcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class MatrixEntry:
    os: str
    ver: str
    extra: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_config(cls, entry: MatrixEntryConfig) -> "MatrixEntry":
        return cls(os=entry.os, ver=entry.ver, extra=tuple(sorted(entry.extra.items())))

    @property
    def label(self) -> str:
        return matrix_label(self.os, self.ver)

    @property
    def os_family(self) -> str:
        return self.os.split("/", 1)[0]

    def values(self) -> dict[str, str]:
        payload = dict(self.extra)
        payload["os"] = self.os
        payload["ver"] = self.ver
        return payload

    def format(self, template: str) -> str:
        return template.format_map(self.values())

    def env(self) -> dict[str, str]:
        return {f"VERIFYFLOW_{key.upper()}": value for key, value in self.values().items()}


@dataclass(frozen=True, slots=True)
class JobSpec:
    name: str
    needs: tuple[str, ...] = ()
    rule: GatingRule = field(default_factory=lambda: rule_for(None))
    kind: TargetKindName = "bare"
    matrix: tuple[MatrixEntry, ...] = ()
    image: str = "{os}:{ver}"
    privileged: bool = False
    shell: str = "bash"
    consumes: tuple[str, ...] = ()
    extract: bool = True
    steps: tuple[StepConfig, ...] = ()
    publish: tuple[PublishConfig, ...] = ()
    results_artifact: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: tuple[str, ...] = ()
    provision_timeout: float | None = None

    @classmethod
    def from_config(cls, job: JobConfig, marker: str = "ci") -> "JobSpec":
        return cls(
            name=job.name,
            needs=job.needs,
            rule=rule_for(job.gate, marker),
            kind=job.kind,
            matrix=tuple(MatrixEntry.from_config(entry) for entry in job.matrix),
            image=job.image,
            privileged=job.privileged,
            shell=job.shell,
            consumes=job.consumes,
            extract=job.extract,
            steps=job.steps,
            publish=job.publish,
            results_artifact=job.results_artifact,
            env=dict(job.env),
            secrets=job.secrets,
            provision_timeout=job.provision_timeout,
        )

    def entries(self) -> tuple[MatrixEntry | None, ...]:
        if not self.matrix:
            return (None,)
        return self.matrix

    def published_names(self) -> tuple[str, ...]:
        """Artifact names this job may publish, with matrix templates expanded."""
        names: list[str] = []
        for entry in self.entries():
            templates = [item.name for item in self.publish]
            if self.results_artifact:
                templates.append(self.results_artifact)
            for template in templates:
                names.append(entry.format(template) if entry is not None else template)
        return tuple(dict.fromkeys(names))


def job_run_id(job: str, entry: MatrixEntry | None) -> str:
    if entry is None:
        return job
    return f"{job}[{entry.label}]"


@dataclass(frozen=True, slots=True)
class ArtifactRef:
    name: str
    producer: str
    files: tuple[str, ...]
    digest: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "producer": self.producer,
            "files": list(self.files),
            "digest": self.digest,
        }


@dataclass(frozen=True, slots=True)
class TestResult:
    __test__ = False

    plan: str
    case: str
    outcome: Outcome
    log: str = ""
    exit_status: int | None = None
    duration_seconds: float = 0.0
    synthetic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan,
            "case": self.case,
            "outcome": self.outcome.value,
            "exit_status": self.exit_status,
            "duration_seconds": round(float(self.duration_seconds), 3),
            "synthetic": self.synthetic,
        }


@dataclass(frozen=True, slots=True)
class StepRecord:
    name: str
    status: str
    exit_status: int | None = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "status": self.status,
            "exit_status": self.exit_status,
            "duration_seconds": round(float(self.duration_seconds), 3),
        }
        if self.timed_out:
            payload["timed_out"] = True
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass(slots=True)
class JobRun:
    """One JobSpec instantiated for one matrix entry."""

    id: str
    job: str
    entry: MatrixEntry | None = None
    state: JobState = JobState.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    steps: list[StepRecord] = field(default_factory=list)
    test_results: list[TestResult] = field(default_factory=list)
    artifacts: list[ArtifactRef] = field(default_factory=list)
    log: list[str] = field(default_factory=list)
    error_type: str | None = None
    error_detail: str | None = None
    skip_reason: str | None = None
    target: dict[str, Any] | None = None
    provisioned: bool = False

    def _transition(self, state: JobState) -> None:
        if state not in _ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"job run '{self.id}' cannot move from {self.state.value} to {state.value}"
            )
        self.state = state

    def start(self) -> None:
        self._transition(JobState.RUNNING)
        self.started_at = utc_now()

    def skip(self, reason: str) -> None:
        self._transition(JobState.SKIPPED)
        self.skip_reason = reason
        now = utc_now()
        self.started_at = self.started_at or now
        self.finished_at = now

    def succeed(self) -> None:
        self._transition(JobState.SUCCEEDED)
        self.finished_at = utc_now()

    def fail(self, error_type: str | None = None, detail: str | None = None) -> None:
        self._transition(JobState.FAILED)
        self.finished_at = utc_now()
        if error_type is not None:
            self.error_type = error_type
            self.error_detail = detail

    def record(self, line: str) -> None:
        self.log.append(line)

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(slots=True)
class PipelineRun:
    ref: str
    commit: str
    activated: bool = True
    runs: dict[str, JobRun] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    report_files: dict[str, Path] = field(default_factory=dict)

    def add(self, run: JobRun) -> JobRun:
        if run.id in self.runs:
            raise ValueError(f"duplicate job run id '{run.id}'")
        self.runs[run.id] = run
        return run

    def runs_for(self, job: str) -> list[JobRun]:
        return [run for run in self.runs.values() if run.job == job]

    def __iter__(self) -> Iterator[JobRun]:
        return iter(self.runs.values())

    @property
    def terminal(self) -> bool:
        return all(run.terminal for run in self.runs.values())

    @property
    def succeeded(self) -> bool:
        return not any(run.state is JobState.FAILED for run in self.runs.values())
