from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from verifyflow.config.models import matrix_label

SCHEMA_VERSION = "1.0"


@dataclass(frozen=True, slots=True)
class TestCaseReport:
    __test__ = False

    plan: str
    case: str
    outcome: str
    exit_status: int | None = None
    duration_seconds: float = 0.0
    synthetic: bool = False
    log: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan": self.plan,
            "case": self.case,
            "outcome": self.outcome,
            "exit_status": self.exit_status,
            "duration_seconds": self.duration_seconds,
            "synthetic": self.synthetic,
            "log": self.log,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TestCaseReport":
        return cls(
            plan=str(payload["plan"]),
            case=str(payload["case"]),
            outcome=str(payload["outcome"]),
            exit_status=payload.get("exit_status"),
            duration_seconds=float(payload.get("duration_seconds", 0.0)),
            synthetic=bool(payload.get("synthetic", False)),
            log=str(payload.get("log", "")),
        )


@dataclass(frozen=True, slots=True)
class JobRunReport:
    id: str
    job: str
    state: str
    os: str | None = None
    ver: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    duration_seconds: float | None = None
    provisioned: bool = False
    skip_reason: str | None = None
    error_type: str | None = None
    error_detail: str | None = None
    steps: tuple[dict[str, Any], ...] = ()
    tests: tuple[TestCaseReport, ...] = ()
    artifacts: tuple[str, ...] = ()
    log: tuple[str, ...] = ()
    gaps: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str | None]:
        entry = matrix_label(self.os, self.ver or "") if self.os is not None else None
        return self.job, entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job": self.job,
            "state": self.state,
            "os": self.os,
            "ver": self.ver,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_seconds": self.duration_seconds,
            "provisioned": self.provisioned,
            "skip_reason": self.skip_reason,
            "error_type": self.error_type,
            "error_detail": self.error_detail,
            "steps": [dict(step) for step in self.steps],
            "tests": [test.to_dict() for test in self.tests],
            "artifacts": list(self.artifacts),
            "log": list(self.log),
            "gaps": list(self.gaps),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "JobRunReport":
        return cls(
            id=str(payload["id"]),
            job=str(payload["job"]),
            state=str(payload["state"]),
            os=payload.get("os"),
            ver=payload.get("ver"),
            started_at=payload.get("started_at"),
            finished_at=payload.get("finished_at"),
            duration_seconds=payload.get("duration_seconds"),
            provisioned=bool(payload.get("provisioned", False)),
            skip_reason=payload.get("skip_reason"),
            error_type=payload.get("error_type"),
            error_detail=payload.get("error_detail"),
            steps=tuple(dict(step) for step in payload.get("steps", [])),
            tests=tuple(TestCaseReport.from_dict(item) for item in payload.get("tests", [])),
            artifacts=tuple(str(item) for item in payload.get("artifacts", [])),
            log=tuple(str(line) for line in payload.get("log", [])),
            gaps=tuple(str(gap) for gap in payload.get("gaps", [])),
        )


@dataclass(frozen=True, slots=True)
class Report:
    ref: str
    commit: str
    activated: bool
    succeeded: bool
    generated_at_utc: str
    started_at: str | None = None
    finished_at: str | None = None
    state_counts: dict[str, int] = field(default_factory=dict)
    outcome_counts: dict[str, int] = field(default_factory=dict)
    jobs: tuple[JobRunReport, ...] = ()
    gaps: tuple[str, ...] = ()
    schema_version: str = SCHEMA_VERSION

    def job_runs(self, job: str) -> tuple[JobRunReport, ...]:
        return tuple(item for item in self.jobs if item.job == job)

    def lookup(self, job: str, entry: str | None = None) -> JobRunReport:
        for item in self.jobs:
            if item.key == (job, entry):
                return item
        raise KeyError((job, entry))

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "generated_at_utc": self.generated_at_utc,
            "ref": self.ref,
            "commit": self.commit,
            "activated": self.activated,
            "succeeded": self.succeeded,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "state_counts": dict(self.state_counts),
            "outcome_counts": dict(self.outcome_counts),
            "jobs": [item.to_dict() for item in self.jobs],
            "gaps": list(self.gaps),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Report":
        return cls(
            ref=str(payload["ref"]),
            commit=str(payload["commit"]),
            activated=bool(payload["activated"]),
            succeeded=bool(payload["succeeded"]),
            generated_at_utc=str(payload["generated_at_utc"]),
            started_at=payload.get("started_at"),
            finished_at=payload.get("finished_at"),
            state_counts={str(k): int(v) for k, v in payload.get("state_counts", {}).items()},
            outcome_counts={
                str(k): int(v) for k, v in payload.get("outcome_counts", {}).items()
            },
            jobs=tuple(JobRunReport.from_dict(item) for item in payload.get("jobs", [])),
            gaps=tuple(str(gap) for gap in payload.get("gaps", [])),
            schema_version=str(payload.get("schema_version", SCHEMA_VERSION)),
        )
