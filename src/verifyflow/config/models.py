from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TargetKindName = Literal["bare", "container", "vm"]
StepWhen = Literal["success", "failure", "always"]

DEFAULT_ACTIVATION_BRANCHES: tuple[str, ...] = ("main", "next", "dev*", "ci*")
DEFAULT_ACTIVATION_TAGS: tuple[str, ...] = ("v*",)


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


def _coerce_tuple(value: object) -> object:
    if isinstance(value, list):
        return tuple(value)
    return value


def _coerce_optional_path(value: object) -> object:
    if value is None or isinstance(value, Path):
        return value
    if isinstance(value, str):
        return Path(value)
    raise TypeError("path values must be path-like strings")


def _clean_name(value: str, what: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{what} must be non-empty")
    return cleaned


def matrix_label(os: str, ver: str) -> str:
    """Label used in job run ids and report keys, e.g. ``debian-bullseye``."""
    return f"{os}-{ver}".replace("/", "_")


class PipelineSection(StrictModel):
    project: str = "project"
    selective_marker: str = "ci"
    testplan_root: Path | None = None
    cloudinit_root: Path | None = None
    output_dir: Path = Path("verifyflow-out")

    @field_validator("testplan_root", "cloudinit_root", "output_dir", mode="before")
    @classmethod
    def _coerce_paths(cls, value: object) -> object:
        return _coerce_optional_path(value)

    @field_validator("project", "selective_marker")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        return _clean_name(value, "pipeline.project and pipeline.selective_marker")


class ActivationConfig(StrictModel):
    branches: tuple[str, ...] = DEFAULT_ACTIVATION_BRANCHES
    tags: tuple[str, ...] = DEFAULT_ACTIVATION_TAGS

    @field_validator("branches", "tags", mode="before")
    @classmethod
    def _coerce_patterns(cls, value: object) -> object:
        return _coerce_tuple(value)


class RuntimeConfig(StrictModel):
    max_workers: int = Field(default=4, ge=1)
    provision_timeout: float = Field(default=600.0, gt=0)
    provision_retries: int = Field(default=2, ge=0)
    command_timeout: float = Field(default=3600.0, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)
    image_cache: Path | None = None
    ssh_user: str = "root"
    ssh_key: Path | None = None
    drivers: dict[str, str] = Field(default_factory=dict)

    @field_validator("image_cache", "ssh_key", mode="before")
    @classmethod
    def _coerce_paths(cls, value: object) -> object:
        return _coerce_optional_path(value)

    @field_validator("poll_interval", "provision_timeout", "command_timeout", mode="before")
    @classmethod
    def _coerce_seconds(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        return value

    @field_validator("drivers")
    @classmethod
    def _validate_drivers(cls, value: dict[str, str]) -> dict[str, str]:
        for kind, ref in value.items():
            if kind not in ("bare", "container", "vm"):
                raise ValueError(f"unknown target kind '{kind}' in runtime.drivers")
            if ":" not in ref:
                raise ValueError(
                    f"runtime.drivers['{kind}'] must be a 'module:callable' reference"
                )
        return value


class StepConfig(StrictModel):
    name: str
    run: str | None = None
    testplans: tuple[str, ...] = ()
    when: StepWhen = "success"
    continue_on_error: bool = False
    timeout: float | None = Field(default=None, gt=0)
    os: tuple[str, ...] = ()

    @field_validator("testplans", "os", mode="before")
    @classmethod
    def _coerce_lists(cls, value: object) -> object:
        return _coerce_tuple(value)

    @field_validator("timeout", mode="before")
    @classmethod
    def _coerce_timeout(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        return value

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _clean_name(value, "step name")

    @model_validator(mode="after")
    def _exactly_one_body(self) -> "StepConfig":
        if (self.run is None) == (not self.testplans):
            raise ValueError(
                f"step '{self.name}' must define exactly one of 'run' or 'testplans'"
            )
        return self


class PublishConfig(StrictModel):
    name: str
    path: str
    when: StepWhen = "success"

    @field_validator("name", "path")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        return _clean_name(value, "publish name and path")


class MatrixEntryConfig(StrictModel):
    os: str
    ver: str
    extra: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extras(cls, value: object) -> object:
        if not isinstance(value, dict):
            return value
        known = {"os", "ver", "extra"}
        payload = {k: v for k, v in value.items() if k in known}
        # versions like `ver = 13` are legal TOML integers
        if isinstance(payload.get("ver"), int) and not isinstance(payload["ver"], bool):
            payload["ver"] = str(payload["ver"])
        extras = {str(k): v for k, v in value.items() if k not in known}
        if extras:
            payload["extra"] = {**dict(value.get("extra", {})), **extras}
        return payload

    @property
    def label(self) -> str:
        return matrix_label(self.os, self.ver)


class JobConfig(StrictModel):
    name: str
    needs: tuple[str, ...] = ()
    gate: str | None = None
    kind: TargetKindName = "bare"
    image: str = "{os}:{ver}"
    privileged: bool = False
    shell: Literal["bash", "cmd"] = "bash"
    matrix: tuple[MatrixEntryConfig, ...] = ()
    consumes: tuple[str, ...] = ()
    extract: bool = True
    steps: tuple[StepConfig, ...] = ()
    publish: tuple[PublishConfig, ...] = ()
    results_artifact: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    secrets: tuple[str, ...] = ()
    provision_timeout: float | None = Field(default=None, gt=0)

    @field_validator("needs", "matrix", "consumes", "steps", "publish", "secrets", mode="before")
    @classmethod
    def _coerce_lists(cls, value: object) -> object:
        return _coerce_tuple(value)

    @field_validator("provision_timeout", mode="before")
    @classmethod
    def _coerce_timeout(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        return value

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _clean_name(value, "job name")

    @model_validator(mode="after")
    def _unique_publish_names(self) -> "JobConfig":
        seen: set[str] = set()
        for item in self.publish:
            if item.name in seen:
                raise ValueError(f"job '{self.name}' publishes '{item.name}' twice")
            seen.add(item.name)
        return self

    @model_validator(mode="after")
    def _unique_matrix_labels(self) -> "JobConfig":
        seen: set[str] = set()
        for entry in self.matrix:
            if entry.label in seen:
                raise ValueError(
                    f"job '{self.name}' has more than one matrix entry labelled '{entry.label}'"
                )
            seen.add(entry.label)
        return self


class PipelineConfig(StrictModel):
    pipeline: PipelineSection = Field(default_factory=PipelineSection)
    activation: ActivationConfig = Field(default_factory=ActivationConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    jobs: tuple[JobConfig, ...] = ()

    @field_validator("jobs", mode="before")
    @classmethod
    def _coerce_jobs(cls, value: object) -> object:
        return _coerce_tuple(value)

    @model_validator(mode="after")
    def _unique_job_names(self) -> "PipelineConfig":
        seen: set[str] = set()
        for job in self.jobs:
            if job.name in seen:
                raise ValueError(f"duplicate job name '{job.name}'")
            seen.add(job.name)
        return self


class TestCaseConfig(StrictModel):
    __test__ = False

    name: str
    run: str
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("timeout", mode="before")
    @classmethod
    def _coerce_timeout(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return float(value)
        return value


class TestPlanConfig(StrictModel):
    __test__ = False

    name: str
    description: str = ""
    requires: tuple[str, ...] = ()
    cases: tuple[TestCaseConfig, ...] = ()

    @field_validator("requires", "cases", mode="before")
    @classmethod
    def _coerce_lists(cls, value: object) -> object:
        return _coerce_tuple(value)

    @model_validator(mode="after")
    def _unique_case_names(self) -> "TestPlanConfig":
        seen: set[str] = set()
        for case in self.cases:
            if case.name in seen:
                raise ValueError(f"test plan '{self.name}' repeats case '{case.name}'")
            seen.add(case.name)
        return self
