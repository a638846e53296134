from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class VerifyFlowError(Exception):
    """Base exception for config, graph, target, and artifact failures."""


class ConfigValidationError(VerifyFlowError):
    """Raised when a pipeline config or test plan is invalid."""


class GraphError(VerifyFlowError):
    """Raised when the job graph has a cycle or a dangling reference."""


@dataclass(slots=True)
class ProvisionError(VerifyFlowError):
    """Raised when an execution target cannot be brought up."""

    target: str
    detail: str

    def __str__(self) -> str:
        return f"provisioning '{self.target}' failed: {self.detail}"


@dataclass(slots=True)
class ProvisionTimeout(ProvisionError):
    """Raised when a target does not become ready in time."""

    timeout: float = 0.0

    def __str__(self) -> str:
        return (
            f"provisioning '{self.target}' timed out after {self.timeout:g}s: {self.detail}"
        )


@dataclass(slots=True)
class TargetUnreachable(VerifyFlowError):
    """Raised when a live target stops answering on its channel."""

    target: str
    detail: str

    def __str__(self) -> str:
        return f"target '{self.target}' unreachable: {self.detail}"


@dataclass(slots=True)
class TransferFailure(VerifyFlowError):
    """Raised when copying files to or from a live target fails."""

    target: str
    detail: str

    def __str__(self) -> str:
        return f"transfer on '{self.target}' failed: {self.detail}"


@dataclass(slots=True)
class CommandFailure(VerifyFlowError):
    """Raised when a fatal step exits non-zero."""

    step: str
    exit_status: int
    detail: str = ""

    def __str__(self) -> str:
        message = f"step '{self.step}' exited with status {self.exit_status}"
        if self.detail:
            message = f"{message}: {self.detail}"
        return message


class TestPlanError(VerifyFlowError):
    """Raised when a test plan file cannot be loaded."""

    __test__ = False


class ArtifactError(VerifyFlowError):
    """Base artifact store error."""


@dataclass(slots=True)
class ArtifactConflict(ArtifactError):
    """Raised on a second publish of the same name by the same job run."""

    producer: str
    name: str

    def __str__(self) -> str:
        return f"artifact '{self.name}' already published by '{self.producer}'"


@dataclass(slots=True)
class ArtifactNotFound(ArtifactError):
    """Raised when an artifact was never published."""

    name: str
    producer: str | None = None

    def __str__(self) -> str:
        if self.producer is None:
            return f"artifact '{self.name}' not found"
        return f"artifact '{self.name}' not published by '{self.producer}'"


@dataclass(slots=True)
class RuntimeInitializationError(VerifyFlowError):
    """Raised when the runtime cannot be constructed from configs."""

    pipeline_config_path: Path
    detail: str

    def __str__(self) -> str:
        return (
            f"runtime initialization failed for '{self.pipeline_config_path}': {self.detail}"
        )
