from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from verifyflow.channels import CommandChannel
from verifyflow.config.models import RuntimeConfig
from verifyflow.domain import JobSpec, MatrixEntry
from verifyflow.errors import ProvisionError

LOGGER = logging.getLogger(__name__)


class TargetKind(str, Enum):
    BARE = "bare"
    CONTAINER = "container"
    VM = "vm"


class TargetState(str, Enum):
    PROVISIONING = "provisioning"
    READY = "ready"
    IN_USE = "in_use"
    TORN_DOWN = "torn_down"


def safe_name(value: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in value)


def capability_tags(kind: TargetKind, entry: MatrixEntry | None) -> frozenset[str]:
    """Tags a target carries for test-plan ``requires`` filtering.

    Every target is tagged with its kind. Matrix targets add the os, its
    family, ``<os>-<ver>``, and any comma-separated ``tags`` matrix extra.
    """
    tags = {kind.value}
    if entry is not None:
        tags.update({entry.os, entry.os_family, f"{entry.os}-{entry.ver}"})
        extra = dict(entry.extra).get("tags", "")
        tags.update(tag.strip() for tag in extra.split(",") if tag.strip())
    return frozenset(tags)


@dataclass(slots=True)
class ExecutionTarget:
    kind: TargetKind
    name: str
    entry: MatrixEntry | None = None
    address: str | None = None
    port: int | None = None
    handle: Any = None
    workdir: str = "."
    shell: str = "bash"
    tags: frozenset[str] = frozenset()
    state: TargetState = TargetState.PROVISIONING
    resources: dict[str, Path] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "name": self.name,
            "state": self.state.value,
            "workdir": self.workdir,
            "tags": sorted(self.tags),
        }
        if self.address is not None:
            payload["address"] = self.address
        if self.port is not None:
            payload["port"] = self.port
        if isinstance(self.handle, str):
            payload["handle"] = self.handle
        return payload


class Provisioner(ABC):
    """Lifecycle of one kind of execution target.

    Subclasses are constructed as
    ``Provisioner(settings, workspace, cloudinit_root=...)`` and
    ``module:callable`` driver overrides are called the same way.
    """

    kind: TargetKind

    def __init__(
        self,
        settings: RuntimeConfig | None = None,
        workspace: str | Path = ".",
        *,
        cloudinit_root: Path | None = None,
    ) -> None:
        self.settings = settings or RuntimeConfig()
        self.workspace = Path(workspace)
        self.cloudinit_root = cloudinit_root

    @abstractmethod
    def create(self, job: JobSpec, run_id: str, entry: MatrixEntry | None) -> ExecutionTarget:
        """Start acquiring a target; returns it in the Provisioning state."""

    @abstractmethod
    def wait_ready(self, target: ExecutionTarget, timeout: float) -> None:
        """Block until ``target`` accepts commands or raise ProvisionTimeout."""

    @abstractmethod
    def open_channel(
        self,
        target: ExecutionTarget,
        *,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandChannel:
        raise NotImplementedError

    @abstractmethod
    def teardown(self, target: ExecutionTarget) -> None:
        """Release every resource of ``target``; safe on partially created targets."""


def _acquire(
    provisioner: Provisioner,
    job: JobSpec,
    run_id: str,
    entry: MatrixEntry | None,
    *,
    timeout: float,
    retries: int,
    env: Mapping[str, str] | None,
    secrets: Sequence[str],
) -> tuple[ExecutionTarget, CommandChannel]:
    attempts = retries + 1
    attempt = 0
    while True:
        attempt += 1
        target: ExecutionTarget | None = None
        try:
            target = provisioner.create(job, run_id, entry)
            provisioner.wait_ready(target, timeout)
            target.state = TargetState.READY
            channel = provisioner.open_channel(target, env=env, secrets=secrets)
            return target, channel
        except ProvisionError as exc:
            if target is not None:
                provisioner.teardown(target)
                target.state = TargetState.TORN_DOWN
            if attempt >= attempts:
                raise
            LOGGER.warning(
                "attempt %d/%d to provision '%s' failed: %s", attempt, attempts, run_id, exc
            )
        except BaseException:
            if target is not None:
                provisioner.teardown(target)
                target.state = TargetState.TORN_DOWN
            raise


@contextmanager
def provisioned(
    provisioner: Provisioner,
    job: JobSpec,
    run_id: str,
    entry: MatrixEntry | None,
    *,
    timeout: float,
    retries: int = 0,
    env: Mapping[str, str] | None = None,
    secrets: Sequence[str] = (),
) -> Iterator[tuple[ExecutionTarget, CommandChannel]]:
    """Provision a target for one job run and always tear it down afterwards.

    Each attempt gets ``timeout`` seconds to reach readiness. A failed attempt
    is torn down before the next one starts; after ``retries`` extra attempts
    the last :class:`ProvisionError` propagates.
    """
    target, channel = _acquire(
        provisioner,
        job,
        run_id,
        entry,
        timeout=timeout,
        retries=retries,
        env=env,
        secrets=secrets,
    )
    target.state = TargetState.IN_USE
    try:
        yield target, channel
    finally:
        provisioner.teardown(target)
        target.state = TargetState.TORN_DOWN
        LOGGER.debug("target '%s' torn down", target.name)
