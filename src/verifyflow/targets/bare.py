from __future__ import annotations

import logging
import shutil
from collections.abc import Mapping, Sequence

from verifyflow.channels import CommandChannel, LocalChannel
from verifyflow.domain import JobSpec, MatrixEntry
from verifyflow.errors import ProvisionError
from verifyflow.targets.base import (
    ExecutionTarget,
    Provisioner,
    TargetKind,
    capability_tags,
    safe_name,
)

LOGGER = logging.getLogger(__name__)

_SHELL_EXECUTABLES = {"bash": "bash", "cmd": "cmd.exe"}


class BareProvisioner(Provisioner):
    """Runs jobs directly on the orchestrating host in a scratch directory."""

    kind = TargetKind.BARE

    def create(self, job: JobSpec, run_id: str, entry: MatrixEntry | None) -> ExecutionTarget:
        workdir = (self.workspace / "targets" / safe_name(run_id)).resolve()
        try:
            if workdir.exists():
                shutil.rmtree(workdir)
            workdir.mkdir(parents=True)
        except OSError as exc:
            raise ProvisionError(run_id, f"cannot prepare workdir '{workdir}': {exc}") from exc
        return ExecutionTarget(
            kind=self.kind,
            name=run_id,
            entry=entry,
            address="localhost",
            workdir=str(workdir),
            shell=job.shell,
            tags=capability_tags(self.kind, entry) | {job.shell},
        )

    def wait_ready(self, target: ExecutionTarget, timeout: float) -> None:
        executable = _SHELL_EXECUTABLES[target.shell]
        if shutil.which(executable) is None:
            raise ProvisionError(target.name, f"shell '{executable}' not found on PATH")

    def open_channel(
        self,
        target: ExecutionTarget,
        *,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandChannel:
        return LocalChannel(
            target.name,
            target.workdir,
            shell=target.shell,
            default_timeout=self.settings.command_timeout,
            env=env,
            secrets=secrets,
        )

    def teardown(self, target: ExecutionTarget) -> None:
        shutil.rmtree(target.workdir, ignore_errors=True)
