from __future__ import annotations

import logging
import subprocess
import time
import uuid
from collections.abc import Mapping, Sequence

from verifyflow.channels import CommandChannel, DockerChannel
from verifyflow.domain import JobSpec, MatrixEntry
from verifyflow.errors import ProvisionError, ProvisionTimeout
from verifyflow.targets.base import (
    ExecutionTarget,
    Provisioner,
    TargetKind,
    capability_tags,
    safe_name,
)

LOGGER = logging.getLogger(__name__)

CONTAINER_WORKDIR = "/workspace"


class ContainerProvisioner(Provisioner):
    """Starts a detached container per job run with ``docker run``."""

    kind = TargetKind.CONTAINER
    docker = "docker"

    def _docker(self, *args: str, timeout: float) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self.docker, *args],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )

    def create(self, job: JobSpec, run_id: str, entry: MatrixEntry | None) -> ExecutionTarget:
        image = entry.format(job.image) if entry is not None else job.image
        name = f"verifyflow-{safe_name(run_id)}-{uuid.uuid4().hex[:8]}"
        args = ["run", "-d", "--name", name, "-w", CONTAINER_WORKDIR]
        if job.privileged:
            args.append("--privileged")
        args.extend([image, "sleep", "infinity"])
        timeout = job.provision_timeout or self.settings.provision_timeout
        try:
            completed = self._docker(*args, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            # the container may exist even though docker never answered
            self._remove(name)
            raise ProvisionTimeout(run_id, f"docker run {image} did not return", timeout) from exc
        except OSError as exc:
            raise ProvisionError(run_id, f"cannot execute docker: {exc}") from exc
        if completed.returncode != 0:
            raise ProvisionError(run_id, f"docker run {image} failed: {completed.stderr.strip()}")
        LOGGER.info("started container %s from %s for '%s'", name, image, run_id)
        return ExecutionTarget(
            kind=self.kind,
            name=run_id,
            entry=entry,
            handle=completed.stdout.strip() or name,
            workdir=CONTAINER_WORKDIR,
            shell="bash",
            tags=capability_tags(self.kind, entry) | ({"privileged"} if job.privileged else set()),
        )

    def wait_ready(self, target: ExecutionTarget, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProvisionTimeout(target.name, "container never accepted exec", timeout)
            try:
                probe = self._docker("exec", target.handle, "true", timeout=remaining)
            except subprocess.TimeoutExpired as exc:
                raise ProvisionTimeout(target.name, "docker exec probe hung", timeout) from exc
            except OSError as exc:
                raise ProvisionError(target.name, f"cannot execute docker: {exc}") from exc
            if probe.returncode == 0:
                return
            time.sleep(min(self.settings.poll_interval, max(remaining, 0.0)))

    def open_channel(
        self,
        target: ExecutionTarget,
        *,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandChannel:
        return DockerChannel(
            target.name,
            target.handle,
            workdir=target.workdir,
            docker=self.docker,
            default_timeout=self.settings.command_timeout,
            env=env,
            secrets=secrets,
        )

    def _remove(self, container: str) -> None:
        try:
            completed = self._docker("rm", "-f", container, timeout=120.0)
        except (subprocess.TimeoutExpired, OSError) as exc:
            LOGGER.warning("failed removing container %s: %s", container, exc)
            return
        if completed.returncode != 0:
            LOGGER.warning("failed removing container %s: %s", container, completed.stderr.strip())

    def teardown(self, target: ExecutionTarget) -> None:
        if target.handle is not None:
            self._remove(target.handle)
