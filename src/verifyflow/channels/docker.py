from __future__ import annotations

import posixpath
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from verifyflow.channels.base import CommandChannel, render_script


class DockerChannel(CommandChannel):
    """Runs commands inside a running container through ``docker exec``."""

    def __init__(
        self,
        name: str,
        container: str,
        *,
        workdir: str = "/workspace",
        docker: str = "docker",
        default_timeout: float = 3600.0,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> None:
        super().__init__(name, default_timeout=default_timeout, env=env, secrets=secrets)
        self.container = container
        self.workdir = workdir
        self.docker = docker

    def _execute(
        self, command: str, env: Mapping[str, str], timeout: float
    ) -> subprocess.CompletedProcess[str]:
        return self._subprocess(
            [self.docker, "exec", "-i", "-w", self.workdir, self.container, "bash", "-s"],
            script=render_script(command, env, shell="bash"),
            timeout=timeout,
        )

    def _remote_path(self, path: str) -> str:
        if posixpath.isabs(path):
            return path
        return posixpath.join(self.workdir, path)

    def _copy(self, source: str, dest: str) -> None:
        self._transfer([self.docker, "cp", source, dest], "docker cp")

    def push(self, local: Path, remote: str) -> None:
        self._copy(str(local), f"{self.container}:{self._remote_path(remote)}")

    def pull(self, remote: str, local: Path) -> None:
        local.parent.mkdir(parents=True, exist_ok=True)
        self._copy(f"{self.container}:{self._remote_path(remote)}", str(local))
