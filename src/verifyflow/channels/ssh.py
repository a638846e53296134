from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from verifyflow.channels.base import CommandChannel, CommandResult, render_script
from verifyflow.errors import TargetUnreachable

# ssh(1) reserves 255 for its own connection errors
SSH_ERROR_STATUS = 255

_SSH_OPTIONS = (
    "-o",
    "BatchMode=yes",
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "LogLevel=ERROR",
)


class SSHChannel(CommandChannel):
    """Runs commands on a remote host by feeding a script to ``ssh ... sh -s``."""

    def __init__(
        self,
        name: str,
        host: str,
        *,
        port: int = 22,
        user: str = "root",
        key: Path | None = None,
        shell: str = "bash",
        connect_timeout: int = 10,
        default_timeout: float = 3600.0,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> None:
        super().__init__(name, default_timeout=default_timeout, env=env, secrets=secrets)
        self.host = host
        self.port = port
        self.user = user
        self.key = key
        self.shell = shell
        self.connect_timeout = connect_timeout

    def _common_options(self) -> list[str]:
        options = [*_SSH_OPTIONS, "-o", f"ConnectTimeout={self.connect_timeout}"]
        if self.key is not None:
            options.extend(["-i", str(self.key)])
        return options

    def ssh_argv(self, remote_command: str) -> list[str]:
        return [
            "ssh",
            "-p",
            str(self.port),
            *self._common_options(),
            f"{self.user}@{self.host}",
            remote_command,
        ]

    def _execute(
        self, command: str, env: Mapping[str, str], timeout: float
    ) -> subprocess.CompletedProcess[str]:
        return self._subprocess(
            self.ssh_argv(f"{self.shell} -s"),
            script=render_script(command, env, shell=self.shell),
            timeout=timeout,
        )

    def handshake(self, timeout: float) -> bool:
        """Return True when a trivial remote command succeeds."""
        try:
            completed = self._subprocess(self.ssh_argv("true"), script=None, timeout=timeout)
        except (subprocess.TimeoutExpired, OSError):
            return False
        return completed.returncode == 0

    def _check_reachable(self, result: CommandResult) -> None:
        if result.exit_status == SSH_ERROR_STATUS:
            raise TargetUnreachable(self.name, result.stderr.strip() or "ssh connection failed")

    def _scp(self, source: str, dest: str) -> None:
        argv = ["scp", "-r", "-P", str(self.port), *self._common_options(), source, dest]
        self._transfer(argv, "scp", unreachable_status=SSH_ERROR_STATUS)

    def push(self, local: Path, remote: str) -> None:
        self._scp(str(local), f"{self.user}@{self.host}:{remote}")

    def pull(self, remote: str, local: Path) -> None:
        local.parent.mkdir(parents=True, exist_ok=True)
        self._scp(f"{self.user}@{self.host}:{remote}", str(local))
