from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from verifyflow.errors import TargetUnreachable, TransferFailure

LOGGER = logging.getLogger(__name__)

TIMEOUT_EXIT_STATUS = 124
REDACTED = "***"


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: str
    exit_status: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_status": int(self.exit_status),
            "duration_seconds": round(float(self.duration_seconds), 3),
            "timed_out": self.timed_out,
        }


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def render_script(
    command: str,
    env: Mapping[str, str],
    *,
    shell: str = "bash",
    workdir: str | None = None,
) -> str:
    """Build the script fed to a remote shell on stdin.

    Values travel inside the script rather than on the command line, so
    secrets never show up in the local process table.
    """
    lines = ["set -eo pipefail" if shell == "bash" else "set -e"]
    for key in sorted(env):
        lines.append(f"export {key}={shlex.quote(env[key])}")
    if workdir:
        lines.append(f"cd {shlex.quote(workdir)}")
    lines.append(command)
    return "\n".join(lines) + "\n"


class CommandChannel(ABC):
    """Ordered, blocking command execution against one live target.

    ``run`` holds a per-channel lock for the full duration of a command, so
    commands complete strictly in submission order and never overlap. Every
    result is appended to :attr:`transcript`, including failures.
    """

    def __init__(
        self,
        name: str,
        *,
        default_timeout: float = 3600.0,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> None:
        self.name = name
        self.default_timeout = default_timeout
        self.env: dict[str, str] = dict(env or {})
        self._secrets = tuple(sorted((s for s in secrets if s), key=len, reverse=True))
        self._lock = threading.Lock()
        self.transcript: list[CommandResult] = []

    def add_secrets(self, values: Sequence[str]) -> None:
        merged = set(self._secrets) | {value for value in values if value}
        self._secrets = tuple(sorted(merged, key=len, reverse=True))

    def redact(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text

    def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        limit = timeout if timeout is not None else self.default_timeout
        merged_env = {**self.env, **dict(env or {})}
        with self._lock:
            LOGGER.debug("[%s] run: %s", self.name, self.redact(command))
            started = time.monotonic()
            try:
                completed = self._execute(command, merged_env, limit)
                result = CommandResult(
                    command=self.redact(command),
                    exit_status=int(completed.returncode),
                    stdout=self.redact(_as_text(completed.stdout)),
                    stderr=self.redact(_as_text(completed.stderr)),
                    duration_seconds=time.monotonic() - started,
                )
            except subprocess.TimeoutExpired as exc:
                result = CommandResult(
                    command=self.redact(command),
                    exit_status=TIMEOUT_EXIT_STATUS,
                    stdout=self.redact(_as_text(exc.stdout)),
                    stderr=self.redact(_as_text(exc.stderr))
                    + f"\ncommand timed out after {limit:g}s",
                    duration_seconds=time.monotonic() - started,
                    timed_out=True,
                )
            except OSError as exc:
                raise TargetUnreachable(self.name, f"cannot start command: {exc}") from exc
            self.transcript.append(result)
        self._check_reachable(result)
        return result

    def _check_reachable(self, result: CommandResult) -> None:
        """Raise :class:`TargetUnreachable` when ``result`` shows a lost target."""

    def _subprocess(
        self,
        argv: Sequence[str],
        *,
        script: str | None,
        timeout: float,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        process_env = None
        if env is not None:
            process_env = {**os.environ, **dict(env)}
        return subprocess.run(
            list(argv),
            input=script,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=process_env,
            check=False,
        )

    def _transfer(
        self,
        argv: Sequence[str],
        label: str,
        *,
        unreachable_status: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a copy command, raising :class:`TransferFailure` unless it exits 0.

        A copy is not a target loss on its own. Only ``unreachable_status``,
        the transport's own connection-error status, raises
        :class:`TargetUnreachable`.
        """
        try:
            completed = self._subprocess(argv, script=None, timeout=self.default_timeout)
        except subprocess.TimeoutExpired as exc:
            raise TransferFailure(
                self.name, f"{label} timed out after {self.default_timeout:g}s"
            ) from exc
        except OSError as exc:
            raise TransferFailure(self.name, f"cannot execute {label}: {exc}") from exc
        if unreachable_status is not None and completed.returncode == unreachable_status:
            raise TargetUnreachable(self.name, f"{label}: {completed.stderr.strip()}")
        if completed.returncode != 0:
            raise TransferFailure(self.name, f"{label} failed: {completed.stderr.strip()}")
        return completed

    @abstractmethod
    def _execute(
        self, command: str, env: Mapping[str, str], timeout: float
    ) -> subprocess.CompletedProcess[str]:
        raise NotImplementedError

    @abstractmethod
    def push(self, local: Path, remote: str) -> None:
        """Copy a local file onto the target."""

    @abstractmethod
    def pull(self, remote: str, local: Path) -> None:
        """Copy a file or directory from the target."""

    def expand(self, pattern: str) -> list[str]:
        """Return the target paths matching a shell glob, relative to the workdir."""
        result = self.run(
            f'for f in {pattern}; do [ -e "$f" ] && printf "%s\\n" "$f"; done; true'
        )
        return [line for line in result.stdout.splitlines() if line.strip()]
