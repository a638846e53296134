from __future__ import annotations

import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from verifyflow.channels.base import CommandChannel, render_script
from verifyflow.errors import TransferFailure


class LocalChannel(CommandChannel):
    """Runs commands on the orchestrating host inside ``workdir``."""

    def __init__(
        self,
        name: str,
        workdir: str | Path,
        *,
        shell: str = "bash",
        default_timeout: float = 3600.0,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> None:
        super().__init__(name, default_timeout=default_timeout, env=env, secrets=secrets)
        self.workdir = Path(workdir)
        self.shell = shell

    def _execute(
        self, command: str, env: Mapping[str, str], timeout: float
    ) -> subprocess.CompletedProcess[str]:
        if self.shell == "cmd":
            return self._subprocess(
                ["cmd.exe", "/d", "/c", command],
                script=None,
                timeout=timeout,
                cwd=self.workdir,
                env=env,
            )
        return self._subprocess(
            ["bash", "--noprofile", "--norc", "-s"],
            script=render_script(command, {}, shell="bash"),
            timeout=timeout,
            cwd=self.workdir,
            env=env,
        )

    def _resolve(self, path: str) -> Path:
        candidate = Path(path)
        return candidate if candidate.is_absolute() else self.workdir / candidate

    def push(self, local: Path, remote: str) -> None:
        target = self._resolve(remote)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local, target)
        except OSError as exc:
            raise TransferFailure(self.name, f"copy to {remote}: {exc}") from exc

    def pull(self, remote: str, local: Path) -> None:
        source = self._resolve(remote)
        try:
            local.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, local, dirs_exist_ok=True)
            else:
                shutil.copyfile(source, local)
        except OSError as exc:
            raise TransferFailure(self.name, f"copy from {remote}: {exc}") from exc

    def expand(self, pattern: str) -> list[str]:
        if Path(pattern).is_absolute():
            anchor = Path(Path(pattern).anchor)
            matches = anchor.glob(str(Path(pattern).relative_to(anchor)))
            return sorted(str(path) for path in matches)
        return sorted(path.relative_to(self.workdir).as_posix() for path in self.workdir.glob(pattern))
