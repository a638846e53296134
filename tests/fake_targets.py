from __future__ import annotations

import subprocess
import threading
from collections.abc import Mapping, Sequence
from fnmatch import fnmatchcase
from pathlib import Path

from verifyflow.channels import CommandChannel
from verifyflow.domain import JobSpec, MatrixEntry
from verifyflow.errors import ProvisionError, ProvisionTimeout, TargetUnreachable
from verifyflow.targets import ExecutionTarget, Provisioner, TargetKind, capability_tags

# (exit status, stdout, stderr); "timeout" raises TimeoutExpired
Response = tuple[int, str, str] | str


class ScriptedChannel(CommandChannel):
    """Channel answering commands from canned responses keyed by substring."""

    def __init__(
        self,
        name: str = "fake",
        *,
        responses: Mapping[str, Response] | None = None,
        lose_on: str | None = None,
        files: Mapping[str, bytes] | None = None,
        copy_command: Sequence[str] = (),
        push_error: Exception | None = None,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> None:
        super().__init__(name, env=env, secrets=secrets)
        self.copy_command = tuple(copy_command)
        self.push_error = push_error
        self.responses = dict(responses or {})
        self.lose_on = lose_on
        self.files: dict[str, bytes] = dict(files or {})
        self.executed: list[str] = []
        self.envs: list[dict[str, str]] = []
        self.pushed: list[str] = []

    def _execute(
        self, command: str, env: Mapping[str, str], timeout: float
    ) -> subprocess.CompletedProcess[str]:
        self.executed.append(command)
        self.envs.append(dict(env))
        if self.lose_on is not None and self.lose_on in command:
            raise TargetUnreachable(self.name, "connection reset")
        for needle, response in self.responses.items():
            if needle in command:
                if response == "timeout":
                    raise subprocess.TimeoutExpired(command, timeout)
                status, stdout, stderr = response
                return subprocess.CompletedProcess(command, status, stdout, stderr)
        return subprocess.CompletedProcess(command, 0, f"ok: {command}\n", "")

    def push(self, local: Path, remote: str) -> None:
        if self.push_error is not None:
            raise self.push_error
        if self.copy_command:
            # goes through the real copy wrapper, so tests can patch subprocess.run
            self._transfer([*self.copy_command, str(local), remote], " ".join(self.copy_command))
        self.files[remote] = Path(local).read_bytes()
        self.pushed.append(remote)

    def pull(self, remote: str, local: Path) -> None:
        if remote not in self.files:
            raise TargetUnreachable(self.name, f"no such file {remote}")
        local.parent.mkdir(parents=True, exist_ok=True)
        local.write_bytes(self.files[remote])

    def expand(self, pattern: str) -> list[str]:
        return sorted(path for path in self.files if fnmatchcase(path, pattern))


class FakeProvisioner(Provisioner):
    """In-memory provisioner recording every lifecycle call."""

    kind = TargetKind.BARE

    def __init__(
        self,
        settings=None,
        workspace: str | Path = ".",
        *,
        cloudinit_root: Path | None = None,
        kind: TargetKind = TargetKind.BARE,
        ready: bool = True,
        fail_creates: int = 0,
        responses: Mapping[str, Response] | None = None,
        lose_on: str | None = None,
        produced: Mapping[str, bytes] | None = None,
        copy_command: Sequence[str] = (),
        push_error: Exception | None = None,
    ) -> None:
        super().__init__(settings, workspace, cloudinit_root=cloudinit_root)
        self.copy_command = tuple(copy_command)
        self.push_error = push_error
        self.kind = kind
        self.ready = ready
        self.fail_creates = fail_creates
        self.responses = dict(responses or {})
        self.lose_on = lose_on
        self.produced = dict(produced or {})
        self.created: list[str] = []
        self.torn_down: list[str] = []
        self.channels: dict[str, ScriptedChannel] = {}
        self._lock = threading.Lock()

    def create(self, job: JobSpec, run_id: str, entry: MatrixEntry | None) -> ExecutionTarget:
        with self._lock:
            self.created.append(run_id)
            if self.fail_creates > 0:
                self.fail_creates -= 1
                raise ProvisionError(run_id, "transient boot failure")
        return ExecutionTarget(
            kind=self.kind,
            name=run_id,
            entry=entry,
            workdir="/work",
            tags=capability_tags(self.kind, entry),
        )

    def wait_ready(self, target: ExecutionTarget, timeout: float) -> None:
        if not self.ready:
            raise ProvisionTimeout(target.name, "guest never answered", timeout)

    def open_channel(
        self,
        target: ExecutionTarget,
        *,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandChannel:
        channel = ScriptedChannel(
            target.name,
            responses=self.responses,
            lose_on=self.lose_on,
            files=self.produced,
            copy_command=self.copy_command,
            push_error=self.push_error,
            env=env,
            secrets=secrets,
        )
        with self._lock:
            self.channels[target.name] = channel
        return channel

    def teardown(self, target: ExecutionTarget) -> None:
        with self._lock:
            self.torn_down.append(target.name)


def make_fake_provisioner(settings, workspace, *, cloudinit_root=None) -> FakeProvisioner:
    return FakeProvisioner(settings, workspace, cloudinit_root=cloudinit_root)


def not_a_provisioner(settings, workspace, *, cloudinit_root=None) -> object:
    return object()


def make_failing_provisioner(settings, workspace, *, cloudinit_root=None) -> FakeProvisioner:
    return FakeProvisioner(
        settings,
        workspace,
        cloudinit_root=cloudinit_root,
        responses={"run-failing-check": (1, "", "check failed")},
    )


def exploding_factory(settings, workspace, *, cloudinit_root=None) -> FakeProvisioner:
    raise RuntimeError("hypervisor socket missing")
