from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import pytest
import requests

from fake_targets import FakeProvisioner
from verifyflow.config import RuntimeConfig
from verifyflow.domain import JobSpec, MatrixEntry
from verifyflow.errors import ConfigValidationError, ProvisionError, ProvisionTimeout
from verifyflow.targets import (
    BareProvisioner,
    ContainerProvisioner,
    ExecutionTarget,
    QemuProvisioner,
    TargetKind,
    TargetState,
    build_provisioners,
    capability_tags,
    fetch_image,
    provisioned,
)
from verifyflow.targets import vm as vm_module

DEBIAN = MatrixEntry(os="debian", ver="bullseye", extra=(("img", "https://example.invalid/debian.qcow2"),))


def _settings(**overrides: Any) -> RuntimeConfig:
    return RuntimeConfig(poll_interval=0.01, **overrides)


def test_capability_tags() -> None:
    entry = MatrixEntry(os="freebsd", ver="13", extra=(("tags", "zns, nvme"),))
    assert capability_tags(TargetKind.VM, entry) == {"vm", "freebsd", "freebsd-13", "zns", "nvme"}
    assert capability_tags(TargetKind.BARE, None) == {"bare"}


def test_provisioned_retries_then_tears_down() -> None:
    provisioner = FakeProvisioner(fail_creates=1)
    job = JobSpec(name="build")

    with provisioned(provisioner, job, "build", None, timeout=1.0, retries=1) as (target, channel):
        assert target.state is TargetState.IN_USE
        channel.run("make")

    assert provisioner.created == ["build", "build"]
    assert provisioner.torn_down == ["build"]
    assert target.state is TargetState.TORN_DOWN


def test_provisioned_gives_up_after_retries() -> None:
    provisioner = FakeProvisioner(ready=False)
    with pytest.raises(ProvisionTimeout):
        with provisioned(provisioner, JobSpec(name="vm"), "vm", None, timeout=0.1, retries=2):
            pass
    assert len(provisioner.created) == 3
    assert provisioner.torn_down == ["vm", "vm", "vm"]


def test_provisioned_tears_down_when_body_raises() -> None:
    provisioner = FakeProvisioner()
    with pytest.raises(RuntimeError):
        with provisioned(provisioner, JobSpec(name="j"), "j", None, timeout=1.0):
            raise RuntimeError("boom")
    assert provisioner.torn_down == ["j"]


def test_bare_provisioner_lifecycle(tmp_path: Path) -> None:
    provisioner = BareProvisioner(_settings(), tmp_path)
    job = JobSpec(name="lint")

    with provisioned(provisioner, job, "lint", None, timeout=5.0) as (target, channel):
        workdir = Path(target.workdir)
        assert workdir.is_dir()
        assert "bash" in target.tags
        result = channel.run("pwd")
        assert Path(result.stdout.strip()).resolve() == workdir.resolve()

    assert not workdir.exists()


class _DockerStub:
    def __init__(self, probe_failures: int = 0) -> None:
        self.calls: list[list[str]] = []
        self.probe_failures = probe_failures

    def __call__(self, argv, **kwargs):
        argv = list(argv)
        self.calls.append(argv)
        if argv[1] == "run":
            return subprocess.CompletedProcess(argv, 0, "cid123\n", "")
        if argv[1] == "exec" and self.probe_failures:
            self.probe_failures -= 1
            return subprocess.CompletedProcess(argv, 1, "", "container is not running")
        return subprocess.CompletedProcess(argv, 0, "", "")


def test_container_provisioner(monkeypatch: pytest.MonkeyPatch) -> None:
    stub = _DockerStub(probe_failures=1)
    monkeypatch.setattr(subprocess, "run", stub)
    provisioner = ContainerProvisioner(_settings())
    job = JobSpec(name="build", kind="container", image="{os}:{ver}", privileged=True)

    with provisioned(provisioner, job, "build[debian-bullseye]", DEBIAN, timeout=5.0) as (target, channel):
        assert target.handle == "cid123"
        assert "privileged" in target.tags
        assert channel.container == "cid123"

    run_call = stub.calls[0]
    assert run_call[:3] == ["docker", "run", "-d"]
    assert "--privileged" in run_call
    assert run_call[-3:] == ["debian:bullseye", "sleep", "infinity"]
    assert stub.calls[-1] == ["docker", "rm", "-f", "cid123"]


def test_container_run_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        subprocess,
        "run",
        lambda argv, **kwargs: subprocess.CompletedProcess(argv, 125, "", "pull access denied"),
    )
    with pytest.raises(ProvisionError, match="pull access denied"):
        ContainerProvisioner(_settings()).create(JobSpec(name="b"), "b", DEBIAN)


def test_container_run_uses_the_job_provision_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    timeouts: list[float] = []

    def _run(argv, **kwargs):
        timeouts.append(kwargs["timeout"])
        return subprocess.CompletedProcess(argv, 0, "cid123\n", "")

    monkeypatch.setattr(subprocess, "run", _run)
    provisioner = ContainerProvisioner(_settings(provision_timeout=600.0))

    provisioner.create(JobSpec(name="b", kind="container", provision_timeout=45.0), "b", DEBIAN)
    provisioner.create(JobSpec(name="c", kind="container"), "c", DEBIAN)
    assert timeouts == [45.0, 600.0]


class _FakeProcess:
    def __init__(self, exit_status: int | None = None) -> None:
        self.returncode = exit_status
        self.terminated = False

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.returncode = -15

    def wait(self, timeout: float | None = None) -> int | None:
        return self.returncode

    def kill(self) -> None:
        self.returncode = -9


def _vm_target(tmp_path: Path, process: _FakeProcess) -> ExecutionTarget:
    console = tmp_path / "console.log"
    console.write_text("Booting kernel\ncloud-init: waiting for network\n", encoding="utf-8")
    return ExecutionTarget(
        kind=TargetKind.VM,
        name="test[debian-bullseye]",
        entry=DEBIAN,
        address="127.0.0.1",
        port=2222,
        handle=process,
        resources={"scratch": tmp_path, "console": console},
    )


def test_vm_never_reachable_times_out_with_console_tail(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(vm_module, "tcp_ready", lambda host, port, timeout=2.0: False)
    provisioner = QemuProvisioner(_settings())
    target = _vm_target(tmp_path, _FakeProcess())

    with pytest.raises(ProvisionTimeout) as excinfo:
        provisioner.wait_ready(target, timeout=0.1)
    assert "waiting for network" in str(excinfo.value)


def test_vm_exit_during_boot_is_provision_error(tmp_path: Path) -> None:
    provisioner = QemuProvisioner(_settings())
    target = _vm_target(tmp_path, _FakeProcess(exit_status=1))
    with pytest.raises(ProvisionError, match="qemu exited") as excinfo:
        provisioner.wait_ready(target, timeout=5.0)
    assert not isinstance(excinfo.value, ProvisionTimeout)


def test_vm_create_boots_overlay_and_teardown_cleans(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    cloudinit = tmp_path / "cloudinit" / "debian-bullseye"
    cloudinit.mkdir(parents=True)
    (cloudinit / "user-data").write_text("#cloud-config\n", encoding="utf-8")
    (cloudinit / "meta-data").write_text("instance-id: test\n", encoding="utf-8")
    base_image = tmp_path / "debian.qcow2"
    base_image.write_bytes(b"qcow")

    tools: list[list[str]] = []
    booted: list[list[str]] = []
    process = _FakeProcess()
    monkeypatch.setattr(vm_module, "fetch_image", lambda url, cache_dir, timeout=60.0: base_image)
    monkeypatch.setattr(vm_module, "_run_tool", lambda target, argv: tools.append(argv))

    def _popen(argv, **kwargs):
        booted.append(list(argv))
        return process

    monkeypatch.setattr(subprocess, "Popen", _popen)

    provisioner = QemuProvisioner(
        _settings(), tmp_path / "work", cloudinit_root=tmp_path / "cloudinit"
    )
    target = provisioner.create(JobSpec(name="test", kind="vm"), "test[debian-bullseye]", DEBIAN)

    assert [argv[0] for argv in tools] == ["qemu-img", "cloud-localds"]
    assert any(f"hostfwd=tcp:127.0.0.1:{target.port}-:22" in arg for arg in booted[0])
    assert target.workdir == "~"
    scratch = target.resources["scratch"]
    assert scratch.is_dir()

    provisioner.teardown(target)
    assert process.terminated
    assert not scratch.exists()


def test_vm_create_requires_img_and_cloudinit(tmp_path: Path) -> None:
    provisioner = QemuProvisioner(_settings(), tmp_path, cloudinit_root=tmp_path)
    with pytest.raises(ProvisionError, match="no 'img' url"):
        provisioner.create(JobSpec(name="t"), "t", MatrixEntry(os="debian", ver="12"))
    with pytest.raises(ProvisionError, match="missing cloud-init file"):
        provisioner.create(JobSpec(name="t"), "t", DEBIAN)


class _Response:
    def __init__(self, chunks: list[bytes]) -> None:
        self.chunks = chunks

    def __enter__(self) -> "_Response":
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def raise_for_status(self) -> None:
        return None

    def iter_content(self, chunk_size: int):
        yield from self.chunks


def test_fetch_image_downloads_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def _get(url, **kwargs):
        calls.append(url)
        return _Response([b"qc", b"ow"])

    monkeypatch.setattr(requests, "get", _get)
    url = "https://cloud.example.invalid/images/debian-11-generic-amd64.qcow2"
    first = fetch_image(url, tmp_path)
    second = fetch_image(url, tmp_path)

    assert first == second == tmp_path / "debian-11-generic-amd64.qcow2"
    assert first.read_bytes() == b"qcow"
    assert calls == [url]


def test_fetch_image_failure_leaves_no_partial_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _get(url, **kwargs):
        raise requests.ConnectionError("network unreachable")

    monkeypatch.setattr(requests, "get", _get)
    with pytest.raises(ProvisionError, match="image download failed"):
        fetch_image("https://example.invalid/a.qcow2", tmp_path)
    assert list(tmp_path.iterdir()) == []


def test_build_provisioners_defaults_and_override(tmp_path: Path) -> None:
    defaults = build_provisioners(_settings(), tmp_path)
    assert isinstance(defaults["bare"], BareProvisioner)
    assert isinstance(defaults["container"], ContainerProvisioner)
    assert isinstance(defaults["vm"], QemuProvisioner)

    settings = _settings(drivers={"vm": "fake_targets:make_fake_provisioner"})
    overridden = build_provisioners(settings, tmp_path)
    assert isinstance(overridden["vm"], FakeProvisioner)


@pytest.mark.parametrize(
    ("ref", "message"),
    [
        ("fake_targets:not_a_provisioner", "expected a Provisioner"),
        ("fake_targets:missing", "not found in module"),
        ("no_such_module_xyz:factory", "failed importing module"),
    ],
)
def test_build_provisioners_rejects_bad_drivers(tmp_path: Path, ref: str, message: str) -> None:
    with pytest.raises(ConfigValidationError, match=message):
        build_provisioners(_settings(drivers={"container": ref}), tmp_path)
