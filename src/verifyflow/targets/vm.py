from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import tempfile
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from urllib.parse import urlparse

import requests

from verifyflow.channels import CommandChannel, SSHChannel
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

_DOWNLOAD_CHUNK = 1 << 20


def fetch_image(url: str, cache_dir: Path, *, timeout: float = 60.0) -> Path:
    """Download ``url`` into ``cache_dir`` once; later calls reuse the cached file."""
    filename = Path(urlparse(url).path).name
    if not filename:
        raise ProvisionError(url, "image url has no file name")
    cache_dir.mkdir(parents=True, exist_ok=True)
    cached = cache_dir / filename
    if cached.is_file():
        return cached

    LOGGER.info("downloading guest image %s", url)
    fd, tmp_name = tempfile.mkstemp(dir=cache_dir, suffix=".part")
    try:
        with os.fdopen(fd, "wb") as handle, requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=_DOWNLOAD_CHUNK):
                handle.write(chunk)
        os.replace(tmp_name, cached)
    except requests.RequestException as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise ProvisionError(url, f"image download failed: {exc}") from exc
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return cached


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def tcp_ready(host: str, port: int, timeout: float = 2.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def _console_tail(target: ExecutionTarget, lines: int = 20) -> str:
    console = target.resources.get("console")
    if console is None or not console.is_file():
        return ""
    text = console.read_text(encoding="utf-8", errors="replace")
    return "\n".join(text.splitlines()[-lines:])


def _run_tool(target: str, argv: list[str]) -> None:
    try:
        completed = subprocess.run(argv, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise ProvisionError(target, f"cannot execute {argv[0]}: {exc}") from exc
    if completed.returncode != 0:
        raise ProvisionError(target, f"{argv[0]} failed: {completed.stderr.strip()}")


class QemuProvisioner(Provisioner):
    """Boots a throw-away qemu guest from a cloud image.

    The matrix entry must carry an ``img`` URL. First-boot parameters come from
    ``<cloudinit_root>/<os>-<ver>/{user-data,meta-data}``. Guests are reached
    over ssh on a forwarded localhost port; ``mem`` and ``cpus`` matrix extras
    size the machine.
    """

    kind = TargetKind.VM
    qemu = "qemu-system-x86_64"

    @property
    def image_cache(self) -> Path:
        return self.settings.image_cache or (self.workspace / "images")

    def _seed_sources(self, run_id: str, entry: MatrixEntry) -> tuple[Path, Path]:
        if self.cloudinit_root is None:
            raise ProvisionError(run_id, "pipeline.cloudinit_root is not configured")
        base = self.cloudinit_root / f"{entry.os}-{entry.ver}"
        user_data, meta_data = base / "user-data", base / "meta-data"
        for path in (user_data, meta_data):
            if not path.is_file():
                raise ProvisionError(run_id, f"missing cloud-init file '{path}'")
        return user_data, meta_data

    def create(self, job: JobSpec, run_id: str, entry: MatrixEntry | None) -> ExecutionTarget:
        if entry is None:
            raise ProvisionError(run_id, "vm targets need a matrix entry with 'os' and 'ver'")
        values = entry.values()
        url = values.get("img")
        if not url:
            raise ProvisionError(run_id, f"matrix entry {entry.label} has no 'img' url")
        user_data, meta_data = self._seed_sources(run_id, entry)
        base_image = fetch_image(url, self.image_cache)

        scratch = self.workspace / "vms" / safe_name(run_id)
        shutil.rmtree(scratch, ignore_errors=True)
        scratch.mkdir(parents=True)
        overlay = scratch / "overlay.qcow2"
        seed = scratch / "seed.img"
        console = scratch / "console.log"
        try:
            _run_tool(
                run_id,
                [
                    "qemu-img", "create", "-f", "qcow2",
                    "-F", values.get("format", "qcow2"),
                    "-b", str(base_image.resolve()), str(overlay),
                ],
            )
            _run_tool(run_id, ["cloud-localds", str(seed), str(user_data), str(meta_data)])
            port = free_port()
            argv = [
                self.qemu,
                "-machine", "accel=kvm:tcg",
                "-m", values.get("mem", "2048"),
                "-smp", values.get("cpus", "2"),
                "-nographic",
                "-drive", f"file={overlay},if=virtio,format=qcow2",
                "-drive", f"file={seed},if=virtio,format=raw",
                "-netdev", f"user,id=net0,hostfwd=tcp:127.0.0.1:{port}-:22",
                "-device", "virtio-net-pci,netdev=net0",
            ]
            with console.open("wb") as log:
                process = subprocess.Popen(
                    argv, stdin=subprocess.DEVNULL, stdout=log, stderr=subprocess.STDOUT
                )
        except OSError as exc:
            shutil.rmtree(scratch, ignore_errors=True)
            raise ProvisionError(run_id, f"cannot boot guest: {exc}") from exc
        except ProvisionError:
            shutil.rmtree(scratch, ignore_errors=True)
            raise

        LOGGER.info("booting %s guest for '%s' on ssh port %d", entry.label, run_id, port)
        return ExecutionTarget(
            kind=self.kind,
            name=run_id,
            entry=entry,
            address="127.0.0.1",
            port=port,
            handle=process,
            workdir="~",
            shell=values.get("shell", "bash"),
            tags=capability_tags(self.kind, entry),
            resources={"scratch": scratch, "console": console},
        )

    def _ssh(self, target: ExecutionTarget) -> SSHChannel:
        return SSHChannel(
            target.name,
            target.address or "127.0.0.1",
            port=target.port or 22,
            user=self.settings.ssh_user,
            key=self.settings.ssh_key,
            shell=target.shell,
            default_timeout=self.settings.command_timeout,
        )

    def wait_ready(self, target: ExecutionTarget, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        probe = self._ssh(target)
        while time.monotonic() < deadline:
            process = target.handle
            if process is not None and process.poll() is not None:
                raise ProvisionError(
                    target.name, f"qemu exited with status {process.returncode} during boot"
                )
            remaining = max(deadline - time.monotonic(), 0.1)
            host = target.address or "127.0.0.1"
            if tcp_ready(host, target.port or 22, timeout=min(2.0, remaining)):
                if probe.handshake(timeout=min(remaining, 30.0)):
                    LOGGER.info("guest for '%s' is reachable over ssh", target.name)
                    return
            time.sleep(self.settings.poll_interval)
        detail = "guest never became reachable over ssh"
        tail = _console_tail(target)
        if tail:
            detail = f"{detail}; console tail:\n{tail}"
        raise ProvisionTimeout(target.name, detail, timeout)

    def open_channel(
        self,
        target: ExecutionTarget,
        *,
        env: Mapping[str, str] | None = None,
        secrets: Sequence[str] = (),
    ) -> CommandChannel:
        channel = self._ssh(target)
        channel.env.update(env or {})
        channel.add_secrets(secrets)
        return channel

    def teardown(self, target: ExecutionTarget) -> None:
        process = target.handle
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=30)
            except subprocess.TimeoutExpired:
                LOGGER.warning("qemu for '%s' ignored SIGTERM; killing", target.name)
                process.kill()
                process.wait()
        scratch = target.resources.get("scratch")
        if scratch is not None:
            shutil.rmtree(scratch, ignore_errors=True)
