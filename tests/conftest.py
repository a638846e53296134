from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest
from hypothesis import HealthCheck, settings

from fake_targets import FakeProvisioner

settings.register_profile(
    "ci_smoke",
    max_examples=30,
    derandomize=True,
    deadline=None,
    suppress_health_check=(HealthCheck.too_slow,),
)
settings.register_profile(
    "nightly_deep",
    max_examples=300,
    derandomize=True,
    deadline=None,
    suppress_health_check=(HealthCheck.too_slow,),
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci_smoke"))


@pytest.fixture()
def write_pipeline(tmp_path: Path) -> Callable[[str], Path]:
    def _write(body: str, name: str = "verify.toml") -> Path:
        path = tmp_path / name
        path.write_text(body.strip() + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture()
def testplan_root(tmp_path: Path) -> Path:
    root = tmp_path / "testplans"
    root.mkdir()
    (root / "base.toml").write_text(
        """
name = "base"
description = "smoke checks"

[[cases]]
name = "enum"
run = "xnvme enum"

[[cases]]
name = "info"
run = "xnvme library-info"
""".strip(),
        encoding="utf-8",
    )
    (root / "zns-linux.toml").write_text(
        """
name = "zns-linux"
requires = ["debian"]

[[cases]]
name = "zrwa"
run = "run-zrwa-test"
timeout = 30
""".strip(),
        encoding="utf-8",
    )
    (root / "broken.toml").write_text(
        """
name = "broken"

[[cases]]
name = "fails"
run = "exit-nonzero"
""".strip(),
        encoding="utf-8",
    )
    return root


@pytest.fixture()
def fake_provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture()
def basic_pipeline_path(write_pipeline: Callable[[str], Path], testplan_root: Path) -> Path:
    return write_pipeline(
        f"""
[pipeline]
project = "demo"
testplan_root = "{testplan_root.as_posix()}"
output_dir = "out"

[runtime]
max_workers = 4
provision_timeout = 5
provision_retries = 0
poll_interval = 0.01

[[jobs]]
name = "source-archive"
steps = [{{ name = "pack", run = "make-archive" }}]
publish = [{{ name = "archive-src", path = "demo-*.tar.gz" }}]

[[jobs]]
name = "build-linux"
needs = ["source-archive"]
gate = "ci-build-linux"
kind = "container"
consumes = ["archive-src"]
matrix = [{{ os = "debian", ver = "bullseye" }}, {{ os = "fedora", ver = 36 }}]
steps = [{{ name = "build", run = "meson compile -C builddir" }}]

[[jobs]]
name = "build-and-test"
needs = ["source-archive"]
gate = "ci-test"
kind = "vm"
consumes = ["archive-src"]
results_artifact = "test-results-{{os}}-{{ver}}"
matrix = [{{ os = "debian", ver = "bullseye", img = "https://example.invalid/debian.qcow2" }}]

[[jobs.steps]]
name = "build"
run = "meson compile -C builddir"

[[jobs.steps]]
name = "dump build log"
run = "cat builddir/meson-logs/meson-log.txt"
when = "failure"

[[jobs.steps]]
name = "linux testplans"
testplans = ["base", "zns-linux"]
os = ["debian"]
"""
    )
