from __future__ import annotations

import importlib

import pytest


def test_package_init_lazy_attrs_and_dir() -> None:
    vf = importlib.reload(importlib.import_module("verifyflow"))
    vf.__dict__.pop("report", None)

    report_module = vf.report
    assert report_module is not None

    runtime_cls = vf.PipelineRuntime
    assert runtime_cls.__name__ == "PipelineRuntime"
    assert callable(vf.should_run)

    exported = dir(vf)
    assert "PipelineRuntime" in exported
    assert "report" in exported


def test_package_init_unknown_attr_raises() -> None:
    vf = importlib.reload(importlib.import_module("verifyflow"))
    with pytest.raises(AttributeError):
        _ = vf.not_a_real_attr


def test_version_is_exposed() -> None:
    vf = importlib.import_module("verifyflow")
    assert vf.__version__.count(".") == 2
