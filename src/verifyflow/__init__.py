from __future__ import annotations

from importlib import import_module

from verifyflow.__about__ import __version__

__all__ = [
    "ArtifactStore",
    "JobGraph",
    "PipelineRuntime",
    "TestPlanRunner",
    "activates",
    "aggregate",
    "create_source_archive",
    "load_pipeline_config",
    "should_run",
    "write_report",
    "__version__",
]

_LAZY_IMPORTS: dict[str, tuple[str, str]] = {
    "ArtifactStore": ("verifyflow.artifacts", "ArtifactStore"),
    "create_source_archive": ("verifyflow.artifacts", "create_source_archive"),
    "load_pipeline_config": ("verifyflow.config", "load_pipeline_config"),
    "activates": ("verifyflow.gating", "activates"),
    "should_run": ("verifyflow.gating", "should_run"),
    "JobGraph": ("verifyflow.graph", "JobGraph"),
    "aggregate": ("verifyflow.report", "aggregate"),
    "write_report": ("verifyflow.report", "write_report"),
    "PipelineRuntime": ("verifyflow.runtime", "PipelineRuntime"),
    "TestPlanRunner": ("verifyflow.testplans", "TestPlanRunner"),
}

_SUBMODULES = {
    "artifacts",
    "channels",
    "config",
    "gating",
    "graph",
    "report",
    "targets",
    "testplans",
}


def __getattr__(name: str) -> object:
    if name in _SUBMODULES:
        module = import_module(f"verifyflow.{name}")
        globals()[name] = module
        return module

    target = _LAZY_IMPORTS.get(name)
    if target is None:
        raise AttributeError(f"module 'verifyflow' has no attribute '{name}'")
    module_name, attr_name = target
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
