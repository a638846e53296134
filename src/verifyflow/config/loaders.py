from __future__ import annotations

from pathlib import Path
from typing import Any

from verifyflow.config.models import PipelineConfig, TestPlanConfig
from verifyflow.errors import ConfigValidationError, TestPlanError

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigValidationError(f"cannot read config file '{path}': {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigValidationError(f"invalid TOML in '{path}': {exc}") from exc


def load_pipeline_config(path: str | Path) -> PipelineConfig:
    config_path = Path(path).expanduser().resolve()
    raw = _read_toml(config_path)
    raw_jobs = raw.get("jobs", [])
    if isinstance(raw_jobs, dict):
        raise ConfigValidationError("'jobs' must be an array of tables ([[jobs]])")
    try:
        config = PipelineConfig.model_validate(raw)
    except Exception as exc:  # pydantic ValidationError
        raise ConfigValidationError(
            f"invalid pipeline config '{config_path}': {exc}"
        ) from exc
    return _resolve_pipeline_paths(config, config_path.parent)


def load_test_plan(path: str | Path) -> TestPlanConfig:
    plan_path = Path(path).expanduser().resolve()
    try:
        raw = _read_toml(plan_path)
    except ConfigValidationError as exc:
        raise TestPlanError(str(exc)) from exc
    raw.setdefault("name", plan_path.stem)
    try:
        return TestPlanConfig.model_validate(raw)
    except Exception as exc:  # pydantic ValidationError
        raise TestPlanError(f"invalid test plan '{plan_path}': {exc}") from exc


def _resolve(path: Path | None, base_dir: Path) -> Path | None:
    if path is None:
        return None
    path = path.expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return path


def _resolve_pipeline_paths(config: PipelineConfig, base_dir: Path) -> PipelineConfig:
    pipeline = config.pipeline.model_copy(
        update={
            "testplan_root": _resolve(config.pipeline.testplan_root, base_dir),
            "cloudinit_root": _resolve(config.pipeline.cloudinit_root, base_dir),
            "output_dir": _resolve(config.pipeline.output_dir, base_dir),
        }
    )
    runtime = config.runtime.model_copy(
        update={
            "image_cache": _resolve(config.runtime.image_cache, base_dir),
            "ssh_key": _resolve(config.runtime.ssh_key, base_dir),
        }
    )
    return config.model_copy(update={"pipeline": pipeline, "runtime": runtime})
