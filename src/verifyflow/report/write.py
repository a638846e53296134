from __future__ import annotations

import json
from pathlib import Path

import polars as pl

from verifyflow.errors import ConfigValidationError
from verifyflow.report.models import Report
from verifyflow.report.render import render_report_markdown

_JOBS_SCHEMA = {
    "id": pl.String,
    "job": pl.String,
    "os": pl.String,
    "ver": pl.String,
    "state": pl.String,
    "provisioned": pl.Boolean,
    "duration_seconds": pl.Float64,
    "error_type": pl.String,
    "skip_reason": pl.String,
    "artifact_count": pl.Int64,
}

_TESTS_SCHEMA = {
    "run_id": pl.String,
    "job": pl.String,
    "os": pl.String,
    "ver": pl.String,
    "plan": pl.String,
    "case": pl.String,
    "outcome": pl.String,
    "exit_status": pl.Int64,
    "duration_seconds": pl.Float64,
    "synthetic": pl.Boolean,
}


def jobs_table(report: Report) -> pl.DataFrame:
    rows = [
        {
            "id": item.id,
            "job": item.job,
            "os": item.os,
            "ver": item.ver,
            "state": item.state,
            "provisioned": item.provisioned,
            "duration_seconds": item.duration_seconds,
            "error_type": item.error_type,
            "skip_reason": item.skip_reason,
            "artifact_count": len(item.artifacts),
        }
        for item in report.jobs
    ]
    return pl.DataFrame(rows, schema=_JOBS_SCHEMA)


def results_table(report: Report) -> pl.DataFrame:
    rows = [
        {
            "run_id": item.id,
            "job": item.job,
            "os": item.os,
            "ver": item.ver,
            "plan": test.plan,
            "case": test.case,
            "outcome": test.outcome,
            "exit_status": test.exit_status,
            "duration_seconds": test.duration_seconds,
            "synthetic": test.synthetic,
        }
        for item in report.jobs
        for test in item.tests
    ]
    return pl.DataFrame(rows, schema=_TESTS_SCHEMA)


def write_report(report: Report, output_dir: str | Path) -> dict[str, Path]:
    report_dir = Path(output_dir).expanduser().resolve()
    tables_dir = report_dir / "tables"
    tables_dir.mkdir(parents=True, exist_ok=True)

    files = {
        "report_json": report_dir / "report.json",
        "report_md": report_dir / "report.md",
        "jobs": tables_dir / "jobs.parquet",
        "test_results": tables_dir / "test_results.parquet",
    }
    files["report_json"].write_text(
        json.dumps(report.to_dict(), indent=2, sort_keys=True), encoding="utf-8"
    )
    files["report_md"].write_text(render_report_markdown(report), encoding="utf-8")
    jobs_table(report).write_parquet(files["jobs"])
    results_table(report).write_parquet(files["test_results"])
    return files


def load_report(path: str | Path) -> Report:
    report_path = Path(path).expanduser().resolve()
    if report_path.is_dir():
        report_path = report_path / "report.json"
    try:
        payload = json.loads(report_path.read_text(encoding="utf-8"))
        return Report.from_dict(payload)
    except (OSError, ValueError, KeyError) as exc:
        raise ConfigValidationError(f"cannot load report '{report_path}': {exc}") from exc
