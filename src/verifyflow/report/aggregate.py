from __future__ import annotations

import logging
from datetime import datetime

import polars as pl

from verifyflow.domain import JobRun, JobState, Outcome, PipelineRun, utc_now
from verifyflow.report.models import JobRunReport, Report, TestCaseReport

LOGGER = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _run_gaps(run: JobRun) -> list[str]:
    gaps: list[str] = []
    if not run.terminal:
        gaps.append(f"job run '{run.id}' never reached a terminal state ({run.state.value})")
    if run.state is JobState.FAILED and not run.log:
        gaps.append(f"no log captured for failed job run '{run.id}'")
    for result in run.test_results:
        if result.outcome is not Outcome.PASS and not result.log.strip():
            gaps.append(f"no log captured for {run.id} {result.plan}/{result.case}")
    return gaps


def _report_run(run: JobRun) -> JobRunReport:
    gaps = _run_gaps(run)
    return JobRunReport(
        id=run.id,
        job=run.job,
        state=run.state.value,
        os=run.entry.os if run.entry is not None else None,
        ver=run.entry.ver if run.entry is not None else None,
        started_at=_iso(run.started_at),
        finished_at=_iso(run.finished_at),
        duration_seconds=run.duration_seconds,
        provisioned=run.provisioned,
        skip_reason=run.skip_reason,
        error_type=run.error_type,
        error_detail=run.error_detail,
        steps=tuple(step.to_dict() for step in run.steps),
        tests=tuple(
            TestCaseReport(
                plan=result.plan,
                case=result.case,
                outcome=result.outcome.value,
                exit_status=result.exit_status,
                duration_seconds=round(float(result.duration_seconds), 3),
                synthetic=result.synthetic,
                log=result.log if result.outcome is not Outcome.PASS else "",
            )
            for result in run.test_results
        ),
        artifacts=tuple(ref.name for ref in run.artifacts),
        # passing runs keep only the step summary
        log=tuple(run.log) if run.state is not JobState.SUCCEEDED else (),
        gaps=tuple(gaps),
    )


def _counts(values: list[str], domain: list[str]) -> dict[str, int]:
    counts = {key: 0 for key in domain}
    if not values:
        return counts
    frame = pl.DataFrame({"value": values}).group_by("value").len()
    for row in frame.iter_rows(named=True):
        counts[str(row["value"])] = int(row["len"])
    return counts


def aggregate(pipeline_run: PipelineRun) -> Report:
    """Summarize ``pipeline_run`` keyed by job name and matrix entry.

    Problems while summarizing a single job run are recorded as report gaps
    rather than raised, so a report is always produced.
    """
    jobs: list[JobRunReport] = []
    gaps: list[str] = []
    for run in pipeline_run:
        try:
            item = _report_run(run)
        except Exception as exc:  # keep the report whole if one run is malformed
            LOGGER.exception("could not summarize job run '%s'", getattr(run, "id", "?"))
            gaps.append(f"job run '{getattr(run, 'id', '?')}' could not be summarized: {exc}")
            continue
        jobs.append(item)
        gaps.extend(item.gaps)

    return Report(
        ref=pipeline_run.ref,
        commit=pipeline_run.commit,
        activated=pipeline_run.activated,
        succeeded=pipeline_run.succeeded and pipeline_run.terminal,
        generated_at_utc=utc_now().isoformat(),
        started_at=_iso(pipeline_run.started_at),
        finished_at=_iso(pipeline_run.finished_at),
        state_counts=_counts([item.state for item in jobs], [state.value for state in JobState]),
        outcome_counts=_counts(
            [test.outcome for item in jobs for test in item.tests],
            [outcome.value for outcome in Outcome],
        ),
        jobs=tuple(jobs),
        gaps=tuple(gaps),
    )
