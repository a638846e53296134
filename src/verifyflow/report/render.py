from __future__ import annotations

from verifyflow.report.models import JobRunReport, Report

_STATE_MARK = {
    "succeeded": "PASS",
    "failed": "FAIL",
    "skipped": "SKIP",
    "running": "RUN",
    "pending": "PEND",
}
_LOG_LINES = 60


def _entry(item: JobRunReport) -> str:
    if item.os is None:
        return "-"
    return f"{item.os}/{item.ver}"


def _duration(item: JobRunReport) -> str:
    if item.duration_seconds is None:
        return "-"
    return f"{item.duration_seconds:.1f}s"


def render_report_markdown(report: Report) -> str:
    status = "succeeded" if report.succeeded else "failed"
    lines = [
        "# Verification Report",
        "",
        f"- Ref: `{report.ref}`",
        f"- Commit: `{report.commit}`",
        f"- Activated: `{str(report.activated).lower()}`",
        f"- Result: **{status}**",
        "",
        "## Job Runs",
        "",
        "| Job | Entry | State | Duration | Detail |",
        "| --- | --- | --- | --- | --- |",
    ]
    for item in report.jobs:
        detail = item.error_detail or item.skip_reason or ""
        detail = detail.splitlines()[0] if detail else ""
        lines.append(
            f"| {item.job} | {_entry(item)} | {_STATE_MARK.get(item.state, item.state)} "
            f"| {_duration(item)} | {detail.replace('|', '/')} |"
        )

    lines.extend(["", "## Test Results"])
    counts = ", ".join(f"{key}={value}" for key, value in report.outcome_counts.items())
    lines.append(f"- Totals: {counts or 'none'}")
    tested = [item for item in report.jobs if item.tests]
    if not tested:
        lines.append("- No test plans ran.")
    for item in tested:
        lines.extend(["", f"### {item.id}"])
        for test in item.tests:
            marker = " (synthetic)" if test.synthetic else ""
            lines.append(f"- `{test.plan}/{test.case}`: {test.outcome}{marker}")

    failed = [item for item in report.jobs if item.state == "failed"]
    lines.extend(["", "## Failure Diagnostics"])
    if not failed:
        lines.append("- No failed job runs.")
    for item in failed:
        lines.extend(["", f"### {item.id}", f"- Error: `{item.error_type}` {item.error_detail or ''}"])
        if item.log:
            lines.extend(["", "```text", *item.log[-_LOG_LINES:], "```"])

    lines.extend(["", "## Gaps"])
    if not report.gaps:
        lines.append("- None.")
    else:
        lines.extend(f"- {gap}" for gap in report.gaps)
    lines.append("")
    return "\n".join(lines)
