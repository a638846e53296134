from __future__ import annotations

from verifyflow.report.aggregate import aggregate
from verifyflow.report.models import JobRunReport, Report, TestCaseReport
from verifyflow.report.render import render_report_markdown
from verifyflow.report.write import jobs_table, load_report, results_table, write_report

__all__ = [
    "JobRunReport",
    "Report",
    "TestCaseReport",
    "aggregate",
    "jobs_table",
    "load_report",
    "render_report_markdown",
    "results_table",
    "write_report",
]
