from __future__ import annotations

import argparse

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="verifyflow")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        type=str.upper,
        choices=_LOG_LEVELS,
        help="Logging level for diagnostics written to stderr",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Run the job graph for an activation ref")
    run_parser.add_argument("--pipeline-config", required=True)
    run_parser.add_argument("--ref", required=True, help="e.g. refs/heads/main or refs/tags/v1.0")
    run_parser.add_argument("--commit", default="")

    config_parser = sub.add_parser("config", help="Pipeline config operations")
    config_sub = config_parser.add_subparsers(dest="config_command", required=True)
    config_validate = config_sub.add_parser("validate", help="Validate pipeline config")
    config_validate.add_argument("--pipeline", required=True)

    graph_parser = sub.add_parser("graph", help="Job graph operations")
    graph_sub = graph_parser.add_subparsers(dest="graph_command", required=True)
    graph_show = graph_sub.add_parser("show", help="Validate the job graph and print its waves")
    graph_show.add_argument("--pipeline", required=True)

    gate_parser = sub.add_parser("gate", help="Gating rule operations")
    gate_sub = gate_parser.add_subparsers(dest="gate_command", required=True)
    gate_check = gate_sub.add_parser(
        "check",
        help="Report which jobs a ref activates, from a pipeline or a single gate",
    )
    gate_check.add_argument("--ref", required=True)
    gate_source = gate_check.add_mutually_exclusive_group(required=True)
    gate_source.add_argument("--pipeline")
    gate_source.add_argument("--gate", help="Job-specific marker such as ci-build-linux")
    gate_check.add_argument("--marker", default="ci")

    archive_parser = sub.add_parser("archive", help="Source archive operations")
    archive_sub = archive_parser.add_subparsers(dest="archive_command", required=True)
    archive_create = archive_sub.add_parser(
        "create",
        help="Pack a source tree as <project>-<version>.tar.gz",
    )
    archive_create.add_argument("--source-dir", default=".")
    archive_create.add_argument("--project", required=True)
    archive_create.add_argument("--version", required=True)
    archive_create.add_argument("--output-dir", default="dist")

    report_parser = sub.add_parser("report", help="Report operations")
    report_sub = report_parser.add_subparsers(dest="report_command", required=True)
    report_render = report_sub.add_parser(
        "render",
        help="Re-render report.md and tables from a report.json",
    )
    report_render.add_argument("--report", required=True, help="report.json or its directory")
    report_render.add_argument("--output-dir", default=None)

    return parser
