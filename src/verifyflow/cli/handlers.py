from __future__ import annotations

import argparse
import json
from pathlib import Path

from verifyflow.artifacts import create_source_archive
from verifyflow.config import load_pipeline_config
from verifyflow.domain import JobSpec
from verifyflow.gating import ActivationRules, activates, rule_for, should_run
from verifyflow.graph import JobGraph
from verifyflow.report import load_report, write_report
from verifyflow.runtime import PipelineRuntime

_EXIT_OK = 0
_EXIT_GENERIC = 1


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def handle_run(args: argparse.Namespace) -> int:
    runtime = PipelineRuntime.from_configs(args.pipeline_config)
    pipeline_run = runtime.run(args.ref, args.commit)
    counts: dict[str, int] = {}
    for job_run in pipeline_run:
        counts[job_run.state.value] = counts.get(job_run.state.value, 0) + 1
    _print(
        {
            "ref": pipeline_run.ref,
            "commit": pipeline_run.commit,
            "activated": pipeline_run.activated,
            "succeeded": pipeline_run.succeeded,
            "states": counts,
            "runs": {job_run.id: job_run.state.value for job_run in pipeline_run},
            "report": {key: str(path) for key, path in pipeline_run.report_files.items()},
        }
    )
    return _EXIT_OK if pipeline_run.succeeded else _EXIT_GENERIC


def handle_config_validate(args: argparse.Namespace) -> int:
    cfg = load_pipeline_config(args.pipeline)
    _print(cfg.model_dump(mode="json"))
    return _EXIT_OK


def _load_graph(path: str) -> JobGraph:
    cfg = load_pipeline_config(path)
    marker = cfg.pipeline.selective_marker
    return JobGraph.from_specs(JobSpec.from_config(job, marker) for job in cfg.jobs)


def handle_graph_show(args: argparse.Namespace) -> int:
    graph = _load_graph(args.pipeline)
    jobs = {}
    for name in graph.order:
        spec = graph.specs[name]
        jobs[name] = {
            "needs": list(spec.needs),
            "gate": spec.rule.describe(),
            "kind": spec.kind,
            "matrix": [entry.label for entry in spec.matrix],
            "consumes": list(spec.consumes),
            "publishes": list(spec.published_names()),
        }
    _print({"waves": [list(wave) for wave in graph.waves()], "jobs": jobs})
    return _EXIT_OK


def handle_gate_check(args: argparse.Namespace) -> int:
    if args.gate is not None:
        rule = rule_for(args.gate, args.marker)
        _print({"ref": args.ref, "gate": rule.describe(), "runs": should_run(args.ref, rule)})
        return _EXIT_OK

    cfg = load_pipeline_config(args.pipeline)
    rules = ActivationRules(branches=cfg.activation.branches, tags=cfg.activation.tags)
    marker = cfg.pipeline.selective_marker
    jobs = {
        job.name: should_run(args.ref, rule_for(job.gate, marker)) for job in cfg.jobs
    }
    _print({"ref": args.ref, "activated": activates(args.ref, rules), "jobs": jobs})
    return _EXIT_OK


def handle_archive_create(args: argparse.Namespace) -> int:
    archive = create_source_archive(
        args.source_dir,
        project=args.project,
        version=args.version,
        output_dir=args.output_dir,
    )
    _print({"archive": str(archive)})
    return _EXIT_OK


def handle_report_render(args: argparse.Namespace) -> int:
    report = load_report(args.report)
    source = Path(args.report).expanduser().resolve()
    default_dir = source if source.is_dir() else source.parent
    output_dir = Path(args.output_dir).expanduser() if args.output_dir else default_dir
    files = write_report(report, output_dir)
    _print({key: str(path) for key, path in files.items()})
    return _EXIT_OK if report.succeeded else _EXIT_GENERIC
