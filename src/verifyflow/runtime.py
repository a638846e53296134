from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

from verifyflow.artifacts import ArtifactStore
from verifyflow.config import PipelineConfig, load_pipeline_config
from verifyflow.domain import JobRun, JobSpec, PipelineRun, job_run_id, utc_now
from verifyflow.errors import RuntimeInitializationError, VerifyFlowError
from verifyflow.executor import JobExecutor
from verifyflow.gating import ActivationRules, activates, should_run
from verifyflow.graph import JobGraph
from verifyflow.report import aggregate, write_report
from verifyflow.targets import Provisioner, build_provisioners

LOGGER = logging.getLogger(__name__)

NOT_ACTIVATED_REASON = "ref not activated"


@dataclass(frozen=True, slots=True)
class PipelineRuntime:
    config: PipelineConfig
    graph: JobGraph
    provisioners: Mapping[str, Provisioner]
    pipeline_config_path: Path | None = None
    environ: Mapping[str, str] | None = None

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        *,
        provisioners: Mapping[str, Provisioner] | None = None,
        pipeline_config_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "PipelineRuntime":
        marker = config.pipeline.selective_marker
        graph = JobGraph.from_specs(JobSpec.from_config(job, marker) for job in config.jobs)
        if provisioners is None:
            provisioners = build_provisioners(
                config.runtime,
                config.pipeline.output_dir / "work",
                cloudinit_root=config.pipeline.cloudinit_root,
            )
        return cls(
            config=config,
            graph=graph,
            provisioners=dict(provisioners),
            pipeline_config_path=pipeline_config_path,
            environ=environ,
        )

    @classmethod
    def from_configs(
        cls,
        pipeline_config_path: str | Path,
        *,
        provisioners: Mapping[str, Provisioner] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "PipelineRuntime":
        pipeline_path = Path(pipeline_config_path).expanduser().resolve()
        try:
            config = load_pipeline_config(pipeline_path)
            return cls.from_config(
                config,
                provisioners=provisioners,
                pipeline_config_path=pipeline_path,
                environ=environ,
            )
        except VerifyFlowError:
            raise
        except Exception as exc:
            raise RuntimeInitializationError(pipeline_path, str(exc)) from exc

    @property
    def output_dir(self) -> Path:
        return self.config.pipeline.output_dir

    def plan(self, ref: str, commit: str) -> PipelineRun:
        """Create one Pending JobRun per job and matrix entry, in graph order."""
        rules = ActivationRules(
            branches=self.config.activation.branches,
            tags=self.config.activation.tags,
        )
        pipeline_run = PipelineRun(ref=ref, commit=commit, activated=activates(ref, rules))
        for name in self.graph.order:
            for entry in self.graph.specs[name].entries():
                pipeline_run.add(JobRun(id=job_run_id(name, entry), job=name, entry=entry))
        return pipeline_run

    def _reset_outputs(self) -> None:
        # work/images is a download cache and survives between runs
        for child in ("artifacts", "runs", "work/targets", "work/vms"):
            shutil.rmtree(self.output_dir / child, ignore_errors=True)

    def run(self, ref: str, commit: str = "", *, write: bool = True) -> PipelineRun:
        pipeline_run = self.plan(ref, commit)
        try:
            if not pipeline_run.activated:
                LOGGER.info("ref '%s' does not activate the pipeline", ref)
                for job_run in pipeline_run:
                    job_run.skip(NOT_ACTIVATED_REASON)
            else:
                self._reset_outputs()
                store = ArtifactStore(self.output_dir / "artifacts")
                executor = JobExecutor(
                    config=self.config,
                    store=store,
                    provisioners=self.provisioners,
                    environ=dict(self.environ) if self.environ is not None else dict(os.environ),
                )
                self._run_waves(pipeline_run, executor)
        finally:
            pipeline_run.finished_at = utc_now()
            if write:
                report = aggregate(pipeline_run)
                pipeline_run.report_files = write_report(report, self.output_dir / "report")
        return pipeline_run

    def _run_waves(self, pipeline_run: PipelineRun, executor: JobExecutor) -> None:
        ref = pipeline_run.ref
        with ThreadPoolExecutor(max_workers=self.config.runtime.max_workers) as pool:
            for index, wave in enumerate(self.graph.waves()):
                futures: dict[Future[JobRun], JobRun] = {}
                for name in wave:
                    spec = self.graph.specs[name]
                    blocker = self.graph.blocking_dependency(pipeline_run, name)
                    for job_run in pipeline_run.runs_for(name):
                        if not should_run(ref, spec.rule):
                            job_run.skip(f"gated: {spec.rule.describe()}")
                        elif blocker is not None:
                            job_run.skip(f"dependency '{blocker.id}' {blocker.state.value}")
                        else:
                            futures[pool.submit(executor.execute, spec, job_run)] = job_run
                LOGGER.info("wave %d: %d job runs started", index, len(futures))
                for future in as_completed(futures):
                    job_run = futures[future]
                    try:
                        future.result()
                    except Exception as exc:
                        LOGGER.exception("job run '%s' crashed", job_run.id)
                        if not job_run.terminal:
                            job_run.record(f"internal error: {exc}")
                            job_run.fail(type(exc).__name__, str(exc))
