from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from verifyflow.artifacts import ArtifactStore
from verifyflow.channels import CommandChannel, CommandResult
from verifyflow.config.models import PipelineConfig, StepConfig
from verifyflow.domain import JobRun, JobSpec, MatrixEntry, Outcome, StepRecord
from verifyflow.errors import (
    ArtifactError,
    CommandFailure,
    TargetUnreachable,
    TestPlanError,
    TransferFailure,
    VerifyFlowError,
)
from verifyflow.targets import ExecutionTarget, Provisioner, provisioned
from verifyflow.targets.base import safe_name
from verifyflow.testplans import TestPlanRunner, load_plans, select_plans, write_results

LOGGER = logging.getLogger(__name__)

_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz")
_LOG_TAIL_LINES = 40


@dataclass(slots=True)
class _BodyState:
    failed: bool = False
    lost: bool = False
    error_type: str | None = None
    error_detail: str | None = None

    def mark(self, error_type: str, detail: str) -> None:
        self.failed = True
        if self.error_type is None:
            self.error_type = error_type
            self.error_detail = detail


def _tail(text: str, lines: int = _LOG_TAIL_LINES) -> str:
    return "\n".join(text.splitlines()[-lines:])


def step_applies(step: StepConfig, entry: MatrixEntry | None) -> bool:
    if not step.os:
        return True
    if entry is None:
        return False
    return entry.os in step.os or entry.os_family in step.os


def step_eligible(when: str, failed: bool) -> bool:
    if when == "always":
        return True
    if when == "failure":
        return failed
    return not failed


@dataclass(slots=True)
class JobExecutor:
    """Runs the body of one job run on a freshly provisioned target.

    The body consumes artifacts, executes steps under their ``when`` and
    ``continue_on_error`` policy, publishes declared artifacts, and always
    publishes the results bundle before the run reaches a terminal state.
    """

    config: PipelineConfig
    store: ArtifactStore
    provisioners: Mapping[str, Provisioner]
    environ: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    @property
    def output_dir(self) -> Path:
        return self.config.pipeline.output_dir

    def run_dir(self, run: JobRun) -> Path:
        return self.output_dir / "runs" / safe_name(run.id)

    def job_env(self, spec: JobSpec, run: JobRun) -> dict[str, str]:
        env = {
            "VERIFYFLOW_JOB": spec.name,
            "VERIFYFLOW_RUN_ID": run.id,
            "VERIFYFLOW_PROJECT": self.config.pipeline.project,
        }
        if run.entry is not None:
            env.update(run.entry.env())
        for key, value in spec.env.items():
            env[key] = run.entry.format(value) if run.entry is not None else value
        return env

    def secret_env(self, spec: JobSpec, run: JobRun) -> dict[str, str]:
        values: dict[str, str] = {}
        for name in spec.secrets:
            value = self.environ.get(name)
            if value is None:
                run.record(f"secret '{name}' is not set in the orchestrator environment")
                continue
            values[name] = value
        return values

    def execute(self, spec: JobSpec, run: JobRun) -> JobRun:
        run.start()
        state = _BodyState()
        run_dir = self.run_dir(run)
        results_dir = run_dir / "results"
        secrets = self.secret_env(spec, run)
        env = {**self.job_env(spec, run), **secrets}
        settings = self.config.runtime
        timeout = spec.provision_timeout or settings.provision_timeout

        provisioner = self.provisioners.get(spec.kind)
        if provisioner is None:
            state.mark("ProvisionError", f"no provisioner for target kind '{spec.kind}'")
            self._publish_results(spec, run, results_dir, state)
            run.fail(state.error_type, state.error_detail)
            return run

        try:
            with provisioned(
                provisioner,
                spec,
                run.id,
                run.entry,
                timeout=timeout,
                retries=settings.provision_retries,
                env=env,
                secrets=tuple(secrets.values()),
            ) as (target, channel):
                run.provisioned = True
                run.target = target.to_dict()
                run.record(f"provisioned {target.kind.value} target '{target.name}'")
                self._body(spec, run, target, channel, state, run_dir, results_dir)
        except VerifyFlowError as exc:
            run.record(str(exc))
            state.mark(type(exc).__name__, str(exc))
        except Exception as exc:
            # the run still ends Failed with its results bundle published
            LOGGER.exception("job run '%s' raised unexpectedly", run.id)
            run.record(f"internal error: {exc}")
            state.mark(type(exc).__name__, str(exc))

        if run.test_results and any(r.outcome is not Outcome.PASS for r in run.test_results):
            bad = sum(1 for r in run.test_results if r.outcome is not Outcome.PASS)
            state.mark("TestFailures", f"{bad} test case(s) did not pass")

        self._publish_results(spec, run, results_dir, state)

        if state.failed:
            run.fail(state.error_type, state.error_detail)
            LOGGER.info("job run '%s' failed: %s", run.id, state.error_detail)
        else:
            run.succeed()
            LOGGER.info("job run '%s' succeeded", run.id)
        return run

    def _body(
        self,
        spec: JobSpec,
        run: JobRun,
        target: ExecutionTarget,
        channel: CommandChannel,
        state: _BodyState,
        run_dir: Path,
        results_dir: Path,
    ) -> None:
        self._consume(spec, run, channel, state, run_dir)
        for step in spec.steps:
            self._step(spec, run, target, channel, step, state, results_dir)
        for item in spec.publish:
            if state.lost or not step_eligible(item.when, state.failed):
                continue
            self._publish(run, channel, item.name, item.path, state, run_dir)

    def _record_result(self, run: JobRun, step: str, result: CommandResult) -> StepRecord:
        status = "succeeded" if result.ok else "failed"
        record = StepRecord(
            name=step,
            status=status,
            exit_status=result.exit_status,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_seconds=result.duration_seconds,
            timed_out=result.timed_out,
        )
        run.steps.append(record)
        run.record(f"[{step}] exit {result.exit_status}{' (timed out)' if result.timed_out else ''}")
        for stream in (result.stdout, result.stderr):
            if stream.strip():
                run.record(_tail(stream))
        return record

    def _consume(
        self,
        spec: JobSpec,
        run: JobRun,
        channel: CommandChannel,
        state: _BodyState,
        run_dir: Path,
    ) -> None:
        if not spec.consumes:
            return
        inbox = run_dir / "inbox"
        try:
            for name in spec.consumes:
                ref = self.store.resolve(name)
                for local in self.store.materialize(ref, inbox / safe_name(name)):
                    channel.push(local, local.name)
                    if spec.extract and local.name.endswith(_ARCHIVE_SUFFIXES):
                        quoted = shlex.quote(local.name)
                        result = channel.run(f"tar xzf {quoted} --strip 1 && rm {quoted}")
                        self._record_result(run, f"extract {local.name}", result)
                        if not result.ok:
                            raise CommandFailure(
                                f"extract {local.name}", result.exit_status, _tail(result.stderr, 5)
                            )
                run.record(f"consumed artifact '{name}' from '{ref.producer}'")
        except TargetUnreachable as exc:
            state.lost = True
            run.record(str(exc))
            state.mark(type(exc).__name__, str(exc))
        except (ArtifactError, CommandFailure, TransferFailure) as exc:
            run.steps.append(StepRecord(name="consume artifacts", status="failed", reason=str(exc)))
            run.record(str(exc))
            state.mark(type(exc).__name__, str(exc))

    def _skip(self, run: JobRun, name: str, reason: str) -> None:
        run.steps.append(StepRecord(name=name, status="skipped", reason=reason))

    def _step(
        self,
        spec: JobSpec,
        run: JobRun,
        target: ExecutionTarget,
        channel: CommandChannel,
        step: StepConfig,
        state: _BodyState,
        results_dir: Path,
    ) -> None:
        if state.lost:
            self._skip(run, step.name, "target unreachable")
            return
        if not step_applies(step, run.entry):
            self._skip(run, step.name, "os filter")
            return
        if not step_eligible(step.when, state.failed):
            self._skip(run, step.name, f"when={step.when}")
            return

        try:
            if step.run is not None:
                timeout = step.timeout or self.config.runtime.command_timeout
                result = channel.run(step.run, timeout=timeout)
                self._record_result(run, step.name, result)
                if result.ok:
                    return
                failure = CommandFailure(step.name, result.exit_status, _tail(result.stderr, 5))
            else:
                failure = self._run_testplans(run, target, channel, step, state, results_dir)
                if failure is None:
                    return
        except TargetUnreachable as exc:
            state.lost = True
            run.steps.append(StepRecord(name=step.name, status="failed", reason=str(exc)))
            run.record(str(exc))
            state.mark(type(exc).__name__, str(exc))
            return

        if step.continue_on_error:
            run.record(f"step '{step.name}' failed; continuing: {failure}")
            return
        state.mark(type(failure).__name__, str(failure))

    def _run_testplans(
        self,
        run: JobRun,
        target: ExecutionTarget,
        channel: CommandChannel,
        step: StepConfig,
        state: _BodyState,
        results_dir: Path,
    ) -> VerifyFlowError | None:
        try:
            plans = load_plans(step.testplans, self.config.pipeline.testplan_root)
        except TestPlanError as exc:
            run.steps.append(StepRecord(name=step.name, status="failed", reason=str(exc)))
            run.record(str(exc))
            return exc
        selected = select_plans(plans, target.tags, run.record)
        runner = TestPlanRunner(default_timeout=step.timeout or self.config.runtime.command_timeout)
        results = runner.execute(channel, selected)
        run.test_results.extend(results)
        write_results(run.test_results, results_dir)

        bad = [r for r in results if r.outcome is not Outcome.PASS]
        run.steps.append(
            StepRecord(
                name=step.name,
                status="failed" if bad else "succeeded",
                reason=f"{len(results) - len(bad)}/{len(results)} cases passed",
            )
        )
        for result in bad:
            run.record(f"[{result.plan}/{result.case}] {result.outcome.value}")
            if result.log.strip():
                run.record(_tail(result.log))
        if runner.lost is not None:
            state.lost = True
            state.mark(type(runner.lost).__name__, str(runner.lost))
            return None
        if bad:
            return CommandFailure(step.name, 1, f"{len(bad)} test case(s) did not pass")
        return None

    def _publish(
        self,
        run: JobRun,
        channel: CommandChannel,
        name_template: str,
        path_template: str,
        state: _BodyState,
        run_dir: Path,
    ) -> None:
        name = run.entry.format(name_template) if run.entry is not None else name_template
        pattern = run.entry.format(path_template) if run.entry is not None else path_template
        outbox = run_dir / "outbox" / safe_name(name)
        try:
            matches = channel.expand(pattern)
            if not matches:
                raise ArtifactError(f"publish '{name}': nothing matches '{pattern}'")
            pulled: list[Path] = []
            for remote in matches:
                local = outbox / Path(remote).name
                channel.pull(remote, local)
                pulled.append(local)
            ref = self.store.publish_paths(run.id, name, pulled, base=outbox)
        except TargetUnreachable as exc:
            state.lost = True
            run.record(str(exc))
            state.mark(type(exc).__name__, str(exc))
            return
        except (ArtifactError, TransferFailure) as exc:
            run.record(str(exc))
            state.mark(type(exc).__name__, str(exc))
            return
        run.artifacts.append(ref)
        run.record(f"published artifact '{name}' ({len(ref.files)} files)")

    def _publish_results(
        self, spec: JobSpec, run: JobRun, results_dir: Path, state: _BodyState
    ) -> None:
        if not spec.results_artifact:
            return
        name = (
            run.entry.format(spec.results_artifact)
            if run.entry is not None
            else spec.results_artifact
        )
        write_results(run.test_results, results_dir)
        (results_dir / "job.log").write_text("\n".join(run.log) + "\n", encoding="utf-8")
        try:
            ref = self.store.publish_paths(run.id, name, [results_dir], base=results_dir)
        except (ArtifactError, OSError) as exc:
            run.record(f"failed publishing results bundle '{name}': {exc}")
            state.mark("ArtifactError", str(exc))
            return
        run.artifacts.append(ref)
