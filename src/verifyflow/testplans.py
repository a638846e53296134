from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from verifyflow.channels import CommandChannel
from verifyflow.config import TestPlanConfig, load_test_plan
from verifyflow.domain import Outcome, TestResult
from verifyflow.errors import TargetUnreachable, TestPlanError

LOGGER = logging.getLogger(__name__)

NOT_RUN_CASE = "(not run)"
PLAN_SUFFIX = ".toml"


@dataclass(frozen=True, slots=True)
class TestCase:
    __test__ = False

    name: str
    run: str
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class TestPlan:
    __test__ = False

    name: str
    path: Path | None
    cases: tuple[TestCase, ...]
    requires: frozenset[str] = frozenset()
    description: str = ""

    @classmethod
    def from_config(cls, config: TestPlanConfig, path: Path | None = None) -> "TestPlan":
        return cls(
            name=config.name,
            path=path,
            cases=tuple(
                TestCase(name=case.name, run=case.run, timeout=case.timeout)
                for case in config.cases
            ),
            requires=frozenset(config.requires),
            description=config.description,
        )

    @classmethod
    def load(cls, path: str | Path) -> "TestPlan":
        plan_path = Path(path)
        return cls.from_config(load_test_plan(plan_path), plan_path)

    def runnable_on(self, tags: Iterable[str]) -> bool:
        return self.requires.issubset(tags)


def resolve_plan_path(reference: str, root: Path | None) -> Path:
    """Resolve a plan reference against ``root``; ``.toml`` may be omitted."""
    candidate = Path(reference).expanduser()
    if not candidate.is_absolute():
        if root is None:
            raise TestPlanError(
                f"test plan '{reference}' is relative but pipeline.testplan_root is not set"
            )
        candidate = root / candidate
    if not candidate.is_file() and not candidate.suffix:
        with_suffix = candidate.with_suffix(PLAN_SUFFIX)
        if with_suffix.is_file():
            return with_suffix
    if not candidate.is_file():
        raise TestPlanError(f"test plan file not found: '{candidate}'")
    return candidate


def load_plans(references: Sequence[str], root: Path | None) -> tuple[TestPlan, ...]:
    """Load plans in the literal order given."""
    return tuple(TestPlan.load(resolve_plan_path(ref, root)) for ref in references)


def select_plans(
    plans: Sequence[TestPlan],
    tags: Iterable[str],
    log: Callable[[str], None] | None = None,
) -> tuple[TestPlan, ...]:
    carried = frozenset(tags)
    selected: list[TestPlan] = []
    for plan in plans:
        if plan.runnable_on(carried):
            selected.append(plan)
            continue
        missing = ", ".join(sorted(plan.requires - carried))
        message = f"excluding test plan '{plan.name}': target lacks {missing}"
        LOGGER.info(message)
        if log is not None:
            log(message)
    return tuple(selected)


def _outcome_for(exit_status: int, timed_out: bool) -> Outcome:
    if timed_out:
        return Outcome.ERROR
    return Outcome.PASS if exit_status == 0 else Outcome.FAIL


class TestPlanRunner:
    """Runs plans case by case over one channel.

    A failing or erroring case never stops later cases or plans. When the
    target is lost, the interrupted case is recorded as an error and every
    plan that had not started yet gets one synthetic error result.
    """

    __test__ = False

    def __init__(self, *, default_timeout: float | None = None) -> None:
        self.default_timeout = default_timeout
        self.lost: TargetUnreachable | None = None

    def _run_case(self, channel: CommandChannel, plan: TestPlan, case: TestCase) -> TestResult:
        timeout = case.timeout if case.timeout is not None else self.default_timeout
        result = channel.run(case.run, timeout=timeout)
        log = result.stdout
        if result.stderr:
            log = f"{log}\n{result.stderr}" if log else result.stderr
        return TestResult(
            plan=plan.name,
            case=case.name,
            outcome=_outcome_for(result.exit_status, result.timed_out),
            log=log,
            exit_status=result.exit_status,
            duration_seconds=result.duration_seconds,
        )

    def execute(
        self,
        channel: CommandChannel,
        plans: Sequence[TestPlan],
        results_dir: Path | None = None,
    ) -> list[TestResult]:
        results: list[TestResult] = []
        lost: TargetUnreachable | None = None
        self.lost = None
        for plan in plans:
            if lost is not None:
                results.append(
                    TestResult(
                        plan=plan.name,
                        case=NOT_RUN_CASE,
                        outcome=Outcome.ERROR,
                        log=f"plan not run: {lost}",
                        synthetic=True,
                    )
                )
                continue
            LOGGER.debug("running test plan '%s' (%d cases)", plan.name, len(plan.cases))
            for case in plan.cases:
                try:
                    results.append(self._run_case(channel, plan, case))
                except TargetUnreachable as exc:
                    LOGGER.warning("target lost during %s/%s: %s", plan.name, case.name, exc)
                    lost = exc
                    self.lost = exc
                    results.append(
                        TestResult(plan=plan.name, case=case.name, outcome=Outcome.ERROR, log=str(exc))
                    )
                    break
        if results_dir is not None:
            write_results(results, results_dir)
        return results


def write_results(results: Sequence[TestResult], results_dir: Path) -> Path:
    """Write ``<plan>/<case>.log`` files plus a ``results.json`` summary."""
    results_dir.mkdir(parents=True, exist_ok=True)
    for result in results:
        if result.synthetic:
            continue
        log_path = results_dir / _file_safe(result.plan) / f"{_file_safe(result.case)}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(result.log, encoding="utf-8")
    counts = {outcome.value: 0 for outcome in Outcome}
    for result in results:
        counts[result.outcome.value] += 1
    summary_path = results_dir / "results.json"
    summary_path.write_text(
        json.dumps(
            {"counts": counts, "results": [result.to_dict() for result in results]},
            indent=2,
        ),
        encoding="utf-8",
    )
    return summary_path


def _file_safe(value: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in value)
