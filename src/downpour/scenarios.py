import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from .config import WorkloadSpec, apportion
from .core import LoadDriver
from .errors import ConfigError, DownpourError, ScenarioError
from .metrics import assert_performance
from .models import OperationKind, Report, RunStatus, StressStep

logger = logging.getLogger(__name__)

Validator = Callable[[Report], None]


def respec(spec: WorkloadSpec, **changes: Any) -> WorkloadSpec:
    """Copy ``spec`` with ``changes`` applied, re-running validation."""
    return WorkloadSpec.model_validate({**spec.model_dump(), **changes})


def performance_check(
    max_p99_s: float | None = None,
    min_rps: float | None = None,
    max_failure_rate: float | None = None,
) -> Validator:
    """Build a Scenario validator from performance limits."""

    def validate(report: Report) -> None:
        assert_performance(report, max_p99_s=max_p99_s, min_rps=min_rps, max_failure_rate=max_failure_rate)

    return validate


# ────────────────────────────────
# Scenarios
# ────────────────────────────────


@dataclass(frozen=True)
class Scenario:
    name: str
    spec: WorkloadSpec
    # Budget of a discarded run against the same target before the measured one
    warmup_s: float = 0.0
    validate: Optional[Validator] = None


class ScenarioRunner:
    """Runs named scenarios one after another and keeps each Report.

    The first scenario that fails to run or fails its validator stops the
    sequence with a ScenarioError; reports of earlier scenarios stay in
    ``results``.
    """

    def __init__(self, scenarios: list[Scenario] | None = None):
        self.scenarios: list[Scenario] = []
        self._results: dict[str, Report] = {}
        for scenario in scenarios or []:
            self.add_scenario(scenario)

    def add_scenario(self, scenario: Scenario) -> None:
        if any(s.name == scenario.name for s in self.scenarios):
            raise ConfigError(f"Duplicate scenario name: {scenario.name!r}")
        self.scenarios.append(scenario)

    @property
    def results(self) -> dict[str, Report]:
        return dict(self._results)

    async def run(self) -> dict[str, Report]:
        for scenario in self.scenarios:
            if scenario.warmup_s > 0:
                await self._warm_up(scenario)

            logger.info(f"Running scenario {scenario.name}")
            try:
                report = await LoadDriver(scenario.spec).run()
            except DownpourError as e:
                raise ScenarioError(scenario.name, e) from e
            self._results[scenario.name] = report

            if scenario.validate is not None:
                try:
                    scenario.validate(report)
                except Exception as e:
                    logger.error(f"Scenario {scenario.name} failed validation: {e}")
                    raise ScenarioError(scenario.name, e) from e
            logger.info(f"Scenario {scenario.name} finished: {report.status.value}")
        return self.results

    async def _warm_up(self, scenario: Scenario) -> None:
        logger.info(f"Warming up scenario {scenario.name} for {scenario.warmup_s}s")
        try:
            await LoadDriver(respec(scenario.spec, global_budget_s=scenario.warmup_s)).run()
        except DownpourError as e:
            logger.warning(f"Warmup of {scenario.name} failed: {e}")


# ────────────────────────────────
# Stress stepping
# ────────────────────────────────


async def run_stress_test(
    base: WorkloadSpec,
    start_workers: int,
    max_workers: int,
    step_size: int,
    step_budget_s: float,
    failure_threshold: float,
) -> list[StressStep]:
    """Run ``base`` at increasing worker counts until the failure rate passes
    ``failure_threshold`` (a fraction) or ``max_workers`` is reached.

    Each step keeps the role proportions of ``base`` and gets its own budget.
    The step that crossed the threshold is the last one and is marked as the
    breaking point.
    """
    if start_workers < 1 or step_size < 1 or max_workers < start_workers:
        raise ConfigError("stress test needs 1 <= start_workers <= max_workers and step_size >= 1")
    if not 0 <= failure_threshold <= 1:
        raise ConfigError("failure_threshold must be a fraction between 0 and 1")

    mix = {OperationKind.WRITE: base.writers, OperationKind.READ: base.readers, OperationKind.LIST: base.listers}
    steps: list[StressStep] = []
    for workers in range(start_workers, max_workers + 1, step_size):
        counts = apportion(workers, mix)
        spec = respec(
            base,
            writers=counts[OperationKind.WRITE],
            readers=counts[OperationKind.READ],
            listers=counts[OperationKind.LIST],
            global_budget_s=step_budget_s,
        )
        logger.info(f"Stress step: {workers} worker(s) for up to {step_budget_s}s")
        report = await LoadDriver(spec).run()

        if report.status is RunStatus.SKIPPED:
            steps.append(StressStep(workers, report))
            logger.warning("Target unreachable, ending stress test")
            break

        broke = report.observed > 0 and report.error_rate > failure_threshold
        steps.append(StressStep(workers, report, breaking_point=broke))
        if broke:
            logger.warning(
                f"Breaking point at {workers} worker(s): failure rate {report.error_rate * 100:.1f}%"
            )
            break
    return steps
