"""Step-by-step validation of a learner's commands against a scenario.

Each step starts incomplete. A command advances the current step when it
matches the step's expected commands (any one of them, or every one with
``require_all``) and, for steps that ask for it, its output and the cluster
state satisfy the inferred or overridden expectations. Completed steps stay
completed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import pandas as pd

from clustersim.scenario.loader import Scenario, ScenarioStep
from clustersim.simulators.base import CommandResult
from clustersim.state.models import ClusterConfig
from clustersim.validation.command_matcher import matched_expected
from clustersim.validation.inference import (
    InferredValidation,
    check_output_field,
    evaluate_state_check,
    infer_validation,
    merge_with_override,
)

LOGGER = logging.getLogger(__name__)

INCOMPLETE = "incomplete"
COMPLETED = "completed"


@dataclass
class StepResult:
    """Progress record of one step."""

    step_id: str
    objective: str
    status: str = INCOMPLETE
    attempts: int = 0
    matched: list[str] = field(default_factory=list)
    progress: float = 0.0
    completed_by: Optional[str] = None
    failures: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "objective": self.objective,
            "status": self.status,
            "attempts": self.attempts,
            "matched": list(self.matched),
            "progress": self.progress,
            "completed_by": self.completed_by,
            "failures": list(self.failures),
        }


@dataclass
class ValidationResult:
    """Outcome of validating one command against the current step."""

    step_id: str
    passed: bool
    progress: float
    matched: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)


def check_expectations(
    expected: InferredValidation,
    result: CommandResult,
    cluster: ClusterConfig,
    node_id: Optional[str] = None,
) -> list[str]:
    """Return one message per expectation the command result violates."""
    failures = []
    if result.exit_code != expected.exit_code:
        failures.append(f"exit code {result.exit_code}, expected {expected.exit_code}")
    for text in expected.output_contains:
        if text not in result.output:
            failures.append(f"output is missing {text!r}")
    for text in expected.output_not_contains:
        if text in result.output:
            failures.append(f"output unexpectedly contains {text!r}")
    for name, expression in expected.field_checks.items():
        if not check_output_field(result.output, expression):
            failures.append(f"no {name} value satisfies {expression!r}")
    if expected.state_checks:
        node = cluster.get_node(node_id) if node_id else (cluster.nodes[0] if cluster.nodes else None)
        for path, expression in expected.state_checks.items():
            if node is None or not evaluate_state_check(cluster, node, path, expression):
                failures.append(f"state {path} does not satisfy {expression!r}")
    return failures


class ScenarioValidator:
    """Drives the step state machine of one scenario."""

    def __init__(self, scenario: Scenario, faults: Optional[Iterable[Any]] = None):
        """Initialize validator.

        Args:
            scenario: Scenario whose steps are validated in order
            faults: Faults used for inference, defaults to the scenario's own
        """
        self.scenario = scenario
        self.faults = list(faults) if faults is not None else list(scenario.faults)
        self.results = {step.id: StepResult(step.id, step.objective) for step in scenario.steps}
        self.current_index = 0

    @property
    def current_step(self) -> Optional[ScenarioStep]:
        if self.current_index >= len(self.scenario.steps):
            return None
        return self.scenario.steps[self.current_index]

    @property
    def is_complete(self) -> bool:
        return all(r.completed for r in self.results.values())

    @property
    def progress(self) -> float:
        """Fraction of completed steps."""
        if not self.results:
            return 1.0
        return sum(1 for r in self.results.values() if r.completed) / len(self.results)

    def _expectations(
        self, step: ScenarioStep, command: str, cluster: ClusterConfig, node_id: Optional[str]
    ) -> Optional[InferredValidation]:
        if step.infer:
            return merge_with_override(infer_validation(command, cluster, self.faults, node_id), step.validation)
        if step.validation:
            return merge_with_override(InferredValidation(), step.validation)
        return None

    def validate_command(
        self,
        command: str,
        result: CommandResult,
        cluster: ClusterConfig,
        node_id: Optional[str] = None,
    ) -> Optional[ValidationResult]:
        """Validate an executed command against the current step.

        Args:
            command: Command line as executed
            result: Its result
            cluster: Cluster state after the command ran
            node_id: Node the command ran on

        Returns:
            The validation outcome, or None when every step is already complete
        """
        step = self.current_step
        if step is None:
            return None
        record = self.results[step.id]
        record.attempts += 1

        matched = matched_expected(command, step.expected_commands)
        if step.expected_commands and not matched:
            return ValidationResult(step.id, False, record.progress)
        for candidate in matched:
            if candidate not in record.matched:
                record.matched.append(candidate)

        failures = []
        expected = self._expectations(step, command, cluster, node_id)
        if expected is not None:
            failures = check_expectations(expected, result, cluster, node_id)
        record.failures = failures

        if step.expected_commands:
            required = len(step.expected_commands) if step.require_all else 1
            record.progress = min(len(record.matched) / required, 1.0)
        else:
            record.progress = 1.0 if not failures else 0.0

        passed = record.progress >= 1.0 and not failures
        if passed:
            record.status = COMPLETED
            record.completed_by = command
            self.current_index += 1
            LOGGER.info("Step %s of %s completed by %r", step.id, self.scenario.id, command)
        elif failures:
            LOGGER.debug("Step %s: %r matched but failed checks: %s", step.id, command, failures)
        return ValidationResult(step.id, passed, record.progress, matched, failures)

    def step_results(self) -> list[StepResult]:
        return [self.results[step.id] for step in self.scenario.steps]

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario_id": self.scenario.id,
            "title": self.scenario.title,
            "progress": self.progress,
            "complete": self.is_complete,
            "steps": [r.to_dict() for r in self.step_results()],
        }

    def to_dataframe(self) -> pd.DataFrame:
        """Step results as a DataFrame, one row per step in scenario order."""
        rows = []
        for record in self.step_results():
            rows.append(
                {
                    "step_id": record.step_id,
                    "objective": record.objective,
                    "status": record.status,
                    "progress": record.progress,
                    "attempts": record.attempts,
                    "matched_commands": "; ".join(record.matched),
                    "completed_by": record.completed_by or "",
                }
            )
        columns = ["step_id", "objective", "status", "progress", "attempts", "matched_commands", "completed_by"]
        return pd.DataFrame(rows, columns=columns)

    def print_report(self, verbose: bool = False) -> None:
        """Print human-readable step progress."""
        print("\n" + "=" * 60)
        print(f"SCENARIO: {self.scenario.id}" + (f" - {self.scenario.title}" if self.scenario.title else ""))
        print("=" * 60)
        for record in self.step_results():
            marker = "[OK]  " if record.completed else "[TODO]"
            print(f"{marker} {record.step_id}: {record.objective}")
            if verbose and record.completed_by:
                print(f"       completed by: {record.completed_by}")
            if verbose and record.failures:
                for failure in record.failures:
                    print(f"       - {failure}")
        completed = sum(1 for r in self.results.values() if r.completed)
        print(f"\n{completed}/{len(self.results)} steps completed ({self.progress * 100:.0f}%)")
