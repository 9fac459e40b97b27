"""A running scenario: isolated context, injected faults, shell and validator."""

from __future__ import annotations

import logging
from typing import Optional

from clustersim.scenario.context import ScenarioContextManager
from clustersim.scenario.faults import FaultInjectionReport, FaultInjector
from clustersim.scenario.loader import Scenario
from clustersim.shell import ShellSession
from clustersim.simulators.base import CommandResult
from clustersim.state.store import ClusterStateStore
from clustersim.validation.scenario_validator import ScenarioValidator, ValidationResult

LOGGER = logging.getLogger(__name__)


class ScenarioSession:
    """Runs one scenario against a private copy of the cluster.

    Creating the session clones the canonical store into a new context,
    activates it and injects the scenario's faults. Every line executed
    through the session's shell is validated against the current step.
    Call :meth:`end` (or use the session as a context manager) to discard
    the context; the canonical store is never written.

    Args:
        store: Canonical cluster store
        manager: Context manager the scenario context is registered with
        scenario: Scenario to run
        shell: Shell to observe, defaults to a new root shell on the
            scenario's node
    """

    def __init__(
        self,
        store: ClusterStateStore,
        manager: ScenarioContextManager,
        scenario: Scenario,
        shell: Optional[ShellSession] = None,
    ):
        self.store = store
        self.manager = manager
        self.scenario = scenario
        self.context = manager.create_context(scenario.id)
        manager.set_active_context(scenario.id)
        self.injector = FaultInjector(self.context)
        self.fault_report: FaultInjectionReport = self.injector.inject(scenario.faults)
        self.validator = ScenarioValidator(scenario, self.fault_report.applied)
        if shell is None:
            node = scenario.node or (store.cluster.nodes[0].id if store.cluster.nodes else "dgx-00")
            shell = ShellSession(manager, current_node=node)
        self.shell = shell
        self.shell.add_observer(self._observe)
        self.last_validation: Optional[ValidationResult] = None
        self.active = True
        LOGGER.info(
            "Started scenario %s: %d/%d faults applied",
            scenario.id,
            self.fault_report.num_applied,
            self.fault_report.num_faults,
        )

    def _observe(self, line: str, parsed, result: CommandResult) -> None:
        if not self.active or parsed.is_empty:
            return
        self.last_validation = self.validator.validate_command(
            line, result, self.context.get_cluster(), node_id=self.shell.current_node
        )

    def execute(self, line: str) -> CommandResult:
        """Run ``line`` through the session's shell."""
        return self.shell.execute(line)

    @property
    def progress(self) -> float:
        return self.validator.progress

    @property
    def is_complete(self) -> bool:
        return self.validator.is_complete

    def end(self) -> None:
        """Deactivate and destroy the scenario context."""
        if not self.active:
            return
        self.active = False
        self.manager.destroy_context(self.scenario.id)
        LOGGER.info("Ended scenario %s at %.0f%% progress", self.scenario.id, self.progress * 100)

    def __enter__(self) -> "ScenarioSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.end()
