"""Scenario contexts, fault injection and scenario files.

``ScenarioSession`` lives in :mod:`clustersim.scenario.session`; it is not
re-exported here because it depends on the shell.
"""

from clustersim.scenario.context import Mutation, ScenarioContext, ScenarioContextManager
from clustersim.scenario.faults import (
    FaultConfig,
    FaultInjectionReport,
    FaultInjector,
    FaultType,
    apply_fault,
    apply_faults_to_context,
    fault_configs,
)
from clustersim.scenario.loader import Scenario, ScenarioStep, load_scenario, scenario_from_dict

__all__ = [
    "FaultConfig",
    "FaultInjectionReport",
    "FaultInjector",
    "FaultType",
    "Mutation",
    "Scenario",
    "ScenarioContext",
    "ScenarioContextManager",
    "ScenarioStep",
    "apply_fault",
    "apply_faults_to_context",
    "fault_configs",
    "load_scenario",
    "scenario_from_dict",
]
