"""Simulated GPU cluster administration tools for hands-on training.

Provides:
- parser (parse, ParsedCommand)
- state (ClusterStateStore, cluster factory, XID catalog, telemetry)
- scenario (ScenarioContext, ScenarioContextManager, fault injection, scenario files)
- simulators (nvidia-smi, dcgmi, Slurm, InfiniBand and the other tool families)
- router (CommandRouter, build_default_router)
- shell (ShellSession)
- validation (command matching, validation inference, ScenarioValidator)
"""

from clustersim.errors import ClusterSimError, ConfigError, DefinitionError, ScenarioError
from clustersim.parser import ParsedCommand, parse
from clustersim.router import CommandRouter, build_default_router
from clustersim.scenario import (
    FaultConfig,
    ScenarioContext,
    ScenarioContextManager,
    apply_faults_to_context,
    load_scenario,
)
from clustersim.scenario.session import ScenarioSession
from clustersim.shell import ShellSession
from clustersim.simulators.base import CommandContext, CommandResult
from clustersim.state import ClusterStateStore, create_custom_cluster, create_default_cluster
from clustersim.validation import ScenarioValidator, infer_validation, validate_command_executed

__version__ = "0.1.0"

__all__ = [
    "ClusterSimError",
    "ClusterStateStore",
    "CommandContext",
    "CommandResult",
    "CommandRouter",
    "ConfigError",
    "DefinitionError",
    "FaultConfig",
    "ParsedCommand",
    "ScenarioContext",
    "ScenarioContextManager",
    "ScenarioError",
    "ScenarioSession",
    "ScenarioValidator",
    "ShellSession",
    "apply_faults_to_context",
    "build_default_router",
    "create_custom_cluster",
    "create_default_cluster",
    "infer_validation",
    "load_scenario",
    "parse",
    "validate_command_executed",
]
