"""Scenario definitions loaded from YAML."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from clustersim.configs.config_io import load_yaml_file
from clustersim.errors import ScenarioError
from clustersim.scenario.faults import FaultConfig, fault_configs

LOGGER = logging.getLogger(__name__)

_STEP_KEYS = {"id", "objective", "expected_commands", "require_all", "infer", "validation", "hints"}
_SCENARIO_KEYS = {"id", "title", "description", "faults", "steps", "node"}


@dataclass
class ScenarioStep:
    """One objective inside a scenario.

    Attributes:
        id: Step identifier, unique within the scenario
        objective: Text shown to the learner
        expected_commands: Any (or, with ``require_all``, every) command to run
        require_all: Whether every expected command must be executed
        infer: Check command output against inferred expectations
        validation: Per-step override of the inferred expectations
        hints: Optional hints in display order
    """

    id: str
    objective: str = ""
    expected_commands: list[str] = field(default_factory=list)
    require_all: bool = False
    infer: bool = False
    validation: dict[str, Any] = field(default_factory=dict)
    hints: list[str] = field(default_factory=list)


@dataclass
class Scenario:
    id: str
    title: str = ""
    description: str = ""
    node: Optional[str] = None
    faults: list[FaultConfig] = field(default_factory=list)
    steps: list[ScenarioStep] = field(default_factory=list)


def _parse_step(index: int, data: Any) -> ScenarioStep:
    if not isinstance(data, dict):
        raise ScenarioError(f"Step {index} must be a mapping")
    unknown = set(data) - _STEP_KEYS
    if unknown:
        LOGGER.warning("Step %s: ignoring unknown keys %s", index, sorted(unknown))
    expected = data.get("expected_commands") or []
    if isinstance(expected, str):
        expected = [expected]
    return ScenarioStep(
        id=str(data.get("id", f"step-{index + 1}")),
        objective=str(data.get("objective", "")),
        expected_commands=[str(c) for c in expected],
        require_all=bool(data.get("require_all", False)),
        infer=bool(data.get("infer", False)),
        validation=dict(data.get("validation") or {}),
        hints=[str(h) for h in data.get("hints") or []],
    )


def scenario_from_dict(data: dict[str, Any]) -> Scenario:
    """Build a Scenario from a parsed document.

    Raises:
        ScenarioError: If the id or steps are missing or malformed
    """
    if not isinstance(data, dict):
        raise ScenarioError("Scenario document must be a mapping")
    if not data.get("id"):
        raise ScenarioError("Scenario is missing an 'id'")
    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        raise ScenarioError(f"Scenario {data['id']!r} has no steps")
    unknown = set(data) - _SCENARIO_KEYS
    if unknown:
        LOGGER.warning("Scenario %s: ignoring unknown keys %s", data["id"], sorted(unknown))
    faults = data.get("faults") or []
    if not isinstance(faults, list) or not all(isinstance(f, dict) for f in faults):
        raise ScenarioError(f"Scenario {data['id']!r}: 'faults' must be a list of mappings")
    return Scenario(
        id=str(data["id"]),
        title=str(data.get("title", "")),
        description=str(data.get("description", "")),
        node=data.get("node"),
        faults=fault_configs(faults),
        steps=[_parse_step(i, s) for i, s in enumerate(steps)],
    )


def load_scenario(filepath: str) -> Scenario:
    """Load a scenario from a YAML file.

    Raises:
        ScenarioError: If the file is missing, unparsable or malformed
    """
    try:
        data = load_yaml_file(filepath)
    except FileNotFoundError as e:
        raise ScenarioError(f"Scenario file not found: {filepath}") from e
    except yaml.YAMLError as e:
        raise ScenarioError(f"Could not parse {filepath}: {e}") from e
    return scenario_from_dict(data)
