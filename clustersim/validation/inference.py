"""Validation inference.

Derives what a correct run of a command should look like (exit code,
output substrings, numeric field checks, state checks) from the command
itself, the current cluster state and the faults a scenario injected.
Scenario authors then only write the exceptions, as a per-step override
merged on top of the inferred record.

Rules are grouped per tool family; the first rule whose pattern matches the
normalized command wins. Commands no rule knows get a permissive default
(exit code 0, no output requirements).
"""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Optional

from clustersim.scenario.faults import FaultConfig, fault_configs
from clustersim.parser import parse
from clustersim.simulators.dcgmi import DcgmiSimulator, diag_failures, health_incidents, select_gpus
from clustersim.state.models import ClusterConfig, Node
from clustersim.validation.command_matcher import normalize_command

LOGGER = logging.getLogger(__name__)

DEFAULT_THERMAL_CHECK_C = 85

_COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
}
_EXPRESSION = re.compile(r"^\s*(>=|<=|==|!=|>|<)\s*(-?\d+(?:\.\d+)?)\s*$")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


@dataclass
class InferredValidation:
    """Expected outcome of one command."""

    exit_code: int = 0
    output_contains: list[str] = field(default_factory=list)
    output_not_contains: list[str] = field(default_factory=list)
    field_checks: dict[str, str] = field(default_factory=dict)
    state_checks: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "output_contains": list(self.output_contains),
            "output_not_contains": list(self.output_not_contains),
            "field_checks": dict(self.field_checks),
            "state_checks": dict(self.state_checks),
        }


@dataclass
class ValidationOverride:
    """Per-step override; fields left as None keep the inferred value."""

    exit_code: Optional[int] = None
    output_contains: Optional[list[str]] = None
    output_not_contains: Optional[list[str]] = None
    field_checks: Optional[dict[str, str]] = None
    state_checks: Optional[dict[str, str]] = None

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ValidationOverride":
        """Build from a scenario ``validation`` mapping (snake_case or camelCase keys)."""
        data = data or {}

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return None

        exit_code = pick("exit_code", "exitCode")
        contains = pick("output_contains", "outputContains")
        not_contains = pick("output_not_contains", "outputNotContains")
        field_checks = pick("field_checks", "fieldChecks")
        state_checks = pick("state_checks", "stateChecks")
        return cls(
            exit_code=int(exit_code) if exit_code is not None else None,
            output_contains=[str(s) for s in contains] if contains is not None else None,
            output_not_contains=[str(s) for s in not_contains] if not_contains is not None else None,
            field_checks={str(k): str(v) for k, v in field_checks.items()} if field_checks is not None else None,
            state_checks={str(k): str(v) for k, v in state_checks.items()} if state_checks is not None else None,
        )


@dataclass
class InferenceInput:
    """What a rule sees: the command, its regex match and the scenario state."""

    command: str
    match: re.Match
    cluster: ClusterConfig
    node: Node
    faults: list[FaultConfig]


Rule = Callable[[InferenceInput], InferredValidation]


def _faults_on(data: InferenceInput, fault_type: str) -> list[FaultConfig]:
    return [f for f in data.faults if f.type == fault_type and f.node_id == data.node.id]


# nvidia-smi


def _smi_summary(data: InferenceInput) -> InferredValidation:
    visible = [g for g in data.node.gpus if not g.has_fatal_xid]
    expected = InferredValidation(output_contains=["Driver Version", "CUDA Version"] if visible else [])
    if len(visible) < len(data.node.gpus):
        expected.output_contains += ["GPU(s) not shown due to critical errors", "XID 79"]
    return expected


def _smi_list(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=[f"GPU {gpu.id}:" for gpu in data.node.gpus])


def _smi_single(data: InferenceInput) -> InferredValidation:
    index = int(data.match.group(1))
    gpu = data.node.get_gpu(index)
    if gpu is None:
        return InferredValidation(exit_code=1, output_contains=["Unable to query GPU", "not found"])
    if gpu.has_fatal_xid:
        return InferredValidation(exit_code=1, output_contains=["not accessible", "XID 79"])
    return InferredValidation(output_contains=["Driver Version"])


def _smi_query(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["Product Name", "Driver Version"])


def _smi_query_temperature(data: InferenceInput) -> InferredValidation:
    thermal = _faults_on(data, "thermal")
    if not thermal:
        return InferredValidation()
    target = thermal[0].param("targetTemp", "target_temp", "temperature", default=DEFAULT_THERMAL_CHECK_C)
    return InferredValidation(field_checks={"temperature": f">= {target}"})


def _smi_reset(data: InferenceInput) -> InferredValidation:
    index = int(data.match.group(1))
    gpu = data.node.get_gpu(index)
    if gpu is None:
        return InferredValidation(exit_code=1, output_contains=["not found"])
    if gpu.has_fatal_xid:
        return InferredValidation(
            exit_code=1,
            output_contains=["Unable to reset", "fallen off the bus"],
            output_not_contains=["reset successfully"],
            state_checks={f"gpu.{index}.xid_errors.length": "> 0"},
        )
    if gpu.allocated_job_id is not None:
        return InferredValidation(exit_code=1, output_contains=["in use"])
    return InferredValidation(
        output_contains=["reset successfully"],
        state_checks={f"gpu.{index}.xid_errors.length": "== 0"},
    )


def _smi_nvlink(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["Link"])


# dcgmi


def _dcgmi_usage(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["usage", "DCGM"])


def _dcgmi_discovery(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["GPU ID", f"{len(data.node.gpus)} GPU"])


def _dcgmi_health(data: InferenceInput) -> InferredValidation:
    if any(health_incidents(gpu) for gpu in data.node.gpus):
        return InferredValidation(output_contains=["Warning"])
    return InferredValidation(output_contains=["Healthy"])


def _dcgmi_diag(data: InferenceInput) -> InferredValidation:
    level = int(data.match.group(1))
    if level < 1 or level > 4:
        return InferredValidation(exit_code=1, output_contains=["Invalid", "level"])
    gpus, failure = select_gpus(parse(data.command, DcgmiSimulator.METADATA.value_flags), data.node)
    if failure is not None:
        return InferredValidation(exit_code=1, output_contains=["Error"])
    if any(diag_failures(gpu) for gpu in gpus):
        return InferredValidation(
            exit_code=1, output_contains=["FAIL"], output_not_contains=["All tests passed"]
        )
    return InferredValidation(output_contains=["PASS"])


def _dcgmi_policy(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["Policy"])


def _dcgmi_group(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["Group"])


# Slurm


def _sinfo(data: InferenceInput) -> InferredValidation:
    if re.search(r"\s(?:-o|--format|--output-format)\b", data.command):
        # custom formats drop the default headers
        return InferredValidation()
    return InferredValidation(output_contains=["PARTITION", "NODES", "STATE"])


def _squeue(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["JOBID"])


def _scontrol_node(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["NodeName", "State"])


# InfiniBand


def _ibstat(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["CA", "Port"])


def _ibstatus(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["Infiniband device"])


def _iblinkinfo(data: InferenceInput) -> InferredValidation:
    return InferredValidation(output_contains=["Switch"])


INFERENCE_RULES: dict[str, list[tuple[re.Pattern, Rule]]] = {
    "nvidia-smi": [
        (re.compile(r"^nvidia-smi$"), _smi_summary),
        (re.compile(r"^nvidia-smi -l$"), _smi_list),
        (re.compile(r"^nvidia-smi -i (\d+)$"), _smi_single),
        (re.compile(r"^nvidia-smi (?:--gpu-reset|-r) -i (\d+)"), _smi_reset),
        (re.compile(r"^nvidia-smi -i (\d+) (?:--gpu-reset|-r)\b"), _smi_reset),
        (re.compile(r"^nvidia-smi --query-gpu=\S*temperature"), _smi_query_temperature),
        (re.compile(r"^nvidia-smi -q\b"), _smi_query),
        (re.compile(r"^nvidia-smi nvlink\b"), _smi_nvlink),
    ],
    "dcgmi": [
        (re.compile(r"^dcgmi$"), _dcgmi_usage),
        (re.compile(r"^dcgmi discovery -l\b"), _dcgmi_discovery),
        (re.compile(r"^dcgmi health\b.*\s-c\b"), _dcgmi_health),
        (re.compile(r"^dcgmi diag -r (-?\d+)"), _dcgmi_diag),
        (re.compile(r"^dcgmi policy --set\b"), _dcgmi_policy),
        (re.compile(r"^dcgmi group\b"), _dcgmi_group),
    ],
    "slurm": [
        (re.compile(r"^sinfo\b"), _sinfo),
        (re.compile(r"^squeue\b"), _squeue),
        (re.compile(r"^scontrol show nodes?\b"), _scontrol_node),
    ],
    "infiniband": [
        (re.compile(r"^ibstat\b"), _ibstat),
        (re.compile(r"^ibstatus\b"), _ibstatus),
        (re.compile(r"^iblinkinfo\b"), _iblinkinfo),
    ],
}


def infer_validation(
    command: str,
    cluster: ClusterConfig,
    faults: Optional[Iterable[Any]] = None,
    node_id: Optional[str] = None,
) -> InferredValidation:
    """Infer the expected outcome of ``command``.

    Args:
        command: Command line as the learner typed it (pipes are ignored)
        cluster: Current cluster state
        faults: Faults injected by the scenario (FaultConfig or descriptor dicts)
        node_id: Node the command runs on, defaults to the first node

    Returns:
        The inferred record, or a permissive default when no rule applies
    """
    node = cluster.get_node(node_id) if node_id else (cluster.nodes[0] if cluster.nodes else None)
    if node is None:
        return InferredValidation()
    text = normalize_command(command.split("|", 1)[0])
    for family, rules in INFERENCE_RULES.items():
        for pattern, rule in rules:
            match = pattern.search(text)
            if match:
                LOGGER.debug("Inferred validation for %r from %s rule %s", command, family, pattern.pattern)
                return rule(InferenceInput(text, match, cluster, node, fault_configs(faults)))
    return InferredValidation()


def merge_with_override(inferred: InferredValidation, override: Any = None) -> InferredValidation:
    """Merge a step override onto an inferred record.

    Scalar and list fields are replaced when the override sets them; the
    ``field_checks``/``state_checks`` dicts are merged key-wise with the
    override winning. Returns a new record; ``inferred`` is left untouched.
    """
    if override is None:
        return replace(
            inferred,
            output_contains=list(inferred.output_contains),
            output_not_contains=list(inferred.output_not_contains),
            field_checks=dict(inferred.field_checks),
            state_checks=dict(inferred.state_checks),
        )
    if isinstance(override, dict):
        override = ValidationOverride.from_dict(override)
    return InferredValidation(
        exit_code=override.exit_code if override.exit_code is not None else inferred.exit_code,
        output_contains=list(
            override.output_contains if override.output_contains is not None else inferred.output_contains
        ),
        output_not_contains=list(
            override.output_not_contains
            if override.output_not_contains is not None
            else inferred.output_not_contains
        ),
        field_checks={**inferred.field_checks, **(override.field_checks or {})},
        state_checks={**inferred.state_checks, **(override.state_checks or {})},
    )


def evaluate_field_check(value: Any, expression: str) -> bool:
    """Evaluate ``value`` against an expression such as ``">= 85"``."""
    match = _EXPRESSION.match(expression)
    if match is None:
        return False
    try:
        number = float(value)
    except (TypeError, ValueError):
        return False
    return _COMPARATORS[match.group(1)](number, float(match.group(2)))


def check_output_field(output: str, expression: str) -> bool:
    """True when any number in ``output`` satisfies ``expression``."""
    return any(evaluate_field_check(number, expression) for number in _NUMBER.findall(output))


def resolve_state_path(cluster: ClusterConfig, node: Node, path: str) -> Any:
    """Resolve a dotted state path against ``node``.

    ``gpu.<id>.<attr>[.length]`` reads a GPU attribute; ``node.<attr>`` reads a
    node attribute. Returns None when any part is missing.
    """
    parts = path.split(".")
    if parts[0] == "gpu" and len(parts) >= 3:
        try:
            target: Any = node.get_gpu(int(parts[1]))
        except ValueError:
            return None
        attrs = parts[2:]
    elif parts[0] == "node" and len(parts) >= 2:
        target = node
        attrs = parts[1:]
    else:
        return None
    for attr in attrs:
        if target is None:
            return None
        if attr == "length":
            target = len(target) if hasattr(target, "__len__") else None
        else:
            target = getattr(target, attr, None)
    return target


def evaluate_state_check(cluster: ClusterConfig, node: Node, path: str, expression: str) -> bool:
    """Evaluate a state check; non-comparison expressions compare as strings."""
    value = resolve_state_path(cluster, node, path)
    if value is None:
        return False
    if _EXPRESSION.match(expression):
        return evaluate_field_check(value, expression)
    return str(value).lower() == expression.strip().lower()
