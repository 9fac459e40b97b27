"""Fault injection into scenario contexts.

Turns declarative fault descriptors into concrete state changes on a
ScenarioContext. Six fault classes are supported:
1. xid-error - driver XID record appended to the GPU
2. thermal - GPU temperature raised to a target
3. ecc-error - single/double-bit ECC counters set
4. memory-full - GPU memory nearly exhausted
5. nvlink-failure - NVLink goes down, GPU health degrades to Warning
6. gpu-hang - utilization drops to zero, GPU health becomes Critical

Each applied fault is recorded as exactly one mutation on the context, however
many fields it touches. Faults with malformed values, or naming an unknown
type or a node/GPU the cluster does not have, are logged and skipped.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from clustersim.configs.config_io import save_json_file
from clustersim.scenario.context import ScenarioContext
from clustersim.state import operations as ops
from clustersim.state.models import ClusterConfig
from clustersim.state.xid import get_xid

LOGGER = logging.getLogger(__name__)

DEFAULT_XID = 79
DEFAULT_THERMAL_TEMP = 92.0
# Headroom left free by a memory-full fault (79000 MiB used on an 80 GB part)
MEMORY_FULL_HEADROOM_MIB = 2920

_SEVERITY_NAMES = {
    "critical": "Critical",
    "warning": "Warning",
    "info": "Informational",
    "informational": "Informational",
}


class FaultType(Enum):
    """Types of faults that can be injected."""

    XID_ERROR = "xid-error"
    THERMAL = "thermal"
    ECC_ERROR = "ecc-error"
    MEMORY_FULL = "memory-full"
    NVLINK_FAILURE = "nvlink-failure"
    GPU_HANG = "gpu-hang"


@dataclass
class FaultConfig:
    """One fault to apply to a scenario context."""

    node_id: str
    type: str
    gpu_id: Optional[int] = None
    severity: str = "critical"
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FaultConfig":
        """Build from a descriptor using either camelCase or snake_case keys."""
        gpu_id = data.get("gpu_id", data.get("gpuId"))
        return cls(
            node_id=str(data.get("node_id", data.get("nodeId", ""))),
            type=str(data.get("type", "")),
            gpu_id=int(gpu_id) if gpu_id is not None else None,
            severity=str(data.get("severity", "critical")),
            parameters=dict(data.get("parameters") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "gpu_id": self.gpu_id,
            "type": self.type,
            "severity": self.severity,
            "parameters": dict(self.parameters),
        }

    def param(self, *names: str, default: Any = None) -> Any:
        for name in names:
            if name in self.parameters:
                return self.parameters[name]
        return default


def fault_configs(faults: Optional[List[Any]]) -> List[FaultConfig]:
    """Normalize FaultConfig objects and descriptor dicts, dropping malformed descriptors."""
    configs = []
    for fault in faults or []:
        if not isinstance(fault, FaultConfig):
            try:
                fault = FaultConfig.from_dict(fault)
            except (TypeError, ValueError) as e:
                LOGGER.warning("Ignoring malformed fault descriptor %r: %s", fault, e)
                continue
        configs.append(fault)
    return configs


def normalize_severity(severity: Optional[str]) -> str:
    return _SEVERITY_NAMES.get(str(severity or "").lower(), "Critical")


Step = Callable[[ClusterConfig], bool]


def _xid_steps(fault: FaultConfig, cluster: ClusterConfig) -> List[Step]:
    code = int(fault.param("xid", "code", default=DEFAULT_XID))
    info = get_xid(code)
    severity = info.severity if info else normalize_severity(fault.severity)
    description = fault.param("description", default=info.name if info else None)
    return [lambda c: ops.add_xid_error(c, fault.node_id, fault.gpu_id, code, description, severity)]


def _thermal_steps(fault: FaultConfig, cluster: ClusterConfig) -> List[Step]:
    temp = float(fault.param("targetTemp", "target_temp", "temperature", default=DEFAULT_THERMAL_TEMP))
    return [lambda c: ops.update_gpu(c, fault.node_id, fault.gpu_id, {"temperature": temp})]


def _ecc_steps(fault: FaultConfig, cluster: ClusterConfig) -> List[Step]:
    gpu = ops.find_gpu(cluster, fault.node_id, fault.gpu_id)
    single = int(fault.param("singleBit", "single_bit", default=gpu.ecc_errors.single_bit if gpu else 0))
    double = int(fault.param("doubleBit", "double_bit", default=gpu.ecc_errors.double_bit + 1 if gpu else 1))
    return [lambda c: ops.set_ecc_errors(c, fault.node_id, fault.gpu_id, single, double)]


def _memory_full_steps(fault: FaultConfig, cluster: ClusterConfig) -> List[Step]:
    gpu = ops.find_gpu(cluster, fault.node_id, fault.gpu_id)
    total = gpu.memory_total if gpu else 0
    used = int(fault.param("memoryUsed", "memory_used", default=max(total - MEMORY_FULL_HEADROOM_MIB, 0)))
    return [lambda c: ops.update_gpu(c, fault.node_id, fault.gpu_id, {"memory_used": used})]


def _nvlink_steps(fault: FaultConfig, cluster: ClusterConfig) -> List[Step]:
    link_id = int(fault.param("linkId", "link_id", default=0))
    return [
        lambda c: ops.update_gpu(c, fault.node_id, fault.gpu_id, {"health_status": "Warning"}),
        lambda c: ops.update_nvlink(c, fault.node_id, fault.gpu_id, link_id, {"status": "Down", "tx_errors": 100}),
    ]


def _hang_steps(fault: FaultConfig, cluster: ClusterConfig) -> List[Step]:
    return [
        lambda c: ops.update_gpu(
            c, fault.node_id, fault.gpu_id, {"utilization": 0.0, "health_status": "Critical"}
        )
    ]


FAULT_HANDLERS: Dict[FaultType, Callable[[FaultConfig, ClusterConfig], List[Step]]] = {
    FaultType.XID_ERROR: _xid_steps,
    FaultType.THERMAL: _thermal_steps,
    FaultType.ECC_ERROR: _ecc_steps,
    FaultType.MEMORY_FULL: _memory_full_steps,
    FaultType.NVLINK_FAILURE: _nvlink_steps,
    FaultType.GPU_HANG: _hang_steps,
}


def apply_fault(fault: FaultConfig, context: ScenarioContext) -> bool:
    """Apply a single fault; False when it was skipped."""
    try:
        fault_type = FaultType(fault.type)
    except ValueError:
        LOGGER.warning("Ignoring fault with unknown type %r on %s", fault.type, fault.node_id)
        return False

    cluster = context.get_cluster()
    if cluster.get_node(fault.node_id) is None:
        LOGGER.warning("Ignoring %s fault: node %r not found", fault.type, fault.node_id)
        return False
    if fault.gpu_id is None or ops.find_gpu(cluster, fault.node_id, fault.gpu_id) is None:
        LOGGER.warning("Ignoring %s fault: GPU %r not found on %s", fault.type, fault.gpu_id, fault.node_id)
        return False

    try:
        steps = FAULT_HANDLERS[fault_type](fault, cluster)
    except (TypeError, ValueError) as e:
        LOGGER.warning(
            "Ignoring %s fault on %s: bad parameters %r (%s)", fault.type, fault.node_id, fault.parameters, e
        )
        return False
    applied = context.apply_fault(fault.type, fault.node_id, fault.gpu_id, steps, data=fault.to_dict())
    if applied:
        LOGGER.info("Applied %s fault to %s GPU %s", fault.type, fault.node_id, fault.gpu_id)
    return applied


def apply_faults_to_context(faults: List[Any], context: ScenarioContext) -> int:
    """Apply faults in list order.

    Args:
        faults: FaultConfig objects or descriptor dicts
        context: Scenario context to mutate

    Returns:
        Number of faults applied
    """
    applied = 0
    for fault in fault_configs(faults):
        if apply_fault(fault, context):
            applied += 1
    return applied


@dataclass
class FaultInjectionReport:
    """Outcome of injecting a batch of faults."""

    scenario_id: str
    num_faults: int
    num_applied: int = 0
    num_skipped: int = 0
    applied: List[FaultConfig] = field(default_factory=list)
    skipped: List[FaultConfig] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary."""
        return {
            "scenario_id": self.scenario_id,
            "num_faults": self.num_faults,
            "num_applied": self.num_applied,
            "num_skipped": self.num_skipped,
            "applied": [f.to_dict() for f in self.applied],
            "skipped": [f.to_dict() for f in self.skipped],
        }


class FaultInjector:
    """Applies fault batches to a context and reports what happened."""

    def __init__(self, context: ScenarioContext):
        self.context = context
        self.history: List[FaultConfig] = []

    def inject(self, faults: List[Any]) -> FaultInjectionReport:
        """Apply ``faults`` and return a report of applied and skipped ones."""
        report = FaultInjectionReport(scenario_id=self.context.scenario_id, num_faults=len(faults))
        for fault in fault_configs(faults):
            if apply_fault(fault, self.context):
                report.applied.append(fault)
                self.history.append(fault)
            else:
                report.skipped.append(fault)
        report.num_applied = len(report.applied)
        report.num_skipped = report.num_faults - report.num_applied
        return report

    def print_report(self, report: FaultInjectionReport) -> None:
        print("\n" + "=" * 60)
        print(f"FAULT INJECTION: {report.scenario_id}")
        print("=" * 60)
        for fault in report.applied:
            target = f"{fault.node_id} GPU {fault.gpu_id}"
            print(f"[APPLIED] {fault.type:<16} {target}")
        for fault in report.skipped:
            print(f"[SKIPPED] {fault.type:<16} {fault.node_id} GPU {fault.gpu_id}")
        print(f"\n{report.num_applied}/{report.num_faults} faults applied")

    def save_report(self, report: FaultInjectionReport, output_path: str) -> None:
        save_json_file(output_path, report.to_dict())
