"""``clusterkit``: whole-node assessment across GPU, network, storage, firmware and drivers.

Each check reuses the helper the owning tool uses to judge the same entity
(``dcgmi`` health incidents for GPUs, ``mlxfwmanager``'s firmware table for
HCAs) so an assessment never contradicts a single-tool query.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    BOLD,
    GREEN,
    RED,
    YELLOW,
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    colorize,
    error,
    handle_help_version,
    help_text,
    resolve_node,
    success,
    usage_error,
)
from clustersim.simulators.dcgmi import health_incidents
from clustersim.simulators.mellanox import LATEST_FIRMWARE
from clustersim.state.models import Node

LOGGER = logging.getLogger(__name__)

CATEGORIES = ("gpu", "network", "storage", "firmware", "drivers")
STORAGE_WARN_PERCENT = 90
STORAGE_FAIL_PERCENT = 98
REQUIRED_SERVICES = ("nvidia-fabricmanager", "nvidia-persistenced", "nvidia-dcgm", "openibd")

_STATUS_LABELS = {"pass": colorize("PASS", GREEN), "warning": colorize("WARN", YELLOW), "fail": colorize("FAIL", RED)}


@dataclass
class CheckResult:
    """Outcome of one assessment check."""

    check_name: str
    status: str
    message: str
    details: dict = field(default_factory=dict)


@dataclass
class Assessment:
    node_id: str
    checks: dict[str, list[CheckResult]]

    @property
    def results(self) -> list[CheckResult]:
        return [result for category in self.checks.values() for result in category]

    @property
    def overall_status(self) -> str:
        statuses = {r.status for r in self.results}
        if "fail" in statuses:
            return "failed"
        if "warning" in statuses:
            return "degraded"
        return "healthy"

    def summary(self) -> dict[str, int]:
        results = self.results
        return {
            "total": len(results),
            "passed": sum(1 for r in results if r.status == "pass"),
            "failed": sum(1 for r in results if r.status == "fail"),
            "warnings": sum(1 for r in results if r.status == "warning"),
        }

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "overall_status": self.overall_status,
            "checks": {name: [asdict(r) for r in results] for name, results in self.checks.items()},
            "summary": self.summary(),
        }


def check_gpus(node: Node) -> list[CheckResult]:
    results = []
    for gpu in node.gpus:
        incidents = health_incidents(gpu)
        if not incidents:
            results.append(CheckResult(f"GPU {gpu.id} health", "pass", f"{gpu.name} healthy"))
            continue
        status = "fail" if any(sev == "Failure" for sev, _ in incidents) else "warning"
        results.append(
            CheckResult(f"GPU {gpu.id} health", status, "; ".join(msg for _, msg in incidents), {"gpu_id": gpu.id})
        )
    return results


def check_network(node: Node) -> list[CheckResult]:
    results = []
    for hca in node.hcas:
        for port in hca.ports:
            name = f"{hca.dev_name} port {port.port_number}"
            if port.state != "Active":
                results.append(CheckResult(name, "fail", f"link is {port.state} ({port.physical_state})"))
            elif port.errors.symbol_errors or port.errors.link_downed or port.errors.port_rcv_errors:
                results.append(
                    CheckResult(
                        name,
                        "warning",
                        f"error counters non-zero (SymbolErrors={port.errors.symbol_errors}, "
                        f"LinkDowned={port.errors.link_downed}, RcvErrors={port.errors.port_rcv_errors})",
                    )
                )
            else:
                results.append(CheckResult(name, "pass", f"Active at {port.rate} Gb/s"))
    return results


def check_storage(node: Node) -> list[CheckResult]:
    results = []
    for mount in node.storage:
        percent = 100 * mount.used_kb / mount.size_kb if mount.size_kb else 0.0
        if percent >= STORAGE_FAIL_PERCENT:
            status = "fail"
        elif percent >= STORAGE_WARN_PERCENT:
            status = "warning"
        else:
            status = "pass"
        results.append(CheckResult(f"{mount.mount_point} capacity", status, f"{percent:.0f}% used ({mount.fs_type})"))
    return results


def check_firmware(node: Node) -> list[CheckResult]:
    results = []
    for hca in node.hcas:
        latest = LATEST_FIRMWARE.get(hca.ca_type, hca.firmware_version)
        if hca.firmware_version == latest:
            results.append(CheckResult(f"{hca.dev_name} firmware", "pass", f"{hca.firmware_version} (latest)"))
        else:
            results.append(
                CheckResult(f"{hca.dev_name} firmware", "warning", f"{hca.firmware_version} installed, {latest} available")
            )
    if node.bmc is not None:
        status = "pass" if node.bmc.power_state == "On" else "fail"
        results.append(CheckResult("BMC", status, f"firmware {node.bmc.firmware_version}, chassis power {node.bmc.power_state}"))
    return results


def check_drivers(node: Node) -> list[CheckResult]:
    results = [CheckResult("NVIDIA driver", "pass", f"{node.nvidia_driver_version} (CUDA {node.cuda_version})")]
    for service in REQUIRED_SERVICES:
        state = node.services.get(service, "inactive")
        status = {"active": "pass", "failed": "fail"}.get(state, "warning")
        results.append(CheckResult(f"{service} service", status, state))
    return results


CHECKS: dict[str, Callable[[Node], list[CheckResult]]] = {
    "gpu": check_gpus,
    "network": check_network,
    "storage": check_storage,
    "firmware": check_firmware,
    "drivers": check_drivers,
}


def assess(node: Node, categories: tuple[str, ...] = CATEGORIES) -> Assessment:
    return Assessment(node.id, {name: CHECKS[name](node) for name in categories})


class ClusterKitSimulator:
    """Simulates the ClusterKit node assessment tool."""

    METADATA = SimulatorMetadata(
        name="clusterkit",
        version="1.0.0",
        description="Comprehensive node assessment tool",
        commands=("clusterkit",),
        value_flags=("node",),
    )

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handled = handle_help_version(parsed, context, f"clusterkit version {self.METADATA.version}\n", short_version=False)
        if handled is not None:
            return handled
        if not parsed.args:
            return success(help_text("clusterkit", context))
        node = resolve_node(context, parsed.get_flag_str("node", "n"))
        if node is None:
            return error(f"clusterkit: node {parsed.get_flag_str('node', 'n') or context.current_node} not found", 1)
        action = parsed.args[0]
        if action == "assess":
            return self._report(assess(node), parsed)
        if action == "check":
            category: Optional[str] = parsed.args[1] if len(parsed.args) > 1 else None
            if category is None:
                return usage_error("clusterkit", f"check: missing category (valid: {', '.join(CATEGORIES)})", 1)
            if category not in CHECKS:
                return usage_error("clusterkit", f"check: invalid category '{category}' (valid: {', '.join(CATEGORIES)})", 1)
            return self._report(assess(node, (category,)), parsed)
        return usage_error("clusterkit", f"unknown subcommand '{action}'", 1)

    def _report(self, assessment: Assessment, parsed: ParsedCommand) -> CommandResult:
        exit_code = 1 if assessment.overall_status == "failed" else 0
        if parsed.has_flag("json"):
            return CommandResult(output=json.dumps(assessment.to_dict(), indent=2) + "\n", exit_code=exit_code)
        lines = [
            colorize("ClusterKit Assessment Report", BOLD),
            f"Node: {assessment.node_id}",
            f"Overall Status: {assessment.overall_status.upper()}",
            "",
        ]
        for name, results in assessment.checks.items():
            lines.append(f"{name.upper()}:")
            for result in results:
                if parsed.has_flag("verbose") or result.status != "pass" or len(results) <= 8:
                    lines.append(f"  [{_STATUS_LABELS[result.status]}] {result.check_name}: {result.message}")
            passed = sum(1 for r in results if r.status == "pass")
            if passed and len(results) > 8 and not parsed.has_flag("verbose"):
                lines.append(f"  {passed} check(s) passed")
            lines.append("")
        summary = assessment.summary()
        lines.extend(
            [
                "Summary:",
                f"  Total Checks: {summary['total']}",
                f"  Passed: {summary['passed']}",
                f"  Failed: {summary['failed']}",
                f"  Warnings: {summary['warnings']}",
            ]
        )
        return CommandResult(output="\n".join(lines) + "\n", exit_code=exit_code)
