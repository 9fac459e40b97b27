"""NVIDIA System Management (``nvsm``).

One-shot use (``nvsm show health``) and the interactive shell entered by a
bare ``nvsm``. The interactive target path lives in the
:class:`InteractiveState` the shell hands back on every line.
"""

from __future__ import annotations

import logging
from typing import Optional

from clustersim.parser import ParsedCommand, tokenize
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    InteractiveState,
    SimulatorMetadata,
    error,
    gpu_temp,
    handle_help_version,
    human_size,
    resolve_node,
    success,
    usage_error,
)
from clustersim.simulators.dcgmi import health_incidents
from clustersim.state.models import Node

LOGGER = logging.getLogger(__name__)

NVSM_VERSION = "23.09.04"
PROMPT = "nvsm-> "
ROOT_PATH = "/systems/localhost"
TARGETS = ("gpus", "storage", "processors", "memory", "network_adapters")
CHECK_WIDTH = 60


def _check(label: str, healthy: bool, detail: str = "") -> str:
    result = "Healthy" if healthy else "Unhealthy"
    line = f"{label} {'.' * max(CHECK_WIDTH - len(label), 3)} {result}"
    return f"{line}  ({detail})" if detail and not healthy else line


def health_checks(node: Node) -> list[tuple[str, bool, str]]:
    """(label, healthy, detail) rows shared by ``show health`` and ``dump health``."""
    checks = [
        ("Verify installed GPU count", len(node.gpus) > 0, ""),
        (
            "Verify GPUs are accessible on the PCIe bus",
            not any(g.has_fatal_xid for g in node.gpus),
            ", ".join(f"GPU {g.id} fell off the bus" for g in node.gpus if g.has_fatal_xid),
        ),
    ]
    for gpu in node.gpus:
        incidents = health_incidents(gpu)
        failures = [text for severity, text in incidents if severity == "Failure"]
        warnings = [text for severity, text in incidents if severity == "Warning"]
        xids = ", ".join(f"XID {x.code}" for x in gpu.xid_errors)
        checks.append((f"Check GPU {gpu.id} for XID errors", not gpu.xid_errors, xids))
        checks.append((f"Check GPU {gpu.id} health", not failures and not warnings, "; ".join(failures + warnings)))
    down_ports = [f"{h.dev_name} port {p.port_number}" for h in node.hcas for p in h.ports if p.state != "Active"]
    checks.append(("Verify InfiniBand links are up", not down_ports, ", ".join(down_ports)))
    failed_units = [name for name, state in node.services.items() if state == "failed"]
    checks.append(("Verify system services", not failed_units, ", ".join(failed_units)))
    full = [m.mount_point for m in node.storage if m.size_kb and m.used_kb * 100 // m.size_kb >= 95]
    checks.append(("Verify filesystem utilization below 95%", not full, ", ".join(full)))
    return checks


class NvsmSimulator:
    """Simulates ``nvsm`` one-shot commands and its interactive shell."""

    METADATA = SimulatorMetadata(
        name="nvsm",
        version=NVSM_VERSION,
        description="NVIDIA System Management",
        commands=("nvsm",),
    )

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handled = handle_help_version(parsed, context, f"NVSM version {NVSM_VERSION}\n")
        if handled is not None:
            return handled
        node = resolve_node(context)
        if node is None:
            return error(f"nvsm: node {context.current_node} not found")
        if not parsed.args:
            return CommandResult(output="", exit_code=0, prompt=PROMPT)
        return self._run(parsed.args, node, ROOT_PATH)

    def execute_interactive(
        self, line: str, state: InteractiveState, context: CommandContext
    ) -> tuple[CommandResult, Optional[InteractiveState]]:
        words = tokenize(line)
        path = state.selected or ROOT_PATH
        if not words:
            return CommandResult(prompt=PROMPT), state
        if words[0] in ("exit", "quit"):
            return success(""), None
        node = resolve_node(context)
        if node is None:
            return error(f"nvsm: node {context.current_node} not found"), None
        if words[0] == "cd":
            target = self._resolve_path(path, words[1] if len(words) > 1 else ROOT_PATH)
            if target is None:
                return CommandResult(output=f"ERROR:nvsm:Invalid target: {words[1]}", exit_code=1, prompt=PROMPT), state
            return CommandResult(prompt=PROMPT), InteractiveState(state.tool, state.mode, target, PROMPT)
        if words[0] == "pwd":
            return CommandResult(output=f"{path}\n", prompt=PROMPT), state
        result = self._run(words, node, path)
        result.prompt = PROMPT
        return result, state

    def _resolve_path(self, current: str, target: str) -> Optional[str]:
        if target == "..":
            return current.rsplit("/", 1)[0] if current != ROOT_PATH else ROOT_PATH
        path = target if target.startswith("/") else f"{current}/{target}"
        path = path.rstrip("/")
        if path == ROOT_PATH:
            return path
        if path.startswith(ROOT_PATH + "/") and path[len(ROOT_PATH) + 1:].split("/")[0] in TARGETS:
            return path
        return None

    def _run(self, words: list[str], node: Node, path: str) -> CommandResult:
        verb = words[0]
        if verb == "show":
            target = words[1] if len(words) > 1 else path.rsplit("/", 1)[-1]
            return self._show(target, node)
        if verb == "dump" and words[1:2] == ["health"]:
            return self._dump_health(node)
        if verb == "help":
            return success("Verbs: cd, show, dump, exit\nTargets: health, version, " + ", ".join(TARGETS) + "\n")
        return usage_error("nvsm", f"Unknown verb '{verb}'", 1)

    def _show(self, target: str, node: Node) -> CommandResult:
        if target == "health":
            return self._show_health(node)
        if target == "version":
            return success(
                f"NVSM version       : {NVSM_VERSION}\n"
                f"DGX system         : {node.system_type}\n"
                f"Driver version     : {node.nvidia_driver_version}\n"
                f"OS version         : {node.os_version}\n"
            )
        if target == "gpus":
            return self._show_gpus(node)
        if target == "storage":
            blocks = [
                f"{ROOT_PATH}/storage/{i}\nProperties:\n    MountPoint = {m.mount_point}\n"
                f"    Filesystem = {m.filesystem}\n    Size = {human_size(m.size_kb)}\n    Used = {human_size(m.used_kb)}"
                for i, m in enumerate(node.storage)
            ]
            return success("\n\n".join(blocks) + "\n")
        if target == "processors":
            blocks = [
                f"{ROOT_PATH}/processors/CPU{i}\nProperties:\n    Model = {node.cpu_model}\n    Cores = {node.cpu_cores_per_socket}"
                for i in range(node.cpu_sockets)
            ]
            return success("\n\n".join(blocks) + "\n")
        if target == "memory":
            return success(f"{ROOT_PATH}/memory\nProperties:\n    TotalSystemMemoryGiB = {node.ram_total_gb}\n")
        if target == "network_adapters":
            blocks = [
                f"{ROOT_PATH}/network_adapters/{h.dev_name}\nProperties:\n    Model = {h.ca_type}\n"
                f"    FirmwareVersion = {h.firmware_version}\n    PortState = {h.ports[0].state if h.ports else 'N/A'}"
                for h in node.hcas
            ]
            return success("\n\n".join(blocks) + "\n")
        if target == "localhost":
            return success(f"{ROOT_PATH}\nTargets:\n" + "".join(f"    {t}\n" for t in TARGETS))
        return error(f"ERROR:nvsm:Invalid target: {target}", 1)

    def _show_gpus(self, node: Node) -> CommandResult:
        blocks = []
        for gpu in node.gpus:
            lines = [
                f"{ROOT_PATH}/gpus/GPU{gpu.id}",
                "Properties:",
                f"    Inventory_ModelName = {gpu.name}",
                f"    Inventory_UUID = {gpu.uuid}",
                f"    Inventory_PCIeAddress = {gpu.pci_address}",
            ]
            if gpu.has_fatal_xid:
                lines.append("    Stats_TemperatureGPU = N/A")
                lines.append("    Status_Health = Critical (XID 79: GPU has fallen off the bus)")
            else:
                lines.append(f"    Stats_TemperatureGPU = {gpu_temp(gpu)}")
                lines.append(f"    Stats_PowerDraw = {gpu.power_draw:.2f}")
                lines.append(f"    Status_Health = {gpu.health_status}")
            blocks.append("\n".join(lines))
        return success("\n\n".join(blocks) + "\n")

    def _show_health(self, node: Node) -> CommandResult:
        checks = health_checks(node)
        healthy = sum(1 for _, ok, _ in checks if ok)
        lines = [
            "",
            "Info",
            "----",
            f"Hostname                  : {node.hostname}",
            f"Platform                  : {node.system_type}",
            f"NVSM version              : {NVSM_VERSION}",
            "",
            "Checks",
            "------",
        ]
        lines.extend(_check(label, ok, detail) for label, ok, detail in checks)
        overall = "Healthy" if healthy == len(checks) else "Unhealthy"
        lines.extend(
            [
                "",
                "Health Summary",
                "--------------",
                f"{healthy} out of {len(checks)} checks are healthy",
                f"{len(checks) - healthy} out of {len(checks)} checks are unhealthy",
                "",
                f"Overall system status is {overall}",
            ]
        )
        return success("\n".join(lines) + "\n")

    def _dump_health(self, node: Node) -> CommandResult:
        unhealthy = [label for label, ok, _ in health_checks(node) if not ok]
        lines = [
            "Writing output to /tmp/nvsm-health-{}.tar.xz".format(node.hostname),
            "Collecting system log files ... done",
            "Collecting GPU diagnostics ... done",
            f"Health dump captured {len(unhealthy)} unhealthy check(s).",
        ]
        lines.extend(f"  - {label}" for label in unhealthy)
        return success("\n".join(lines) + "\n")
