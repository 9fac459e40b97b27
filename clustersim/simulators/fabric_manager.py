"""NVSwitch fabric tools: ``nv-fabricmanager`` and ``nvswitch-audit``.

The service state is ``node.services["nvidia-fabricmanager"]``, the same
entry ``systemctl status nvidia-fabricmanager`` reports. NVLink counts come
from the GPUs' link lists, so a link taken down by a fault shows up here and
in ``nvidia-smi nvlink -s`` alike.
"""

from __future__ import annotations

import logging
from typing import Callable

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
from clustersim.state.hardware import get_hardware_spec
from clustersim.state.models import Node

LOGGER = logging.getLogger(__name__)

SERVICE = "nvidia-fabricmanager"
CONFIG_FILE = "/etc/nvidia-fabricmanager/fabricmanager.cfg"
PER_LINK_BANDWIDTH_GBS = 50

_CONFIG = (
    ("General", (("LOG_LEVEL", "4"), ("LOG_FILE_NAME", "/var/log/fabricmanager.log"), ("DAEMONIZE", "1"))),
    ("Fabric", (("FM_STAY_RESIDENT_ON_FAILURES", "0"), ("FABRIC_MODE", "0"), ("FM_CMD_BIND_INTERFACE", "127.0.0.1"), ("FM_CMD_PORT_NUMBER", "6666"))),
    ("NVSwitch", (("ACCESS_LINK_FAILURE_MODE", "0"), ("TRUNK_LINK_FAILURE_MODE", "0"), ("NVSWITCH_FAILURE_MODE", "0"))),
)


def link_counts(node: Node) -> tuple[int, int]:
    """``(active, total)`` NVLinks across the node's GPUs."""
    total = sum(len(gpu.nvlinks) for gpu in node.gpus)
    active = sum(1 for gpu in node.gpus for link in gpu.nvlinks if link.status == "Active")
    return active, total


def fabric_healthy(node: Node) -> bool:
    active, total = link_counts(node)
    return active == total and node.services.get(SERVICE) == "active" and all(g.health_status == "OK" for g in node.gpus)


def nvswitch_uuid(node: Node, index: int) -> str:
    digest = sum(ord(c) for c in node.hostname) * 131 + index
    return f"SWX-{digest:08X}-{index:04X}-{node.id[-2:].upper():0>4}"


class FabricManagerSimulator:
    """Simulates the Fabric Manager CLI and NVSwitch audit for the current node."""

    METADATA = SimulatorMetadata(
        name="nv-fabricmanager",
        version="535.129.03",
        description="NVIDIA Fabric Manager and NVSwitch audit",
        commands=("nv-fabricmanager", "nvswitch-audit"),
    )

    def __init__(self):
        self._actions: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "status": self._status,
            "query": self._query,
            "start": self._service_action,
            "stop": self._service_action,
            "restart": self._service_action,
            "config": self._config,
            "diag": self._diag,
            "topo": self._topo,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        banner = (
            f"Fabric Manager version is : {node.nvidia_driver_version}\n"
            if parsed.base_command == "nv-fabricmanager"
            else f"nvswitch-audit version {node.nvidia_driver_version}\n"
        )
        handled = handle_help_version(parsed, context, banner)
        if handled is not None:
            return handled
        if parsed.base_command == "nvswitch-audit":
            return self._audit(parsed, context, node)
        if parsed.base_command != "nv-fabricmanager":
            return error(f"{parsed.base_command}: command not found", 127)
        if not parsed.args:
            return success(help_text("nv-fabricmanager", context, self._usage()))
        action = self._actions.get(parsed.args[0])
        if action is None:
            return usage_error("nv-fabricmanager", f"unknown subcommand '{parsed.args[0]}'", 1)
        return action(parsed, context, node)

    def _usage(self) -> str:
        return (
            "Usage: nv-fabricmanager [options] <command>\n\n"
            "Commands: status, query [nvswitch|topology|nvlink], start, stop, restart, config, diag, topo\n"
        )

    def _status(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        spec = get_hardware_spec(node.system_type)
        state = node.services.get(SERVICE, "inactive")
        active, total = link_counts(node)
        running = state == "active"
        service_label = {"active": colorize("Running", GREEN), "failed": colorize("Failed", RED)}.get(
            state, colorize("Stopped", YELLOW)
        )
        lines = [
            colorize("NVIDIA Fabric Manager Status", BOLD),
            "-" * 50,
            "",
            f"  Fabric Manager:       {service_label}",
            f"  Service State:        {state}",
            f"  Config File:          {CONFIG_FILE}",
            "",
            f"  System Type:          {node.system_type}",
            f"  GPUs:                 {len(node.gpus)}",
            f"  NVSwitches:           {spec.nvswitch_count}",
            f"  NVLinks Total:        {total}",
            f"  NVLinks Active:       {active}",
            "",
            f"  Overall:              {colorize('Healthy', GREEN) if fabric_healthy(node) else colorize('Degraded', YELLOW)}",
        ]
        if not running:
            lines.append("  Note: GPUs will not be able to run CUDA workloads until the fabric is initialized.")
        return CommandResult(output="\n".join(lines) + "\n", exit_code=0 if running else 3)

    def _query(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if node.services.get(SERVICE) != "active":
            return error(f"Error: failed to connect to Fabric Manager instance ({SERVICE} is not running)", 1)
        kind = parsed.args[1] if len(parsed.args) > 1 else ""
        spec = get_hardware_spec(node.system_type)
        if kind == "nvswitch":
            if spec.nvswitch_count == 0:
                return success("No NVSwitches detected in this system configuration.\n")
            lines = [f"{'NVSwitch':<10}{'UUID':<34}{'State':<8}"]
            lines.extend(f"{i:<10}{nvswitch_uuid(node, i):<34}{'Active':<8}" for i in range(spec.nvswitch_count))
            lines.append("")
            lines.append(f"Total NVSwitches: {spec.nvswitch_count}")
            return success("\n".join(lines) + "\n")
        if kind == "topology":
            lines = [f"System: {node.system_type}", f"Hostname: {node.hostname}", "", "GPU Topology:"]
            for gpu in node.gpus:
                up = sum(1 for link in gpu.nvlinks if link.status == "Active")
                lines.append(f"  GPU {gpu.id}: {gpu.type} - {up}/{len(gpu.nvlinks)} NVLinks active")
            if spec.nvswitch_count:
                ids = ", ".join(str(g.id) for g in node.gpus)
                lines.append("")
                lines.extend(f"  NVSwitch {sw}: Connected to GPUs [{ids}]" for sw in range(spec.nvswitch_count))
            return success("\n".join(lines) + "\n")
        if kind == "nvlink":
            lines = [f"{'GPU':<5}{'Link':<6}{'State':<10}{'Bandwidth':<10}"]
            for gpu in node.gpus:
                for link in gpu.nvlinks:
                    bandwidth = f"{link.speed:g} GB/s" if link.status == "Active" else "N/A"
                    lines.append(f"{gpu.id:<5}{link.link_id:<6}{link.status:<10}{bandwidth:<10}")
            active, total = link_counts(node)
            lines.extend(["", f"Total NVLinks: {total}", f"Active NVLinks: {active}", f"Inactive NVLinks: {total - active}"])
            return success("\n".join(lines) + "\n")
        return usage_error("nv-fabricmanager", "query type must be one of: nvswitch, topology, nvlink", 1)

    def _service_action(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        action = parsed.args[0]
        if action == "stop":
            context.cluster.set_service_state(node.id, SERVICE, "inactive", command=parsed.raw)
            return success("Stopping NVIDIA Fabric Manager...\n" + colorize("NVIDIA Fabric Manager stopped.", YELLOW) + "\n")
        if any(g.has_fatal_xid for g in node.gpus):
            context.cluster.set_service_state(node.id, SERVICE, "failed", command=parsed.raw)
            bad = ", ".join(str(g.id) for g in node.gpus if g.has_fatal_xid)
            return error(
                f"Starting NVIDIA Fabric Manager...\n"
                f"Error: fabric initialization failed: GPU(s) {bad} not accessible on the PCIe bus\n",
                1,
            )
        context.cluster.set_service_state(node.id, SERVICE, "active", command=parsed.raw)
        verb = "restarted" if action == "restart" else "started"
        return success(
            f"{'Restarting' if action == 'restart' else 'Starting'} NVIDIA Fabric Manager...\n"
            "Initializing NVSwitch fabric...\n"
            + colorize(f"NVIDIA Fabric Manager {verb} successfully.", GREEN)
            + "\n"
        )

    def _config(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        option = parsed.args[1] if len(parsed.args) > 1 else "show"
        if option != "show":
            return usage_error("nv-fabricmanager", f"unknown config option '{option}'", 1)
        lines = [f"Configuration file: {CONFIG_FILE}", ""]
        for section, entries in _CONFIG:
            lines.append(f"[{section}]")
            lines.extend(f"  {key}={value}" for key, value in entries)
            lines.append("")
        return success("\n".join(lines))

    def _diag(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        spec = get_hardware_spec(node.system_type)
        active, total = link_counts(node)
        running = node.services.get(SERVICE) == "active"
        xids = sum(len(g.xid_errors) for g in node.gpus)

        def verdict(ok: bool, good: str, bad: str) -> str:
            return colorize(good, GREEN) if ok else colorize(bad, YELLOW)

        lines = [
            colorize("NVIDIA Fabric Manager Diagnostics", BOLD),
            "-" * 60,
            "[1/4] Fabric Manager Service",
            f"  Status: {verdict(running, 'Running', 'Not Running')}",
            "[2/4] NVSwitch Devices",
            f"  Detected: {spec.nvswitch_count} NVSwitches",
            "[3/4] NVLink Connections",
            f"  Active Links: {active}/{total}",
            f"  Aggregate Bandwidth: {active * PER_LINK_BANDWIDTH_GBS}GB/s",
            f"  Status: {verdict(active == total, 'All Links Active', 'Some Links Inactive')}",
            "[4/4] Error Logs",
            f"  Recent Errors: {xids}",
            f"  Status: {verdict(xids == 0, 'No Errors', 'Errors Detected')}",
            "-" * 60,
        ]
        passed = running and active == total and xids == 0
        lines.append(f"Diagnostic Summary: {colorize('PASSED', GREEN) if passed else colorize('WARNINGS', YELLOW)}")
        return CommandResult(output="\n".join(lines) + "\n", exit_code=0 if passed else 1)

    def _topo(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        spec = get_hardware_spec(node.system_type)
        if spec.nvswitch_count == 0:
            return success("No NVSwitch fabric detected.\nSystem uses direct GPU-to-GPU NVLink connections.\n")
        switches = " ".join(f"[SW{i}]" for i in range(spec.nvswitch_count))
        gpus = " ".join(f"[G{g.id}]" if g.nvlinks and all(link.status == "Active" for link in g.nvlinks) else f"[G{g.id}!]" for g in node.gpus)
        lines = [
            colorize("NVSwitch Fabric Topology Map", BOLD),
            "",
            f"  {switches}",
            "      | NVLink |",
            f"  {gpus}",
            "",
            "  Legend: [SW#] NVSwitch, [G#] GPU, [G#!] GPU with inactive NVLinks",
            f"  Each GPU connects to all {spec.nvswitch_count} NVSwitches",
        ]
        return success("\n".join(lines) + "\n")

    def _audit(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        """Per-GPU pair NVLink count matrix, as ``nvswitch-audit`` prints it."""
        if node.services.get(SERVICE) != "active":
            return error("nvswitch-audit: fabric manager is not running; NVSwitch state unavailable", 1)
        gpus = node.gpus
        lines = [" " * 12 + "".join(f"GPU {g.id:<3}" for g in gpus)]
        for src in gpus:
            src_up = sum(1 for link in src.nvlinks if link.status == "Active")
            cells = []
            for dst in gpus:
                if dst.id == src.id:
                    cells.append(f"{'X':<7}")
                    continue
                dst_up = sum(1 for link in dst.nvlinks if link.status == "Active")
                cells.append(f"{min(src_up, dst_up):<7}")
            lines.append(f"GPU {src.id:<8}" + "".join(cells).rstrip())
        degraded = [g.id for g in gpus if any(link.status != "Active" for link in g.nvlinks)]
        if degraded:
            lines.append("")
            lines.append(f"Warning: reduced NVLink connectivity on GPU(s) {', '.join(map(str, degraded))}")
        return CommandResult(output="\n".join(lines) + "\n", exit_code=1 if degraded else 0)
