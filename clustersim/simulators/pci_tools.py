"""``lspci`` and ``journalctl``.

``lspci`` lists the GPUs, InfiniBand adapters and NVSwitches of the current
node; a GPU that has fallen off the bus answers config reads with all ones
and shows up as ``rev ff``. ``journalctl -k`` prints the same kernel
messages as ``dmesg``.
"""

from __future__ import annotations

import logging
from typing import Callable

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    handle_help_version,
    kernel_log_lines,
    parse_int,
    resolve_node,
    success,
)
from clustersim.state.hardware import get_hardware_spec
from clustersim.state.models import Node

LOGGER = logging.getLogger(__name__)

PCIUTILS_VERSION = "lspci version 3.7.0"
SYSTEMD_VERSION = "systemd 249 (249.11-0ubuntu3.12)"

_CONNECTX_IDS = {"ConnectX-6": ("101b", "MT28908 Family [ConnectX-6]"), "ConnectX-7": ("1021", "MT2910 Family [ConnectX-7]")}
_PRIORITIES = ("emerg", "alert", "crit", "err", "warning", "notice", "info", "debug")
_UNIT_MESSAGES = {
    "active": ("Started {desc}.",),
    "inactive": ("Stopped {desc}.",),
    "failed": ("{unit}.service: Main process exited, code=exited, status=1/FAILURE", "{unit}.service: Failed with result 'exit-code'."),
}


def pci_devices(node: Node) -> list[tuple[str, str, str]]:
    """(slot, class, description) for every simulated PCI function, by slot."""
    spec = get_hardware_spec(node.system_type)
    devices = []
    for gpu in node.gpus:
        slot = gpu.pci_address.split(":", 1)[1].lower()
        rev = "ff" if gpu.has_fatal_xid else "a1"
        devices.append((slot, "3D controller", f"NVIDIA Corporation Device {spec.gpu_pci_device_id.lower()} (rev {rev})"))
    for hca in node.hcas:
        slot = hca.pci_address.split(":", 1)[1].lower()
        _, family = _CONNECTX_IDS.get(hca.ca_type, ("", hca.ca_type))
        devices.append((slot, "Infiniband controller", f"Mellanox Technologies {family}"))
    for index in range(spec.nvswitch_count):
        devices.append((f"c{index + 4:x}:00.0", "Bridge", "NVIDIA Corporation Device 1af1 (rev a1)"))
    return sorted(devices)


def unit_journal(node: Node, unit: str) -> list[str]:
    state = node.services.get(unit)
    if state is None:
        return []
    desc = unit.replace("-", " ").title()
    return [template.format(desc=desc, unit=unit) for template in _UNIT_MESSAGES.get(state, ())]


class PciToolsSimulator:
    """Simulates ``lspci`` and ``journalctl`` for the current node."""

    METADATA = SimulatorMetadata(
        name="pci-tools",
        version="3.7.0",
        description="PCI listing and system journal",
        commands=("lspci", "journalctl"),
        value_flags=("unit", "priority", "lines"),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "lspci": self._lspci,
            "journalctl": self._journalctl,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"{parsed.base_command}: command not found", 127)
        banner = f"{PCIUTILS_VERSION}\n" if parsed.base_command == "lspci" else f"{SYSTEMD_VERSION}\n"
        handled = handle_help_version(parsed, context, banner, short_help=False, short_version=False)
        if handled is not None:
            return handled
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        return handler(parsed, context, node)

    def _lspci(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        devices = pci_devices(node)
        selector = parsed.get_flag_str("s")
        if selector:
            devices = [d for d in devices if d[0].endswith(selector.lower())]
        vendor = parsed.get_flag_str("d")
        if vendor:
            wanted = vendor.split(":")[0].lower()
            names = {"10de": "NVIDIA", "15b3": "Mellanox"}
            devices = [d for d in devices if names.get(wanted, "?") in d[2]]
        verbose = parsed.has_flag("v", "vv", "vvv")
        lines = []
        for slot, cls, desc in devices:
            lines.append(f"{slot} {cls}: {desc}")
            if verbose:
                broken = "(rev ff)" in desc
                lines.append(f"\tSubsystem: {'Device ffff' if broken else 'NVIDIA Corporation Device 147f'}")
                lines.append("\tFlags: bus master, fast devsel, latency 0" if not broken else "\t!!! Unknown header type 7f")
                lines.append("")
        return success("\n".join(lines) + ("\n" if lines else ""))

    def _journalctl(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        kernel = parsed.has_flag("k", "dmesg")
        unit = parsed.get_flag_str("u", "unit")
        priority = parsed.get_flag_str("p", "priority")
        max_level = len(_PRIORITIES) - 1
        if priority is not None:
            level = parse_int(priority)
            if level is None and priority in _PRIORITIES:
                level = _PRIORITIES.index(priority)
            if level is None or level > max_level:
                return error(f"Failed to parse priority value: {priority}", 1)
            max_level = level

        entries: list[tuple[str, str]] = []
        if unit:
            unit = unit[:-8] if unit.endswith(".service") else unit
            entries.extend(("info", line) for line in unit_journal(node, unit))
            if not entries:
                return success("-- No entries --\n")
            source = unit
        else:
            entries.extend((level, text) for _, level, text in kernel_log_lines(node))
            source = "kernel"
            if not kernel:
                for name in node.services:
                    entries.extend(("info", line) for line in unit_journal(node, name))

        entries = [(level, text) for level, text in entries if _PRIORITIES.index(level) <= max_level]
        count = parse_int(parsed.get_flag_str("n", "lines", default="")) if parsed.has_flag("n", "lines") else None
        if count is not None:
            entries = entries[-count:] if count else []
        if parsed.has_flag("r", "reverse"):
            entries.reverse()

        prefix = f"{node.hostname} {source}:"
        lines = [f"-- Logs begin at boot of {node.hostname} --"]
        lines.extend(f"{prefix} {text}" for _, text in entries)
        if len(lines) == 1:
            lines.append("-- No entries --")
        return success("\n".join(lines) + "\n")
