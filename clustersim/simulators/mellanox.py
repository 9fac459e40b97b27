"""Mellanox Firmware Tools (MFT): ``mst``, ``mlxconfig``, ``mlxlink``, ``mlxfwmanager``."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    handle_help_version,
    parse_int,
    resolve_node,
    success,
    usage_error,
)
from clustersim.simulators.infiniband import ca_part_number, find_hca, node_guid, rate_label
from clustersim.state.hardware import ib_standard_name
from clustersim.state.models import HCA, Node

LOGGER = logging.getLogger(__name__)

MFT_VERSION = "mft 4.26.1-3, built on Nov 27 2023, 15:24:35. Git SHA Hash: 8ab2d5b"

# newest firmware available in the simulated update image, per adapter
LATEST_FIRMWARE = {
    "ConnectX-6": "20.39.1002",
    "ConnectX-7": "28.39.1002",
    "ConnectX-8": "40.43.1014",
}

# mlxconfig -q defaults; changes only apply at next boot so they are not kept
DEFAULT_MLXCONFIG = (
    ("LINK_TYPE_P1", "IB(1)"),
    ("SRIOV_EN", "False(0)"),
    ("NUM_OF_VFS", "0"),
    ("ADVANCED_PCI_SETTINGS", "True(1)"),
    ("PCI_WR_ORDERING", "per_mkey(0)"),
    ("ATS_ENABLED", "False(0)"),
    ("ROCE_CC_PRIO_MASK_P1", "255"),
    ("KEEP_IB_LINK_UP_P1", "False(0)"),
)


def mst_device(hca: HCA) -> str:
    return f"/dev/mst/{ca_part_number(hca).lower()}_pciconf{hca.id}"


def resolve_device(node: Node, name: Optional[str]) -> Optional[HCA]:
    """HCA by ``mlx5_N``, MST device path or PCI address (with or without domain)."""
    if not name:
        return None
    hca = find_hca(node, name)
    if hca is not None:
        return hca
    for hca in node.hcas:
        if name == mst_device(hca) or hca.pci_address.endswith(name):
            return hca
    return None


def _mlxconfig_key(name: str) -> Optional[str]:
    for key, _ in DEFAULT_MLXCONFIG:
        if key == name.upper():
            return key
    return None


class MellanoxSimulator:
    """Simulates the MFT utilities for the current node's adapters."""

    METADATA = SimulatorMetadata(
        name="mellanox",
        version="4.26.1",
        description="Mellanox Firmware Tools",
        commands=("mst", "mlxconfig", "mlxlink", "mlxfwmanager"),
        value_flags=("dev", "device", "port"),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "mst": self._mst,
            "mlxconfig": self._mlxconfig,
            "mlxlink": self._mlxlink,
            "mlxfwmanager": self._mlxfwmanager,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"{parsed.base_command}: not an MFT tool", 127)
        handled = handle_help_version(parsed, context, f"{parsed.base_command}, {MFT_VERSION}\n", short_version=False)
        if handled is not None:
            return handled
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        return handler(parsed, context, node)

    def _mst(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        action = parsed.args[0] if parsed.args else ""
        if action == "start":
            return success(
                "Starting MST (Mellanox Software Tools) driver set\n"
                "Loading MST PCI module - Success\n"
                "Loading MST PCI configuration module - Success\n"
                "Create devices\n"
            )
        if action == "stop":
            return success("Stopping MST (Mellanox Software Tools) driver set\nUnloading MST PCI module - Success\n")
        if action == "restart":
            return success("Stopping MST (Mellanox Software Tools) driver set\nStarting MST (Mellanox Software Tools) driver set\n")
        if action != "status":
            return usage_error("mst", "Usage: mst {start|stop|restart|status}")

        lines = [
            "MST modules:",
            "------------",
            "    MST PCI module is not loaded",
            "    MST PCI configuration module loaded",
            "",
            "MST devices:",
            "------------",
        ]
        for hca in node.hcas:
            detail = f"\t\t- PCI configuration cycles access.\n\t\t  domain:bus:dev.fn={hca.pci_address}"
            lines.append(f"{mst_device(hca)}{detail if parsed.has_flag('v') else ''}")
        return success("\n".join(lines) + "\n")

    def _mlxconfig(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        device_name = parsed.get_flag_str("d", "dev")
        if not device_name:
            return error("-E- Please specify a device using -d", 1)
        hca = resolve_device(node, device_name)
        if hca is None:
            return error(f"-E- Failed to open device: {device_name}. No such file or directory", 1)
        # -y swallows the following action word as its value
        words = parsed.args
        yes_value = parsed.get_flag_str("y", "yes")
        if yes_value:
            words = [yes_value] + words
        action = words[0].lower() if words else "q"
        header = [
            "",
            "Device #1:",
            "----------",
            "",
            f"Device type:    {hca.ca_type}",
            f"Name:           {ca_part_number(hca)}A-HDAT_Ax",
            f"Description:    {hca.ca_type} VPI adapter card; single-port QSFP56",
            f"Device:         {device_name}",
            "",
        ]
        if action in ("q", "query"):
            body = ["Configurations:                                      Next Boot"]
            body.extend(f"         {key:<45}{value}" for key, value in DEFAULT_MLXCONFIG)
            return success("\n".join(header + body) + "\n")
        if action == "set":
            assignments = [w for w in words[1:] if "=" in w]
            if not assignments:
                return usage_error("mlxconfig", "set requires PARAM=VALUE")
            body = ["Configurations:                                      Next Boot       New"]
            for assignment in assignments:
                name, _, value = assignment.partition("=")
                key = _mlxconfig_key(name)
                if key is None:
                    return error(f"-E- The Device doesn't support {name} parameter", 1)
                current = dict(DEFAULT_MLXCONFIG)[key]
                body.append(f"         {key:<45}{current:<16}{value}")
            body.append("")
            body.append(" Apply new Configuration? (y/n) [n] : y")
            body.append("Applying... Done!")
            body.append("-I- Please reboot machine to load new configurations.")
            LOGGER.debug("mlxconfig set on %s/%s: %s", node.id, hca.dev_name, assignments)
            return success("\n".join(header + body) + "\n")
        if action == "reset":
            return success("\n".join(header + ["Reset configuration for device " + device_name + "? (y/n) [n] : y", "Applying... Done!"]) + "\n")
        return usage_error("mlxconfig", f"Unknown command: {action}")

    def _mlxlink(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        device_name = parsed.get_flag_str("d", "device")
        if not device_name:
            return error("-E- Device is not specified", 1)
        hca = resolve_device(node, device_name)
        if hca is None:
            return error(f"-E- Failed to open device: \"{device_name}\", No such file or directory", 1)
        port_arg = parsed.get_flag_str("p", "port")
        port_number = parse_int(port_arg) if port_arg else 1
        port = next((p for p in hca.ports if p.port_number == port_number), None)
        if port is None:
            return error(f"-E- Invalid port number: {port_arg}", 1)

        active = port.state == "Active"
        lines = [
            "",
            "Operational Info",
            "----------------",
            f"State                              : {port.state}",
            f"Physical state                     : {port.physical_state}",
            f"Speed                              : {'IB-' + ib_standard_name(port.rate) if active else 'N/A'}",
            f"Width                              : {'4x' if active else 'N/A'}",
            "FEC                                : Standard LL RS-FEC - RS(271,257)",
            "Loopback Mode                      : No Loopback",
            "Auto Negotiation                   : ON",
            "",
            "Supported Info",
            "--------------",
            f"Enabled Link Speed                 : {rate_label(port)}",
            "",
            "Troubleshooting Info",
            "--------------------",
            f"Status Opcode                      : {0 if active else 1024}",
            "Group Opcode                       : N/A",
            f"Recommendation                     : {'No issue was observed' if active else 'Check cable connection and peer port state'}",
        ]
        if parsed.has_flag("c", "show_counters") or parsed.has_flag("e"):
            lines.extend(
                [
                    "",
                    "Physical Counters and BER Info",
                    "------------------------------",
                    f"Time Since Last Clear [Min]        : {60.0 if active else 0.0}",
                    f"Symbol Errors                      : {port.errors.symbol_errors}",
                    f"Link Down Counter                  : {port.errors.link_downed}",
                    f"Effective Physical BER             : {'15E-255' if port.errors.symbol_errors == 0 else '1E-12'}",
                ]
            )
        return success("\n".join(lines) + "\n")

    def _mlxfwmanager(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        hcas = node.hcas
        device_name = parsed.get_flag_str("d", "dev")
        if device_name:
            hca = resolve_device(node, device_name)
            if hca is None:
                return error(f"-E- No devices found or specified device \"{device_name}\" is not supported", 1)
            hcas = [hca]

        if parsed.has_flag("u", "update"):
            lines = ["Querying Mellanox devices firmware ...", ""]
            updated = 0
            for hca in hcas:
                latest = LATEST_FIRMWARE.get(hca.ca_type, hca.firmware_version)
                if hca.firmware_version == latest:
                    lines.append(f"Device {hca.dev_name}: firmware {latest} is up to date")
                    continue
                previous = hca.firmware_version
                context.cluster.update_hca(node.id, hca.id, {"firmware_version": latest}, command=parsed.raw)
                lines.append(f"Updating FW {hca.dev_name} ... Done ({previous} -> {latest})")
                updated += 1
            lines.append("")
            if updated:
                lines.append("Restart needed for updates to take effect.")
            return success("\n".join(lines) + "\n")

        lines = ["Querying Mellanox devices firmware ...", ""]
        for index, hca in enumerate(hcas, 1):
            latest = LATEST_FIRMWARE.get(hca.ca_type, hca.firmware_version)
            status = "Up to date" if hca.firmware_version == latest else "Update required"
            lines.extend(
                [
                    f"Device #{index}:",
                    "----------",
                    "",
                    f"  Device Type:      {hca.ca_type}",
                    f"  Part Number:      {ca_part_number(hca)}A-HDAT_Ax",
                    f"  PCI Device Name:  {hca.pci_address}",
                    f"  Base GUID:        {node_guid(hca)}",
                    "  Versions:         Current        Available",
                    f"     FW             {hca.firmware_version:<15}{latest}",
                    "",
                    f"  Status:           {status}",
                    "",
                ]
            )
        return success("\n".join(lines))
