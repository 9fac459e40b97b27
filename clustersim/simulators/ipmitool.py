"""``ipmitool`` against the baseboard management controller of a node.

Sensor readings combine the BMC's own sensors with one temperature sensor
per GPU, so ``ipmitool sensor`` agrees with ``nvidia-smi`` about GPU
temperatures. ``-H`` selects a remote BMC by IP address or node name.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    gpu_temp,
    handle_help_version,
    success,
    usage_error,
)
from clustersim.state.models import BMCSensor, Node

LOGGER = logging.getLogger(__name__)

IPMITOOL_VERSION = "ipmitool version 1.8.19"
GPU_TEMP_UPPER_CRITICAL = 90.0


def node_sensors(node: Node) -> list[BMCSensor]:
    """BMC sensors followed by one ``GPU<n>_Temp`` sensor per GPU."""
    sensors = list(node.bmc.sensors) if node.bmc else []
    for gpu in node.gpus:
        reading = float(gpu_temp(gpu))
        status = "cr" if reading >= GPU_TEMP_UPPER_CRITICAL else "ok"
        if gpu.has_fatal_xid:
            status = "ns"
        sensors.append(BMCSensor(f"GPU{gpu.id}_Temp", reading, "degrees C", status, GPU_TEMP_UPPER_CRITICAL))
    return sensors


def _threshold(value: Optional[float]) -> str:
    return f"{value:.3f}" if value is not None else "na"


def _sel_events(node: Node) -> list[str]:
    events = ["Event Logging Disabled #0x07 | Log area reset/cleared | Asserted"]
    for gpu in node.gpus:
        for xid in gpu.xid_errors:
            events.append(f"Add-in Card GPU{gpu.id} | Critical Interrupt | Bus Fatal Error (XID {xid.code}) | Asserted")
        if gpu_temp(gpu) >= GPU_TEMP_UPPER_CRITICAL:
            events.append(f"Temperature GPU{gpu.id}_Temp | Upper Critical going high | Asserted")
    for sensor in node.bmc.sensors if node.bmc else []:
        if sensor.upper_critical is not None and sensor.reading >= sensor.upper_critical:
            events.append(f"Temperature {sensor.name} | Upper Critical going high | Asserted")
    return events


class IpmitoolSimulator:
    """Simulates ``ipmitool`` in-band and over ``-I lanplus``."""

    METADATA = SimulatorMetadata(
        name="ipmitool",
        version="1.8.19",
        description="IPMI BMC management",
        commands=("ipmitool",),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[list[str], ParsedCommand, CommandContext, Node], CommandResult]] = {
            "sensor": self._sensor,
            "sdr": self._sdr,
            "chassis": self._chassis,
            "power": self._power,
            "mc": self._mc,
            "fru": self._fru,
            "sel": self._sel,
            "lan": self._lan,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handled = handle_help_version(parsed, context, f"{IPMITOOL_VERSION}\n", short_help=True, short_version=False)
        if handled is not None:
            return handled
        if parsed.has_flag("V"):
            return success(f"{IPMITOOL_VERSION}\n")
        node = self._target_node(parsed, context)
        if node is None:
            host = parsed.get_flag_str("H")
            return error(f"Error: Unable to establish IPMI v2 / RMCP+ session to {host or context.current_node}", 1)
        if node.bmc is None:
            return error("Could not open device at /dev/ipmi0 or /dev/ipmi/0 or /dev/ipmidev/0: No such file or directory", 1)
        words = parsed.args
        if not words:
            return usage_error("ipmitool", "No command provided!")
        handler = self._handlers.get(words[0])
        if handler is None:
            return usage_error("ipmitool", f"Invalid command: {words[0]}", 1)
        return handler(words[1:], parsed, context, node)

    def _target_node(self, parsed: ParsedCommand, context: CommandContext) -> Optional[Node]:
        host = parsed.get_flag_str("H")
        if not host:
            return context.cluster.get_node(context.current_node)
        for node in context.cluster.get_cluster().nodes:
            if node.bmc and node.bmc.ip_address == host:
                return node
        # node-bmc style names resolve to the node itself
        return context.cluster.get_node(host[:-4] if host.endswith("-bmc") else host)

    def _sensor(self, words: list[str], parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        sensors = node_sensors(node)
        if words and words[0] == "get":
            wanted = set(words[1:])
            sensors = [s for s in sensors if s.name in wanted]
            if not sensors:
                return error(f"Sensor data record \"{' '.join(words[1:])}\" not found!", 1)
            blocks = [
                f"Locating sensor record...\nSensor ID              : {s.name}\n"
                f" Sensor Reading        : {s.reading:g} {s.unit}\n Status                : {s.status}"
                for s in sensors
            ]
            return success("\n".join(blocks) + "\n")
        lines = []
        for s in sensors:
            lines.append(
                f"{s.name:<17}| {s.reading:<11.3f}| {s.unit:<11}| {s.status:<6}| na        | na        "
                f"| na        | {_threshold(s.upper_critical):<10}| na        | na"
            )
        return success("\n".join(lines) + "\n")

    def _sdr(self, words: list[str], parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        sensors = node_sensors(node)
        if words and words[0] == "type" and len(words) > 1:
            kind = words[1].lower()
            units = {"temperature": "degrees C", "fan": "RPM", "power": "Watts"}
            unit = units.get(kind)
            if unit is None:
                return error(f"Invalid SDR type: {words[1]}", 1)
            sensors = [s for s in sensors if s.unit == unit]
        lines = [f"{s.name:<17}| {f'{s.reading:g} {s.unit}':<18}| {s.status}" for s in sensors]
        return success("\n".join(lines) + "\n")

    def _chassis(self, words: list[str], parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if not words:
            return usage_error("ipmitool", "chassis Commands: status, power, identify, policy, restart_cause", 1)
        if words[0] == "status":
            power = node.bmc.power_state.lower()
            lines = [
                f"System Power         : {power}",
                "Power Overload       : false",
                "Power Interlock      : inactive",
                "Main Power Fault     : false",
                "Power Control Fault  : false",
                "Power Restore Policy : always-on",
                "Last Power Event     : command" if power == "off" else "Last Power Event     : ",
                "Chassis Intrusion    : inactive",
                "Front-Panel Lockout  : inactive",
                "Drive Fault          : false",
                f"Cooling/Fan Fault    : {'true' if any(s.status == 'cr' for s in node_sensors(node)) else 'false'}",
            ]
            return success("\n".join(lines) + "\n")
        if words[0] == "power":
            return self._power(words[1:], parsed, context, node)
        if words[0] == "identify":
            return success("Chassis identify interval: default (15 seconds)\n")
        return usage_error("ipmitool", f"Invalid chassis command: {words[0]}", 1)

    def _power(self, words: list[str], parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        action = words[0] if words else "status"
        if action == "status":
            return success(f"Chassis Power is {node.bmc.power_state.lower()}\n")
        targets = {"on": ("On", "Up/On"), "off": ("Off", "Down/Off"), "soft": ("Off", "Soft")}
        if action in targets:
            state, label = targets[action]
            context.cluster.set_power_state(node.id, state, command=parsed.raw)
            LOGGER.debug("Chassis power %s on %s", action, node.id)
            return success(f"Chassis Power Control: {label}\n")
        if action in ("cycle", "reset"):
            if node.bmc.power_state != "On":
                return error("Set Chassis Power Control to Cycle failed: Command not supported in present state", 1)
            context.cluster.set_power_state(node.id, "Off", command=parsed.raw)
            context.cluster.set_power_state(node.id, "On", command=parsed.raw)
            return success(f"Chassis Power Control: {action.capitalize()}\n")
        return usage_error("ipmitool", "chassis power Commands: status, on, off, cycle, reset, soft", 1)

    def _mc(self, words: list[str], parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if words[:1] == ["info"]:
            lines = [
                "Device ID                 : 32",
                "Device Revision           : 1",
                f"Firmware Revision         : {node.bmc.firmware_version}",
                "IPMI Version              : 2.0",
                f"Manufacturer Name         : {node.bmc.manufacturer}",
                f"Product Name              : {node.system_type} BMC",
                "Device Available          : yes",
            ]
            return success("\n".join(lines) + "\n")
        if words[:2] == ["reset", "cold"] or words[:2] == ["reset", "warm"]:
            return success(f"Sent {words[1]} reset command to MC\n")
        return usage_error("ipmitool", "MC Commands: reset <warm|cold>, info", 1)

    def _fru(self, words: list[str], parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        lines = [
            "FRU Device Description : Builtin FRU Device (ID 0)",
            f" Board Mfg              : {node.bmc.manufacturer}",
            f" Board Product          : {node.system_type} Baseboard",
            f" Board Serial           : {node.id.upper().replace('-', '')}B0001",
            f" Product Manufacturer   : {node.bmc.manufacturer}",
            f" Product Name           : {node.system_type}",
            f" Product Serial         : {node.id.upper().replace('-', '')}P0001",
        ]
        return success("\n".join(lines) + "\n")

    def _sel(self, words: list[str], parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        action = words[0] if words else "info"
        events = _sel_events(node)
        if action == "info":
            lines = [
                "SEL Information",
                "Version          : 1.5 (v1.5, v2 compliant)",
                f"Entries          : {len(events)}",
                f"Percent Used     : {len(events) * 100 // 512}%",
            ]
            return success("\n".join(lines) + "\n")
        if action in ("list", "elist"):
            lines = [f"{i:>4x} | {event}" for i, event in enumerate(events, 1)]
            return success("\n".join(lines) + "\n")
        if action == "clear":
            return success("Clearing SEL.  Please allow a few seconds to erase.\n")
        return usage_error("ipmitool", "SEL Commands: info clear list elist", 1)

    def _lan(self, words: list[str], parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if words[:1] != ["print"]:
            return usage_error("ipmitool", "LAN Commands: print [channel]", 1)
        lines = [
            "Set in Progress         : Set Complete",
            "IP Address Source       : Static Address",
            f"IP Address              : {node.bmc.ip_address}",
            "Subnet Mask             : 255.255.255.0",
            f"MAC Address             : {node.bmc.mac_address}",
            "Default Gateway IP      : 10.0.254.1",
        ]
        return success("\n".join(lines) + "\n")
