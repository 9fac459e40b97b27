"""Basic system inspection and service tools.

``dmesg`` shares its kernel messages with ``journalctl -k``; ``systemctl``
reads and changes the unit states other tools (``nv-fabricmanager``,
``nvsm``) report.
"""

from __future__ import annotations

import logging
from typing import Callable

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    KERNEL_BOOT_SECONDS,
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    handle_help_version,
    human_size,
    kernel_log_lines,
    resolve_node,
    success,
    usage_error,
)
from clustersim.state.models import Node

LOGGER = logging.getLogger(__name__)

# fixed wall clock so output is reproducible
BOOT_TIME = "Mon 2024-01-15 08:00:00 UTC"
CURRENT_TIME = "Mon 2024-01-15 08:30:42 UTC"
UPTIME_DAYS = 12

_DMESG_LEVELS = ("emerg", "alert", "crit", "err", "warn", "notice", "info", "debug")
_SYSTEMCTL_STATES = {"active": "active (running)", "inactive": "inactive (dead)", "failed": "failed (Result: exit-code)"}
_UNIT_DESCRIPTIONS = {
    "nvidia-fabricmanager": "NVIDIA fabric manager service",
    "nvidia-persistenced": "NVIDIA Persistence Daemon",
    "nvidia-dcgm": "NVIDIA DCGM service",
    "nvsm-core": "NVSM Core service",
    "slurmd": "Slurm node daemon",
    "docker": "Docker Application Container Engine",
    "openibd": "openibd - configure Mellanox devices",
    "sshd": "OpenBSD Secure Shell server",
}


def unit_name(name: str) -> str:
    return name[:-8] if name.endswith(".service") else name


def dmesg_level(priority: str) -> str:
    return "warn" if priority == "warning" else priority


class SystemSimulator:
    """Simulates basic system commands for the current node."""

    METADATA = SimulatorMetadata(
        name="system",
        version="1.0",
        description="System information and service management",
        commands=(
            "lscpu",
            "free",
            "dmidecode",
            "dmesg",
            "systemctl",
            "hostnamectl",
            "timedatectl",
            "hostname",
            "uname",
            "uptime",
        ),
        value_flags=("type", "level", "state"),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "lscpu": self._lscpu,
            "free": self._free,
            "dmidecode": self._dmidecode,
            "dmesg": self._dmesg,
            "systemctl": self._systemctl,
            "hostnamectl": self._hostnamectl,
            "timedatectl": self._timedatectl,
            "hostname": self._hostname,
            "uname": self._uname,
            "uptime": self._uptime,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"{parsed.base_command}: command not found", 127)
        # -h is human-readable for free and dmesg; -V is the version flag here
        handled = handle_help_version(parsed, context, f"{parsed.base_command} from util-linux 2.37.2\n", short_help=False, short_version=False)
        if handled is not None:
            return handled
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        return handler(parsed, context, node)

    def _lscpu(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        total = node.cpu_count
        half = total // 2
        cores = node.cpu_cores_per_socket
        vendor = "AuthenticAMD" if "AMD" in node.cpu_model else "GenuineIntel"
        rows = [
            ("Architecture:", "x86_64"),
            ("CPU op-mode(s):", "32-bit, 64-bit"),
            ("Byte Order:", "Little Endian"),
            ("CPU(s):", str(total)),
            ("On-line CPU(s) list:", f"0-{total - 1}"),
            ("Vendor ID:", vendor),
            ("Model name:", node.cpu_model),
            ("Thread(s) per core:", "2"),
            ("Core(s) per socket:", str(cores)),
            ("Socket(s):", str(node.cpu_sockets)),
            ("NUMA node(s):", str(node.cpu_sockets)),
            ("Virtualization:", "AMD-V" if vendor == "AuthenticAMD" else "VT-x"),
        ]
        if node.cpu_sockets == 2:
            rows.append(("NUMA node0 CPU(s):", f"0-{cores - 1},{half}-{half + cores - 1}"))
            rows.append(("NUMA node1 CPU(s):", f"{cores}-{half - 1},{half + cores}-{total - 1}"))
        return success("".join(f"{label:<24}{value}\n" for label, value in rows))

    def _free(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        total = node.ram_total_gb * 1024 * 1024
        used = node.ram_used_gb * 1024 * 1024
        shared = 4 * 1024 * 1024
        cache = total // 12
        free = total - used - cache
        available = total - used
        swap = 32 * 1024 * 1024
        values = [total, used, free, shared, cache, available]
        if parsed.has_flag("h", "human"):
            cells = [human_size(v) for v in values]
            swap_cells = [human_size(swap), "0B", human_size(swap)]
        elif parsed.has_flag("g", "giga"):
            cells = [str(v // (1024 * 1024)) for v in values]
            swap_cells = [str(swap // (1024 * 1024)), "0", str(swap // (1024 * 1024))]
        else:
            cells = [str(v) for v in values]
            swap_cells = [str(swap), "0", str(swap)]
        lines = [
            f"{'':<7}{'total':>12}{'used':>12}{'free':>12}{'shared':>12}{'buff/cache':>12}{'available':>12}",
            "Mem:   " + "".join(f"{c:>12}" for c in cells),
            "Swap:  " + "".join(f"{c:>12}" for c in swap_cells),
        ]
        return success("\n".join(lines) + "\n")

    def _dmidecode(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        kind = parsed.get_flag_str("t", "type")
        header = "# dmidecode 3.3\nGetting SMBIOS data from sysfs.\nSMBIOS 3.3.0 present.\n\n"
        firmware = node.bmc.firmware_version if node.bmc else "1.0"
        sections = {
            "bios": (
                "Handle 0x0000, DMI type 0, 26 bytes\nBIOS Information\n\tVendor: American Megatrends International, LLC.\n"
                f"\tVersion: {firmware}\n\tROM Size: 32 MB\n\tUEFI is supported\n"
            ),
            "system": (
                "Handle 0x0001, DMI type 1, 27 bytes\nSystem Information\n\tManufacturer: NVIDIA\n"
                f"\tProduct Name: {node.system_type}\n\tSerial Number: {node.id.upper().replace('-', '')}P0001\n"
            ),
            "processor": "".join(
                f"Handle 0x00{40 + i:02X}, DMI type 4, 48 bytes\nProcessor Information\n\tSocket Designation: P{i}\n"
                f"\tVersion: {node.cpu_model}\n\tCore Count: {node.cpu_cores_per_socket}\n"
                f"\tThread Count: {node.cpu_cores_per_socket * 2}\n\n"
                for i in range(node.cpu_sockets)
            ),
            "memory": (
                "Handle 0x003C, DMI type 16, 23 bytes\nPhysical Memory Array\n\tUse: System Memory\n"
                f"\tMaximum Capacity: {node.ram_total_gb} GB\n\tNumber Of Devices: 32\n"
            ),
        }
        if kind is None:
            return success(header + "\n".join(sections.values()))
        aliases = {"0": "bios", "1": "system", "4": "processor", "16": "memory", "17": "memory"}
        section = sections.get(aliases.get(kind, kind))
        if section is None:
            return error(f"Invalid type keyword: {kind}\nValid type keywords are:\n  bios\n  system\n  processor\n  memory", 2)
        return success(header + section)

    def _dmesg(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.has_flag("C", "clear", "c", "read-clear"):
            return success("")
        entries = kernel_log_lines(node)
        levels = parsed.get_flag_str("l", "level")
        if levels:
            wanted = set(levels.split(","))
            unknown = wanted - set(_DMESG_LEVELS)
            if unknown:
                return error(f"dmesg: unknown level '{sorted(unknown)[0]}'", 1)
            entries = [e for e in entries if dmesg_level(e[1]) in wanted]
        human_time = parsed.has_flag("T", "ctime")
        show_level = parsed.has_flag("x", "decode")
        lines = []
        for seconds, priority, text in entries:
            if human_time:
                stamp = f"[{BOOT_TIME[:-4]} +{seconds:.0f}s]"
            else:
                stamp = f"[{seconds:>12.6f}]"
            level = f"kern  :{dmesg_level(priority):<6}: " if show_level else ""
            lines.append(f"{level}{stamp} {text}")
        return success("\n".join(lines) + ("\n" if lines else ""))

    def _systemctl(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        words = parsed.args
        if not words or words[0] in ("list-units", "list-unit-files"):
            state_filter = parsed.get_flag_str("state")
            lines = [f"  {'UNIT':<34}{'LOAD':<7}{'ACTIVE':<9}{'SUB':<9}DESCRIPTION"]
            shown = 0
            for name, state in node.services.items():
                if state_filter and state != state_filter:
                    continue
                sub = {"active": "running", "inactive": "dead", "failed": "failed"}[state]
                marker = "●" if state == "failed" else " "
                lines.append(f"{marker} {name + '.service':<34}{'loaded':<7}{state:<9}{sub:<9}{_UNIT_DESCRIPTIONS.get(name, name)}")
                shown += 1
            lines.append("")
            lines.append(f"{shown} loaded units listed.")
            return success("\n".join(lines) + "\n")

        action = words[0]
        if len(words) < 2:
            return usage_error("systemctl", f"Too few arguments for '{action}'.", 1)
        name = unit_name(words[1])
        state = node.services.get(name)
        if state is None:
            if action in ("is-active", "is-failed"):
                return CommandResult(output="inactive\n", exit_code=3)
            return error(f"Unit {name}.service could not be found.", 4)

        if action == "is-active":
            return CommandResult(output=f"{state}\n", exit_code=0 if state == "active" else 3)
        if action == "is-failed":
            return CommandResult(output=f"{state}\n", exit_code=0 if state == "failed" else 1)
        if action == "status":
            lines = [
                f"{'●' if state != 'failed' else '×'} {name}.service - {_UNIT_DESCRIPTIONS.get(name, name)}",
                f"     Loaded: loaded (/lib/systemd/system/{name}.service; enabled; vendor preset: enabled)",
                f"     Active: {_SYSTEMCTL_STATES[state]} since {BOOT_TIME}",
            ]
            return CommandResult(output="\n".join(lines) + "\n", exit_code=0 if state == "active" else 3)
        targets = {"start": "active", "restart": "active", "stop": "inactive", "reset-failed": "inactive"}
        if action in targets:
            if action == "reset-failed" and state != "failed":
                return success("")
            context.cluster.set_service_state(node.id, name, targets[action], command=parsed.raw)
            LOGGER.debug("systemctl %s %s on %s", action, name, node.id)
            return success("")
        if action in ("enable", "disable"):
            verb = "Created symlink" if action == "enable" else "Removed"
            return success(f"{verb} /etc/systemd/system/multi-user.target.wants/{name}.service.\n")
        return usage_error("systemctl", f"Unknown command verb {action}.", 1)

    def _hostnamectl(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.args and parsed.args[0] == "set-hostname":
            return error("Could not set hostname: hostname is managed by Base Command Manager", 1)
        rows = [
            ("Static hostname", node.hostname),
            ("Icon name", "computer-server"),
            ("Chassis", "server"),
            ("Operating System", node.os_version),
            ("Kernel", f"Linux {node.kernel_version}"),
            ("Architecture", "x86-64"),
            ("Hardware Vendor", "NVIDIA"),
            ("Hardware Model", node.system_type),
        ]
        return success("".join(f"{label:>18}: {value}\n" for label, value in rows))

    def _timedatectl(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        rows = [
            ("Local time", CURRENT_TIME),
            ("Universal time", CURRENT_TIME),
            ("RTC time", CURRENT_TIME[4:-4]),
            ("Time zone", "Etc/UTC (UTC, +0000)"),
            ("System clock synchronized", "yes"),
            ("NTP service", "active"),
            ("RTC in local TZ", "no"),
        ]
        return success("".join(f"{label:>25}: {value}\n" for label, value in rows))

    def _hostname(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.has_flag("I", "all-ip-addresses"):
            index = context.cluster.get_cluster().nodes.index(node)
            return success(f"10.141.0.{index + 2} 192.168.{index}.10\n")
        if parsed.has_flag("f", "fqdn"):
            return success(f"{node.hostname}.cm.cluster\n")
        return success(f"{node.hostname}\n")

    def _uname(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.has_flag("a", "all"):
            return success(f"Linux {node.hostname} {node.kernel_version} #101-Ubuntu SMP x86_64 x86_64 x86_64 GNU/Linux\n")
        parts = []
        if parsed.has_flag("n", "nodename"):
            parts.append(node.hostname)
        if parsed.has_flag("r", "kernel-release"):
            parts.append(node.kernel_version)
        if parsed.has_flag("m", "machine"):
            parts.append("x86_64")
        if parsed.has_flag("s", "kernel-name") or not parts:
            parts.insert(0, "Linux")
        return success(" ".join(parts) + "\n")

    def _uptime(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        busy = sum(g.utilization for g in node.gpus) / 100.0
        load = [busy * 2 + 0.52, busy * 2 + 0.48, busy * 2 + 0.45]
        if parsed.has_flag("p", "pretty"):
            return success(f"up {UPTIME_DAYS} days, 0 hours, {KERNEL_BOOT_SECONDS / 60:.0f} minutes\n")
        return success(
            f" {CURRENT_TIME[15:23]} up {UPTIME_DAYS} days,  0:{KERNEL_BOOT_SECONDS / 60:02.0f},  1 user,  "
            f"load average: {load[0]:.2f}, {load[1]:.2f}, {load[2]:.2f}\n"
        )
