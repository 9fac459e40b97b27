"""Shared types and helpers for tool simulators.

A simulator is any object with ``describe()`` and ``execute(parsed, context)``;
there is no base class. Behavior common to several simulators (help and
version banners, error results, node lookup, table layout, host list
compression, kernel log lines) lives here as plain functions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Protocol, Sequence, runtime_checkable

from clustersim.parser import ParsedCommand, parse
from clustersim.state.models import GPU, Node
from clustersim.state.xid import get_xid

if TYPE_CHECKING:
    from clustersim.definitions.registry import CommandDefinitionRegistry
    from clustersim.state.view import ClusterView

RESET = "\x1b[0m"
BOLD = "\x1b[1m"
RED = "\x1b[31m"
GREEN = "\x1b[32m"
YELLOW = "\x1b[33m"
CYAN = "\x1b[36m"

# Fixed boot offset used for kernel log timestamps so output is reproducible
KERNEL_BOOT_SECONDS = 1842.0


@dataclass
class CommandResult:
    output: str = ""
    exit_code: int = 0
    prompt: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class CommandContext:
    """Everything a simulator may read while executing one command.

    Attributes:
        cluster: Cluster view to read and mutate (scenario context or store)
        current_node: Node the shell is logged into
        cwd: Working directory
        user: Session user
        environment: Environment variables
        history: Previously executed lines, oldest first
        registry: Command definitions for help text, when available
        dispatch: Router entry point for tools that run another command
            (``srun``, ``docker run``); None outside a shell
    """

    cluster: "ClusterView"
    current_node: str = "dgx-00"
    cwd: str = "/root"
    user: str = "root"
    environment: dict[str, str] = field(default_factory=dict)
    history: list[str] = field(default_factory=list)
    registry: Optional["CommandDefinitionRegistry"] = None
    dispatch: Optional[Callable[[ParsedCommand, "CommandContext"], Optional[CommandResult]]] = None

    def node(self) -> Optional[Node]:
        return self.cluster.get_node(self.current_node)


@dataclass(frozen=True)
class SimulatorMetadata:
    name: str
    version: str
    description: str
    commands: tuple[str, ...] = ()
    # long options that take the next token as their value
    value_flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class InteractiveState:
    """Mode of an interactive tool session, held by the shell between lines."""

    tool: str
    mode: str = ""
    selected: Optional[str] = None
    prompt: str = ""


class Simulator(Protocol):
    def describe(self) -> SimulatorMetadata: ...

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult: ...


@runtime_checkable
class InteractiveSimulator(Protocol):
    def describe(self) -> SimulatorMetadata: ...

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult: ...

    def execute_interactive(
        self, line: str, state: InteractiveState, context: CommandContext
    ) -> tuple[CommandResult, Optional[InteractiveState]]: ...


def success(output: str = "") -> CommandResult:
    return CommandResult(output=output, exit_code=0)


def error(message: str, exit_code: int = 1) -> CommandResult:
    return CommandResult(output=message, exit_code=exit_code)


def usage_error(tool: str, message: str, exit_code: int = 2) -> CommandResult:
    return CommandResult(output=f"{tool}: {message}\nTry '{tool} --help' for more information.", exit_code=exit_code)


def help_text(tool: str, context: CommandContext, fallback: str = "") -> str:
    """Registry help for ``tool``, else ``fallback``."""
    if context.registry is not None:
        text = context.registry.format_help(tool)
        if text:
            return text
    return fallback or f"Usage: {tool} [OPTIONS]\n"


def handle_help_version(
    parsed: ParsedCommand,
    context: CommandContext,
    version_banner: str,
    short_help: bool = True,
    short_version: bool = True,
) -> Optional[CommandResult]:
    """Answer ``--help``/``--version`` (and their short forms when allowed).

    Returns:
        A result when the command was a help or version request, else None
    """
    if parsed.has_flag("help") or (short_help and parsed.has_flag("h")):
        return success(help_text(parsed.base_command, context))
    if parsed.has_flag("version") or (short_version and parsed.has_flag("v", "V")):
        return success(version_banner)
    return None


def resolve_node(context: CommandContext, name: Optional[str] = None) -> Optional[Node]:
    """Node by id or hostname, defaulting to the session's current node."""
    return context.cluster.get_node(name or context.current_node)


def parse_int(value: Any) -> Optional[int]:
    """Parse a non-negative decimal integer; anything else (``-0``, ``1.5``, ``x``) is None."""
    if not isinstance(value, str) or not value.isdigit():
        return None
    return int(value)


def parse_id_list(value: Any) -> Optional[list[int]]:
    """Parse ``0,1,3`` into ``[0, 1, 3]``; None if any element is invalid."""
    if not isinstance(value, str) or not value:
        return None
    ids = [parse_int(part.strip()) for part in value.split(",")]
    if any(i is None for i in ids):
        return None
    return ids


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]], gap: int = 2) -> str:
    """Left-aligned fixed-width columns sized to the widest cell."""
    rows = [[str(c) for c in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    sep = " " * gap
    lines = [sep.join(h.ljust(widths[i]) for i, h in enumerate(headers)).rstrip()]
    for row in rows:
        lines.append(sep.join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return "\n".join(lines)


def colorize(text: str, color: str) -> str:
    return f"{color}{text}{RESET}"


def gpu_temp(gpu: GPU) -> int:
    """Temperature as every tool renders it: whole degrees C."""
    return int(round(gpu.temperature))


def human_size(kib: float) -> str:
    """``df -h`` / ``free -h`` style size from KiB (1024 based)."""
    value = float(kib)
    units = ("K", "M", "G", "T", "P")
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    if idx == 0:
        return f"{int(value)}K"
    return f"{value:.1f}{units[idx]}" if value < 10 else f"{value:.0f}{units[idx]}"


_HOST_RE = re.compile(r"^(.*?)(\d+)$")


def compress_hostlist(names: Iterable[str]) -> str:
    """Slurm host list notation: ``dgx-00,dgx-01,dgx-03`` -> ``dgx-[00-01,03]``."""
    names = list(names)
    if not names:
        return ""
    groups: dict[str, list[str]] = {}
    order: list[str] = []
    plain: list[str] = []
    for name in names:
        m = _HOST_RE.match(name)
        if not m:
            plain.append(name)
            continue
        prefix = m.group(1)
        if prefix not in groups:
            groups[prefix] = []
            order.append(prefix)
        groups[prefix].append(m.group(2))

    parts = []
    for prefix in order:
        numbers = sorted(set(groups[prefix]), key=int)
        if len(numbers) == 1:
            parts.append(f"{prefix}{numbers[0]}")
            continue
        ranges = []
        start = prev = numbers[0]
        for num in numbers[1:]:
            if int(num) == int(prev) + 1:
                prev = num
                continue
            ranges.append(start if start == prev else f"{start}-{prev}")
            start = prev = num
        ranges.append(start if start == prev else f"{start}-{prev}")
        parts.append(f"{prefix}[{','.join(ranges)}]")
    return ",".join(parts + plain)


def expand_hostlist(expr: str) -> list[str]:
    """Inverse of :func:`compress_hostlist` for one or more comma-joined groups."""
    hosts = []
    for m in re.finditer(r"([^,\[]+)(?:\[([^\]]+)\])?", expr):
        prefix, body = m.group(1), m.group(2)
        if body is None:
            hosts.append(prefix)
            continue
        for part in body.split(","):
            if "-" in part:
                lo, hi = part.split("-", 1)
                width = len(lo)
                hosts.extend(f"{prefix}{i:0{width}d}" for i in range(int(lo), int(hi) + 1))
            else:
                hosts.append(f"{prefix}{part}")
    return hosts


def pci_bus_id(gpu: GPU) -> str:
    """Short ``0000:07:00`` form used by driver messages."""
    domain, bus, rest = gpu.pci_address.split(":", 2)
    return f"{domain[-4:]}:{bus}:{rest.split('.')[0]}"


def kernel_log_lines(node: Node) -> list[tuple[float, str, str]]:
    """Kernel messages for ``node`` as ``(seconds, priority, text)``.

    Shared by ``dmesg`` and ``journalctl -k`` so both show the same driver
    events: XID records, uncorrectable ECC, thermal slowdown, downed
    NVLinks and IB ports.
    """
    lines = [
        (0.0, "info", f"Linux version {node.kernel_version} (buildd@lcy02-amd64) #101-Ubuntu SMP"),
        (2.114, "info", "nvidia: loading out-of-tree module taints kernel."),
        (2.871, "info", f"NVRM: loading NVIDIA UNIX x86_64 Kernel Module  {node.nvidia_driver_version}"),
        (3.402, "info", "mlx5_core 0000:0c:00.0: firmware version: loaded"),
    ]
    t = KERNEL_BOOT_SECONDS
    for gpu in node.gpus:
        bus = pci_bus_id(gpu)
        for xid in gpu.xid_errors:
            info = get_xid(xid.code)
            text = info.name if info else xid.description
            level = "err" if xid.severity == "Critical" else "warning"
            lines.append((t, level, f"NVRM: Xid (PCI:{bus}): {xid.code}, pid=0, {text}."))
            t += 0.5
        if gpu.ecc_errors.double_bit:
            lines.append((t, "err", f"NVRM: GPU at PCI:{bus}: uncorrectable ECC error detected ({gpu.ecc_errors.double_bit} DBE)"))
            t += 0.5
        if gpu.temperature >= 85:
            lines.append((t, "warning", f"NVRM: GPU at PCI:{bus}: thermal slowdown active ({int(round(gpu.temperature))} C)"))
            t += 0.5
        for link in gpu.nvlinks:
            if link.status == "Down":
                lines.append((t, "err", f"NVRM: GPU at PCI:{bus}: NVLink {link.link_id} is down"))
                t += 0.5
    for hca in node.hcas:
        for port in hca.ports:
            if port.state == "Down":
                lines.append((t, "warning", f"mlx5_core {hca.pci_address}: {hca.dev_name}:{port.port_number}: Link down"))
                t += 0.5
    return lines


def run_nested(context: CommandContext, line: str, node_id: Optional[str] = None) -> CommandResult:
    """Run ``line`` through the shell's router, optionally on another node."""
    parsed = parse(line)
    if parsed.is_empty:
        return success()
    if context.dispatch is None:
        return error(f"{parsed.base_command}: cannot execute outside an interactive shell", 126)
    nested = replace(context, current_node=node_id or context.current_node)
    result = context.dispatch(parsed, nested)
    if result is None:
        return error(f"{parsed.base_command}: command not found", 127)
    return result
