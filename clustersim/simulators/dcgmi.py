"""dcgmi simulator (NVIDIA Data Center GPU Manager CLI).

Health and diagnostic verdicts are derived from GPU state alone, so a fault
on one GPU is reported against that GPU and no other.
"""

from __future__ import annotations

import logging
import textwrap
from typing import Callable, Optional

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    gpu_temp,
    parse_id_list,
    parse_int,
    resolve_node,
    success,
    usage_error,
)
from clustersim.state.hardware import get_hardware_spec
from clustersim.state.metrics import dmon_samples
from clustersim.state.models import GPU, Node
from clustersim.state.xid import get_xid

LOGGER = logging.getLogger(__name__)

DCGM_VERSION = "3.3.5"
THERMAL_WARNING_C = 85
SBE_FAILURE_THRESHOLD = 10

DIAG_LEVELS = {"1": 1, "2": 2, "3": 3, "4": 4, "short": 1, "quick": 1, "medium": 2, "long": 3, "xlong": 4}

# (category, test name, first level it runs at, which failure kind it catches)
DIAG_TESTS = (
    ("Deployment", "Denylist", 1, None),
    ("Deployment", "NVML Library", 1, "xid"),
    ("Deployment", "CUDA Main Library", 1, None),
    ("Deployment", "Permissions and OS Blocks", 1, None),
    ("Deployment", "Persistence Mode", 1, None),
    ("Deployment", "Environment Variables", 1, None),
    ("Deployment", "Page Retirement/Row Remap", 1, "ecc"),
    ("Deployment", "Graphics Processes", 1, None),
    ("Deployment", "Inforom", 1, None),
    ("Integration", "PCIe", 2, "xid"),
    ("Hardware", "GPU Memory", 2, "ecc"),
    ("Hardware", "Diagnostic", 3, "any"),
    ("Stress", "Targeted Stress", 3, "xid"),
    ("Stress", "Targeted Power", 3, None),
    ("Stress", "Memory Bandwidth", 3, "ecc"),
    ("Hardware", "Memory Test", 4, "ecc"),
    ("Hardware", "Pulse Test", 4, "xid"),
)

# field id -> (column header, unit)
DMON_FIELDS = {
    "100": ("SMCLK", "MHZ"),
    "101": ("MMCLK", "MHZ"),
    "150": ("TMPTR", "C"),
    "155": ("POWER", "W"),
    "203": ("GPUTL", "%"),
    "252": ("FBUSD", "MiB"),
}

USAGE = """usage: dcgmi <subsystem> [options]

NVIDIA Data Center GPU Manager (DCGM) command line interface.

Subsystems:
  discovery   Discover GPUs on the system
  group       GPU group management
  health      Health monitoring
  diag        System validation and diagnostics
  stats       Process statistics
  dmon        Stream field values
  policy      Policy management
  nvlink      NVLink error counters and status

Run 'dcgmi <subsystem> --help' for subsystem options.
"""


def health_incidents(gpu: GPU) -> list[tuple[str, str]]:
    """``(severity, message)`` health incidents for one GPU; empty when healthy."""
    incidents = []
    for xid in gpu.xid_errors:
        info = get_xid(xid.code)
        text = info.name if info else xid.description
        incidents.append(("Failure" if xid.severity == "Critical" else "Warning", f"XID {xid.code}: {text}"))
    if gpu.ecc_errors.double_bit:
        incidents.append(("Failure", f"{gpu.ecc_errors.double_bit} volatile double-bit ECC error(s)"))
    if gpu.ecc_errors.single_bit:
        incidents.append(("Warning", f"{gpu.ecc_errors.single_bit} volatile single-bit ECC error(s)"))
    if gpu.temperature >= THERMAL_WARNING_C:
        incidents.append(
            ("Warning", f"Temperature {gpu_temp(gpu)} C exceeds {THERMAL_WARNING_C} C threshold")
        )
    for link in gpu.nvlinks:
        if link.status == "Down":
            incidents.append(("Warning", f"NVLink {link.link_id} is down"))
    if not incidents and gpu.health_status == "Critical":
        incidents.append(("Failure", "GPU is not responding"))
    elif not incidents and gpu.health_status == "Warning":
        incidents.append(("Warning", "GPU health is degraded"))
    return incidents


def diag_failures(gpu: GPU) -> set[str]:
    """Failure kinds (``xid``, ``ecc``) a diagnostic run detects on ``gpu``."""
    kinds = set()
    if gpu.xid_errors or gpu.health_status == "Critical":
        kinds.add("xid")
    if gpu.ecc_errors.double_bit > 0 or gpu.ecc_errors.single_bit >= SBE_FAILURE_THRESHOLD:
        kinds.add("ecc")
    return kinds


def select_gpus(parsed: ParsedCommand, node: Node) -> tuple[list[GPU], Optional[CommandResult]]:
    """GPUs addressed by ``-i`` ids or ``-g`` group; every group covers all GPUs.

    Returns the GPUs and ``None``, or an empty list and the error result
    for a malformed id list, an unknown GPU or a non-numeric group.
    """
    ids = parsed.get_flag("i", "gpuid")
    if ids is not None:
        parsed_ids = parse_id_list(ids) if isinstance(ids, str) else None
        if parsed_ids is None:
            return [], error("Error: Invalid GPU id list. Use a comma-separated list such as 0,1.", 1)
        gpus = [node.get_gpu(i) for i in parsed_ids]
        if any(g is None for g in gpus):
            missing = [i for i, g in zip(parsed_ids, gpus) if g is None]
            return [], error(f"Error: GPU {missing[0]} not found.", 1)
        return gpus, None
    group = parsed.get_flag("g", "group")
    if group is not None and parse_int(group) is None:
        return [], error(f"Error: Invalid group id '{group}'.", 1)
    return list(node.gpus), None


def _row(left: str, right: str) -> str:
    return f"| {left:<25} | {right:<46} |"


_BORDER = "+---------------------------+------------------------------------------------+"
_DOUBLE = "+===========================+================================================+"


class DcgmiSimulator:
    """Simulates ``dcgmi`` subsystems for the current node."""

    METADATA = SimulatorMetadata(
        name="dcgmi",
        version=DCGM_VERSION,
        description="NVIDIA Data Center GPU Manager CLI",
        commands=("dcgmi",),
        value_flags=("gpuid", "group", "run", "create", "delete", "jobid", "field-ids", "count", "set"),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "discovery": self._discovery,
            "health": self._health,
            "diag": self._diag,
            "group": self._group,
            "stats": self._stats,
            "dmon": self._dmon,
            "policy": self._policy,
            "nvlink": self._nvlink,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        if not parsed.subcommands:
            if parsed.has_flag("version", "v"):
                return success(f"dcgmi  version: {DCGM_VERSION}\n")
            if parsed.flags and not parsed.has_flag("help", "h"):
                return usage_error("dcgmi", f"unrecognized option '-{next(iter(parsed.flags))}'", 1)
            return success(USAGE)
        subsystem = parsed.subcommands[0]
        handler = self._handlers.get(subsystem)
        if handler is None:
            return error(f"Error: Invalid subsystem '{subsystem}'.\n\n{USAGE}", 1)
        if parsed.has_flag("help", "h"):
            return success(f"usage: dcgmi {subsystem} [options]\n" + USAGE.split("\n", 1)[1])
        node = resolve_node(context)
        if node is None:
            return error(f"Error: Unable to connect to host engine on {context.current_node}.")
        return handler(parsed, context, node)

    def _discovery(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if not parsed.has_flag("l", "list"):
            return usage_error("dcgmi discovery", "specify -l to list GPUs", 1)
        lines = [
            f"{len(node.gpus)} GPUs found.",
            "+--------+----------------------------------------------------------------------+",
            "| GPU ID | Device Information                                                   |",
            "+--------+----------------------------------------------------------------------+",
        ]
        for gpu in node.gpus:
            info = [f"Name: {gpu.name}", f"PCI Bus ID: {gpu.pci_address}", f"Device UUID: {gpu.uuid}"]
            if gpu.has_fatal_xid:
                info.append("Status: Inaccessible (XID 79)")
            for i, text in enumerate(info):
                label = str(gpu.id) if i == 0 else ""
                lines.append(f"| {label:<6} | {text:<68} |")
            lines.append("+--------+----------------------------------------------------------------------+")
        return success("\n".join(lines) + "\n")

    def _health(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        gpus, failure = select_gpus(parsed, node)
        if failure is not None:
            return failure
        if parsed.has_flag("s", "set"):
            return success("Health monitor systems set successfully.\n")
        if not parsed.has_flag("c", "check"):
            return usage_error("dcgmi health", "specify -c to check health or -s to set watches", 1)

        by_gpu = {g.id: health_incidents(g) for g in gpus}
        unhealthy = {gid: inc for gid, inc in by_gpu.items() if inc}
        lines = ["Health Monitor Report", _BORDER]
        if not unhealthy:
            lines += [_row("Overall Health", "Healthy"), _BORDER]
            return success("\n".join(lines) + "\n")

        lines += [_row("Overall Health", "Unhealthy"), _DOUBLE]
        for gpu_id, incidents in unhealthy.items():
            worst = "Failure" if any(sev == "Failure" for sev, _ in incidents) else "Warning"
            lines.append(_row(f"GPU ID: {gpu_id}", worst))
            for severity, message in incidents:
                for chunk in textwrap.wrap(f"{severity}: {message}", 46):
                    lines.append(_row("", chunk))
        lines.append(_BORDER)
        total = sum(len(i) for i in unhealthy.values())
        lines.append(f"Warning: {total} incident(s) detected on {len(unhealthy)} GPU(s).")
        return success("\n".join(lines) + "\n")

    def _diag(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        raw_level = parsed.get_flag("r", "run")
        if raw_level is None or raw_level is True:
            return usage_error("dcgmi diag", "specify a diagnostic level with -r", 1)
        level = DIAG_LEVELS.get(str(raw_level).lower())
        if level is None:
            return error(
                f"Error: Invalid diagnostic level '{raw_level}'. Valid levels are 1-4 (quick, medium, long, xlong).",
                1,
            )
        gpus, failure = select_gpus(parsed, node)
        if failure is not None:
            return failure

        failures = {g.id: diag_failures(g) for g in gpus}
        spec = get_hardware_spec(node.system_type)
        lines = [
            "Successfully ran diagnostic for group.",
            _BORDER,
            _row("Diagnostic", "Result"),
            _DOUBLE,
            "|-----  Metadata  ----------+------------------------------------------------|",
            _row("DCGM Version", DCGM_VERSION),
            _row("Driver Version Detected", node.nvidia_driver_version),
            _row("GPU Device IDs Detected", ",".join(spec.gpu_pci_device_id.lower() for _ in gpus)[:46]),
        ]
        category = None
        any_failed = False
        for test_category, name, min_level, kind in DIAG_TESTS:
            if min_level > level:
                continue
            if test_category != category:
                category = test_category
                lines.append(f"|-----  {category}  ".ljust(28, "-") + "+" + "-" * 48 + "|")
            if kind is None:
                failed = []
            elif kind == "any":
                failed = [gid for gid, kinds in failures.items() if kinds]
            else:
                failed = [gid for gid, kinds in failures.items() if kind in kinds]
            if failed:
                any_failed = True
                lines.append(_row(name, f"Fail - GPU(s): {', '.join(str(g) for g in failed)}"))
            else:
                lines.append(_row(name, "Pass"))
        lines.append(_BORDER)

        for gpu in gpus:
            if gpu.has_fatal_xid:
                lines.append(f"Error: GPU {gpu.id} is not accessible (XID 79: GPU has fallen off the bus).")
            elif failures[gpu.id]:
                reasons = "; ".join(msg for sev, msg in health_incidents(gpu) if sev == "Failure") or "see health report"
                lines.append(f"Error: GPU {gpu.id}: {reasons}")
        if any_failed:
            lines.append("Overall Result: FAIL")
            return CommandResult(output="\n".join(lines) + "\n", exit_code=1)
        lines.append("Overall Result: PASS")
        lines.append("All tests passed.")
        return success("\n".join(lines) + "\n")

    def _group(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.has_flag("c", "create"):
            name = parsed.get_flag_str("c", "create")
            if not name:
                return error("Error: A group name is required with -c.", 1)
            return success(f'Successfully created group "{name}" with a group ID of 2\n')
        if parsed.has_flag("d", "delete"):
            group_id = parse_int(parsed.get_flag_str("d", "delete"))
            if group_id is None:
                return error("Error: A numeric group id is required with -d.", 1)
            if group_id in (0, 1):
                return error(f"Error: Group {group_id} is a default group and cannot be removed.", 1)
            return success(f"Successfully removed group {group_id}\n")
        if not parsed.has_flag("l", "list"):
            return usage_error("dcgmi group", "specify -l, -c NAME or -d ID", 1)
        entities = ", ".join(f"GPU {g.id}" for g in node.gpus)
        lines = [
            "+-------------------+----------------------------------------------------------+",
            "| GROUPS                                                                       |",
            "| 1 group found.                                                               |",
            "+===================+==========================================================+",
            "| Groups            |                                                          |",
            "| -> 0              |                                                          |",
            f"|    -> Group ID    | {'0':<56} |",
            f"|    -> Group Name  | {'DCGM_ALL_SUPPORTED_GPUS':<56} |",
            f"|    -> Entities    | {entities[:56]:<56} |",
            "+-------------------+----------------------------------------------------------+",
        ]
        return success("\n".join(lines) + "\n")

    def _stats(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.has_flag("e", "enable"):
            return success("Successfully started process watches.\n")
        if parsed.has_flag("d", "disable"):
            return success("Successfully stopped process watches.\n")
        if parsed.has_flag("j", "jobid"):
            job_id = parse_int(parsed.get_flag_str("j", "jobid"))
            job = context.cluster.get_cluster().get_job(job_id) if job_id is not None else None
            if job is None:
                return error(f"Error: No job statistics found for job id '{parsed.get_flag('j', 'jobid')}'.", 1)
            lines = [
                f"Successfully retrieved statistics for job: {job.job_id}.",
                _BORDER,
                _row("Summary", "Executed on " + (", ".join(f"GPU {g}" for g in job.gpu_ids) or "no GPUs")),
                _row("Job State", job.state),
                _row("Node", job.node_id or "-"),
                _BORDER,
            ]
            return success("\n".join(lines) + "\n")
        return usage_error("dcgmi stats", "specify -e, -d or -j JOBID", 1)

    def _dmon(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        field_ids = parsed.get_flag_str("e", "field-ids")
        if not field_ids:
            return usage_error("dcgmi dmon", "specify field ids with -e (e.g. -e 150,155)", 1)
        fields = [f.strip() for f in field_ids.split(",")]
        unknown = [f for f in fields if f not in DMON_FIELDS]
        if unknown:
            return error(f"Error: Field id {unknown[0]} is not supported.", 1)
        count = parse_int(parsed.get_flag_str("c", "count", default="1"))
        if not count:
            return error("Error: Invalid count.", 1)
        gpus, failure = select_gpus(parsed, node)
        if failure is not None:
            return failure
        header = "#Entity   " + "  ".join(f"{DMON_FIELDS[f][0]:>8}" for f in fields)
        units = "ID        " + "  ".join(f"{DMON_FIELDS[f][1]:>8}" for f in fields)
        lines = [header, units]
        samples = {g.id: dmon_samples(g, count) for g in gpus}
        for i in range(count):
            for gpu in gpus:
                values = []
                for field in fields:
                    if gpu.has_fatal_xid:
                        values.append("N/A")
                        continue
                    sample = samples[gpu.id][i]
                    values.append(
                        {
                            "100": str(gpu.clocks_sm),
                            "101": str(gpu.clocks_mem),
                            "150": str(gpu_temp(gpu)),
                            "155": f"{sample['pwr']:.3f}",
                            "203": str(sample["sm"]),
                            "252": str(gpu.memory_used),
                        }[field]
                    )
                lines.append(f"{'GPU ' + str(gpu.id):<10}" + "  ".join(f"{v:>8}" for v in values))
        return success("\n".join(lines) + "\n")

    def _policy(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.has_flag("set"):
            actions = parsed.get_flag_str("set")
            if not actions:
                return error("Error: --set requires an action pair such as 0,0.", 1)
            return success("Policy successfully set.\n")
        if parsed.has_flag("get"):
            lines = [
                "Policy information",
                _BORDER,
                _row("Policy Information", "DCGM_ALL_SUPPORTED_GPUS"),
                _DOUBLE,
                _row("Violation conditions", "Double-bit ECC errors"),
                _row("", "PCI errors and replays"),
                _row("", "Max temperature threshold - 90"),
                _row("Isolation mode", "Manual"),
                _row("Action on violation", "None"),
                _BORDER,
            ]
            return success("\n".join(lines) + "\n")
        return usage_error("dcgmi policy", "specify --get or --set ACTIONS", 1)

    def _nvlink(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if parsed.has_flag("e", "errors"):
            gpu_id = parse_int(parsed.get_flag_str("g", "gpuid"))
            gpu = node.get_gpu(gpu_id) if gpu_id is not None else None
            if gpu is None:
                return error("Error: specify a valid GPU id with -g.", 1)
            lines = ["+-----------------------------+", "| NVLink Error Counts         |", f"| GPU {gpu.id:<24}|"]
            for link in gpu.nvlinks:
                lines.append(
                    f"|   Link {link.link_id:<2} CRC FLIT {link.tx_errors + link.rx_errors:<4} Replay {link.replay_errors:<4} |"
                )
            lines.append("+-----------------------------+")
            return success("\n".join(lines) + "\n")
        if parsed.has_flag("s", "link-status"):
            lines = ["+----------------------+", "|  NvLink Link Status  |", "+----------------------+", "GPUs:"]
            for gpu in node.gpus:
                states = " ".join("U" if link.status == "Active" else "D" for link in gpu.nvlinks)
                lines.append(f"    gpuId {gpu.id}:")
                lines.append(f"        {states}")
            lines.append("Key: Up=U, Down=D, Disabled=X, Not Supported=_")
            return success("\n".join(lines) + "\n")
        return usage_error("dcgmi nvlink", "specify -s or -e -g GPUID", 1)
