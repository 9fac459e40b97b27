"""nvidia-smi simulator.

Renders the GPU state of the current node the way the NVIDIA System
Management Interface does: the summary table, ``-L``, ``-q``, CSV queries,
and the administrative actions (reset, persistence, power limit, MIG).

A GPU that has fallen off the bus (XID 79) cannot be queried: it is left
out of the summary table and reported in a warning footer, and any command
that targets it with ``-i`` fails.
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
    parse_int,
    resolve_node,
    success,
    usage_error,
)
from clustersim.state.hardware import get_hardware_spec
from clustersim.state.metrics import dmon_samples
from clustersim.state.models import GPU, Job, Node

LOGGER = logging.getLogger(__name__)

TABLE_WIDTH = 89
POWER_LIMIT_MIN_FRACTION = 0.25

# profile id, compute slices, memory eighths, max instances
MIG_PROFILES = (
    (19, 1, 1, 7),
    (15, 1, 2, 4),
    (14, 2, 2, 3),
    (9, 3, 4, 2),
    (5, 4, 4, 1),
    (0, 7, 8, 1),
)

_KNOWN_FLAGS = {
    "i", "id", "L", "list-gpus", "q", "query", "d", "display", "query-gpu", "query-compute-apps",
    "format", "r", "gpu-reset", "pm", "persistence-mode", "pl", "power-limit", "mig",
    "multi-instance-gpu", "h", "help", "v", "version", "c", "s", "e", "m", "lgip", "lgi", "cgi",
    "C", "dgi", "gi", "lci",
}


def _fallen_off_bus(gpu: GPU) -> str:
    return f"Unable to query GPU {gpu.id} ({gpu.pci_address}): GPU is not accessible (XID 79: GPU has fallen off the bus)"


def _is_critical(gpu: GPU) -> bool:
    return gpu.health_status == "Critical"


def _perf_state(gpu: GPU) -> str:
    busy = gpu.utilization > 0 or gpu.allocated_job_id is not None
    return "P0" if busy or gpu.persistence_mode else "P8"


def mig_profiles(gpu: GPU) -> list[dict]:
    """MIG GPU-instance profiles supported by ``gpu``, largest memory last."""
    slice_gb = gpu.memory_total // 1024 // 8
    profiles = []
    for profile_id, compute, eighths, count in MIG_PROFILES:
        profiles.append(
            {
                "id": profile_id,
                "name": f"{compute}g.{slice_gb * eighths}gb",
                "compute": compute,
                "memory_mib": gpu.memory_total * eighths // 8,
                "max_instances": count,
            }
        )
    return profiles


def running_processes(cluster_jobs: list[Job], node: Node) -> list[tuple[GPU, int, str]]:
    """(gpu, pid, process name) for each GPU held by a running job on ``node``."""
    processes = []
    for job in cluster_jobs:
        if job.state != "RUNNING" or job.node_id != node.id:
            continue
        for gpu_id in job.gpu_ids:
            gpu = node.get_gpu(gpu_id)
            if gpu is not None:
                processes.append((gpu, job.job_id * 10 + gpu_id, job.command.split()[0] if job.command else job.name))
    return processes


def _boxed(text: str = "") -> str:
    return f"| {text:<{TABLE_WIDTH - 4}} |"


def _rule(char: str = "-") -> str:
    return "+" + char * (TABLE_WIDTH - 2) + "+"


def _column_rule(char: str = "-", corner: str = "+") -> str:
    return f"{corner}{char * 41}+{char * 22}+{char * 22}{corner}"


class NvidiaSmiSimulator:
    """Simulates ``nvidia-smi`` against the current node's GPUs."""

    METADATA = SimulatorMetadata(
        name="nvidia-smi",
        version="535.129.03",
        description="NVIDIA System Management Interface",
        commands=("nvidia-smi",),
        value_flags=(
            "id",
            "display",
            "query-gpu",
            "query-compute-apps",
            "format",
            "persistence-mode",
            "power-limit",
            "multi-instance-gpu",
        ),
    )

    def __init__(self):
        self._subcommands: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "mig": self._mig,
            "nvlink": self._nvlink,
            "topo": self._topo,
            "dmon": self._dmon,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        node = resolve_node(context)
        if node is None:
            return error(f"nvidia-smi: node {context.current_node} not found")
        banner = self._version_banner(node)
        handled = handle_help_version(parsed, context, banner)
        if handled is not None:
            return handled

        if parsed.subcommands:
            handler = self._subcommands.get(parsed.subcommands[0])
            if handler is None:
                return usage_error("nvidia-smi", f"invalid subcommand '{parsed.subcommands[0]}'")
            return handler(parsed, context, node)

        unknown = [f for f in parsed.flags if f not in _KNOWN_FLAGS]
        if unknown:
            return error(
                f"Invalid combination of input arguments. Please run 'nvidia-smi -h' for help.\n"
                f"Unknown option: -{unknown[0]}",
                2,
            )
        if parsed.has_flag("gpu-reset", "r"):
            return self._gpu_reset(parsed, context, node)
        if parsed.has_flag("query-gpu"):
            return self._query_gpu(parsed, node)
        if parsed.has_flag("query-compute-apps"):
            return self._query_compute_apps(parsed, context, node)
        if parsed.has_flag("L", "list-gpus"):
            return self._list_gpus(node)
        if parsed.has_flag("q", "query"):
            return self._query(parsed, node)
        if parsed.has_flag("pm", "persistence-mode"):
            return self._persistence_mode(parsed, context, node)
        if parsed.has_flag("pl", "power-limit"):
            return self._power_limit(parsed, context, node)
        if parsed.has_flag("mig", "multi-instance-gpu"):
            return self._mig_mode(parsed, context, node)
        return self._summary(parsed, context, node)

    def _version_banner(self, node: Node) -> str:
        return (
            f"NVIDIA-SMI version  : {node.nvidia_driver_version}\n"
            f"NVML version        : 12.{node.nvidia_driver_version}\n"
            f"DRIVER version      : {node.nvidia_driver_version}\n"
            f"CUDA Version        : {node.cuda_version}\n"
        )

    def _select_gpus(self, parsed: ParsedCommand, node: Node) -> tuple[list[GPU], Optional[CommandResult]]:
        """GPUs named by ``-i`` (index list, UUID or bus id), or all GPUs."""
        value = parsed.get_flag("i", "id")
        if value is None:
            return list(node.gpus), None
        if value is True:
            return [], error("Option -i requires an argument.\nPlease run 'nvidia-smi -h' for help.", 2)
        selected = []
        for part in str(value).split(","):
            part = part.strip()
            index = parse_int(part)
            gpu = None
            if index is not None:
                gpu = node.get_gpu(index)
            else:
                gpu = next(
                    (g for g in node.gpus if part.lower() in (g.uuid.lower(), g.pci_address.lower())), None
                )
            if gpu is None:
                return [], error(f"No devices were found\nUnable to query GPU {part}: device not found", 1)
            selected.append(gpu)
        return selected, None

    def _summary(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        if parsed.has_flag("i", "id"):
            fatal = [g for g in gpus if g.has_fatal_xid]
            if fatal:
                return error(_fallen_off_bus(fatal[0]), 1)

        visible = [g for g in gpus if not g.has_fatal_xid]
        hidden = [g for g in gpus if g.has_fatal_xid]
        driver = node.nvidia_driver_version
        header = f"NVIDIA-SMI {driver}".ljust(34) + f"Driver Version: {driver}".ljust(31) + f"CUDA Version: {node.cuda_version}"
        lines = [
            _rule(),
            _boxed(header),
            _column_rule(),
            "| GPU  Name                 Persistence-M | Bus-Id        Disp.A | Volatile Uncorr. ECC |",
            "| Fan  Temp   Perf          Pwr:Usage/Cap |         Memory-Usage | GPU-Util  Compute M. |",
            "|                                         |                      |               MIG M. |",
            _column_rule("="),
        ]
        for gpu in visible:
            lines.extend(self._gpu_rows(gpu))
            lines.append(_column_rule())

        if hidden:
            lines.append("")
            lines.append(f"WARNING: {len(hidden)} GPU(s) not shown due to critical errors")
            for gpu in hidden:
                lines.append(f"  GPU {gpu.id} ({gpu.pci_address}): XID 79 - GPU has fallen off the bus")
            lines.append("  Run 'nvidia-smi -q' or check 'dmesg' for details. A node reboot is required.")

        lines.extend(["", _rule(), _boxed("Processes:")])
        lines.append(_boxed(" GPU   GI   CI        PID   Type   Process name                            GPU Memory"))
        lines.append(_boxed("       ID   ID                                                             Usage     "))
        lines.append("|" + "=" * (TABLE_WIDTH - 2) + "|")
        shown = {g.id for g in visible}
        processes = [p for p in running_processes(context.cluster.get_cluster().jobs, node) if p[0].id in shown]
        if not processes:
            lines.append(_boxed(" No running processes found"))
        for gpu, pid, name in processes:
            lines.append(
                _boxed(f"{gpu.id:>4}   N/A  N/A  {pid:>9}      C   {name[:38]:<38}{gpu.memory_used:>7}MiB")
            )
        lines.append(_rule())
        return success("\n".join(lines) + "\n")

    def _gpu_rows(self, gpu: GPU) -> list[str]:
        persistence = "On" if gpu.persistence_mode else "Off"
        ecc = str(gpu.ecc_errors.double_bit)
        mig = "Enabled" if gpu.mig_mode else "Disabled"
        if _is_critical(gpu):
            temp, perf, power, util = "ERR!", "ERR!", f"ERR! / {gpu.power_limit:.0f}W", "ERR!"
            ecc = "ERR!"
        else:
            temp = f"{gpu_temp(gpu)}C"
            perf = _perf_state(gpu)
            power = f"{gpu.power_draw:.0f}W / {gpu.power_limit:.0f}W"
            util = f"{gpu.utilization:.0f}%"
        memory = f"{gpu.memory_used}MiB / {gpu.memory_total}MiB"
        return [
            f"| {gpu.id:>3}  {gpu.name[:26]:<26}{persistence:>8} | {gpu.pci_address:<16} {'Off':>3} | {ecc:>20} |",
            f"| {'N/A':<4} {temp:>4}   {perf:<4} {power:>22} | {memory:>20} | {util:>8}  {'Default':>10} |",
            f"|{' ' * 41}|{' ' * 22}| {mig:>20} |",
        ]

    def _list_gpus(self, node: Node) -> CommandResult:
        lines = []
        for gpu in node.gpus:
            if gpu.has_fatal_xid:
                lines.append(
                    f"GPU {gpu.id}: Unable to determine the device handle for GPU {gpu.pci_address}: "
                    f"Unknown Error (XID 79)"
                )
            else:
                lines.append(f"GPU {gpu.id}: {gpu.name} (UUID: {gpu.uuid})")
                for inst in gpu.mig_instances:
                    lines.append(
                        f"  MIG {inst.profile_name:<10} Device {inst.id:>2}: (UUID: MIG-{gpu.uuid[4:]}-{inst.id})"
                    )
        return success("\n".join(lines) + "\n")

    def _query(self, parsed: ParsedCommand, node: Node) -> CommandResult:
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        if parsed.has_flag("i", "id"):
            fatal = [g for g in gpus if g.has_fatal_xid]
            if fatal:
                return error(_fallen_off_bus(fatal[0]), 1)
        display = parsed.get_flag_str("d", "display", default="")
        sections = {s.strip().upper() for s in display.split(",") if s.strip()}
        spec = get_hardware_spec(node.system_type)

        def wanted(name: str) -> bool:
            return not sections or name in sections

        lines = [
            "",
            "==============NVSMI LOG==============",
            "",
            f"{'Driver Version':<38}: {node.nvidia_driver_version}",
            f"{'CUDA Version':<38}: {node.cuda_version}",
            "",
            f"{'Attached GPUs':<38}: {len(node.gpus)}",
        ]
        for gpu in gpus:
            lines.append(f"GPU {gpu.pci_address}")
            lines.append(f"    {'Product Name':<34}: {gpu.name}")
            if gpu.has_fatal_xid:
                lines.append(f"    {'Status':<34}: GPU is not accessible (XID 79: GPU has fallen off the bus)")
                continue
            lines.append(f"    {'Product Architecture':<34}: {spec.generation}")
            if not sections:
                lines += [
                    f"    {'Persistence Mode':<34}: {'Enabled' if gpu.persistence_mode else 'Disabled'}",
                    "    MIG Mode",
                    f"        {'Current':<30}: {'Enabled' if gpu.mig_mode else 'Disabled'}",
                    f"        {'Pending':<30}: {'Enabled' if gpu.mig_mode else 'Disabled'}",
                    f"    {'GPU UUID':<34}: {gpu.uuid}",
                    f"    {'Minor Number':<34}: {gpu.id}",
                    "    PCI",
                    f"        {'Bus Id':<30}: {gpu.pci_address}",
                    f"        {'Device Id':<30}: 0x{spec.gpu_pci_device_id}10DE",
                ]
            if wanted("PERFORMANCE"):
                lines.append(f"    {'Performance State':<34}: {_perf_state(gpu)}")
            if wanted("MEMORY"):
                lines += [
                    "    FB Memory Usage",
                    f"        {'Total':<30}: {gpu.memory_total} MiB",
                    f"        {'Used':<30}: {gpu.memory_used} MiB",
                    f"        {'Free':<30}: {gpu.memory_total - gpu.memory_used} MiB",
                ]
            if wanted("UTILIZATION"):
                lines += ["    Utilization", f"        {'Gpu':<30}: {gpu.utilization:.0f} %"]
            if wanted("ECC"):
                agg = gpu.ecc_errors.aggregated
                lines += [
                    "    ECC Errors",
                    "        Volatile",
                    f"            {'Single Bit ECC':<26}: {gpu.ecc_errors.single_bit}",
                    f"            {'Double Bit ECC':<26}: {gpu.ecc_errors.double_bit}",
                    "        Aggregate",
                    f"            {'Single Bit ECC':<26}: {agg.single_bit}",
                    f"            {'Double Bit ECC':<26}: {agg.double_bit}",
                ]
            if wanted("TEMPERATURE"):
                lines += [
                    "    Temperature",
                    f"        {'GPU Current Temp':<30}: {gpu_temp(gpu)} C",
                    f"        {'GPU Shutdown Temp':<30}: 92 C",
                    f"        {'GPU Slowdown Temp':<30}: 89 C",
                    f"        {'GPU Max Operating Temp':<30}: 85 C",
                ]
            if wanted("POWER"):
                lines += [
                    "    GPU Power Readings",
                    f"        {'Power Draw':<30}: {gpu.power_draw:.2f} W",
                    f"        {'Current Power Limit':<30}: {gpu.power_limit:.2f} W",
                    f"        {'Max Power Limit':<30}: {spec.gpu_tdp_watts:.2f} W",
                ]
            if wanted("CLOCK"):
                lines += [
                    "    Clocks",
                    f"        {'SM':<30}: {gpu.clocks_sm} MHz",
                    f"        {'Memory':<30}: {gpu.clocks_mem} MHz",
                ]
            if not sections:
                lines.append("    Xid Events")
                if not gpu.xid_errors:
                    lines.append(f"        {'Recent':<30}: None")
                for xid in gpu.xid_errors:
                    lines.append(f"        {'XID ' + str(xid.code):<30}: {xid.description} ({xid.severity})")
        return success("\n".join(lines) + "\n")

    def _query_field(self, gpu: GPU, node: Node, field: str, nounits: bool) -> Optional[str]:
        def unit(value: str, suffix: str) -> str:
            return value if nounits else f"{value} {suffix}"

        ecc = gpu.ecc_errors
        fields = {
            "index": lambda: str(gpu.id),
            "name": lambda: gpu.name,
            "uuid": lambda: gpu.uuid,
            "pci.bus_id": lambda: gpu.pci_address,
            "driver_version": lambda: node.nvidia_driver_version,
            "count": lambda: str(len(node.gpus)),
            "persistence_mode": lambda: "Enabled" if gpu.persistence_mode else "Disabled",
            "pstate": lambda: _perf_state(gpu),
            "compute_mode": lambda: "Default",
            "mig.mode.current": lambda: "Enabled" if gpu.mig_mode else "Disabled",
            "temperature.gpu": lambda: str(gpu_temp(gpu)),
            "utilization.gpu": lambda: unit(f"{gpu.utilization:.0f}", "%"),
            "utilization.memory": lambda: unit(f"{gpu.memory_used * 100 // gpu.memory_total}", "%"),
            "memory.total": lambda: unit(str(gpu.memory_total), "MiB"),
            "memory.used": lambda: unit(str(gpu.memory_used), "MiB"),
            "memory.free": lambda: unit(str(gpu.memory_total - gpu.memory_used), "MiB"),
            "power.draw": lambda: unit(f"{gpu.power_draw:.2f}", "W"),
            "power.limit": lambda: unit(f"{gpu.power_limit:.2f}", "W"),
            "clocks.sm": lambda: unit(str(gpu.clocks_sm), "MHz"),
            "clocks.current.sm": lambda: unit(str(gpu.clocks_sm), "MHz"),
            "clocks.mem": lambda: unit(str(gpu.clocks_mem), "MHz"),
            "clocks.current.memory": lambda: unit(str(gpu.clocks_mem), "MHz"),
            "ecc.errors.corrected.volatile.total": lambda: str(ecc.single_bit),
            "ecc.errors.uncorrected.volatile.total": lambda: str(ecc.double_bit),
            "ecc.errors.corrected.aggregate.total": lambda: str(ecc.aggregated.single_bit),
            "ecc.errors.uncorrected.aggregate.total": lambda: str(ecc.aggregated.double_bit),
        }
        getter = fields.get(field)
        if getter is None:
            return None
        if gpu.has_fatal_xid and field not in ("index", "name", "uuid", "pci.bus_id", "driver_version", "count"):
            return "[GPU is lost]"
        return getter()

    def _query_gpu(self, parsed: ParsedCommand, node: Node) -> CommandResult:
        query = parsed.get_flag_str("query-gpu")
        fmt = parsed.get_flag_str("format")
        if not query:
            return error("Option --query-gpu requires a comma-separated list of fields.", 2)
        if not fmt or not fmt.startswith("csv"):
            return error("Missing or invalid --format option. Use --format=csv[,noheader][,nounits].", 2)
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        options = set(fmt.split(",")[1:])
        nounits = "nounits" in options
        fields = [f.strip() for f in query.split(",") if f.strip()]

        header_units = {"utilization.gpu": "%", "utilization.memory": "%", "memory.total": "MiB",
                        "memory.used": "MiB", "memory.free": "MiB", "power.draw": "W", "power.limit": "W",
                        "clocks.sm": "MHz", "clocks.mem": "MHz", "clocks.current.sm": "MHz",
                        "clocks.current.memory": "MHz"}
        rows = []
        for gpu in gpus:
            values = []
            for field in fields:
                value = self._query_field(gpu, node, field, nounits)
                if value is None:
                    return error(f'Field "{field}" is not a valid field to query.', 2)
                values.append(value)
            rows.append(", ".join(values))
        lines = []
        if "noheader" not in options:
            lines.append(
                ", ".join(f"{f} [{header_units[f]}]" if f in header_units and not nounits else f for f in fields)
            )
        lines.extend(rows)
        return success("\n".join(lines) + "\n")

    def _query_compute_apps(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        fmt = parsed.get_flag_str("format")
        if not fmt or not fmt.startswith("csv"):
            return error("Missing or invalid --format option. Use --format=csv[,noheader][,nounits].", 2)
        query = parsed.get_flag_str("query-compute-apps", default="pid,process_name,used_memory")
        fields = [f.strip() for f in query.split(",") if f.strip()]
        lines = [] if "noheader" in fmt else [", ".join(fields)]
        for gpu, pid, name in running_processes(context.cluster.get_cluster().jobs, node):
            values = {
                "pid": str(pid),
                "process_name": name,
                "used_memory": f"{gpu.memory_used} MiB",
                "used_gpu_memory": f"{gpu.memory_used} MiB",
                "gpu_uuid": gpu.uuid,
                "gpu_bus_id": gpu.pci_address,
            }
            unknown = [f for f in fields if f not in values]
            if unknown:
                return error(f'Field "{unknown[0]}" is not a valid field to query.', 2)
            lines.append(", ".join(values[f] for f in fields))
        return success("\n".join(lines) + "\n")

    def _gpu_reset(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        lines = []
        exit_code = 0
        for gpu in gpus:
            if gpu.has_fatal_xid:
                lines.append(
                    f"Unable to reset GPU {gpu.pci_address}: GPU is not accessible. "
                    f"The GPU has fallen off the bus (XID 79).\n"
                    f"A node reboot or physical reseat is required to recover this GPU."
                )
                exit_code = 1
                continue
            if gpu.allocated_job_id is not None:
                lines.append(
                    f"GPU {gpu.pci_address} is currently in use by another process "
                    f"(Slurm job {gpu.allocated_job_id}).\n"
                    f"Please first kill all processes using this device and all compute applications "
                    f"running in the system."
                )
                exit_code = 1
                continue
            if not context.cluster.clear_gpu_errors(node.id, gpu.id, command=parsed.raw):
                lines.append(f"Unable to reset GPU {gpu.pci_address}: Insufficient Permissions")
                exit_code = 1
                continue
            LOGGER.debug("Reset GPU %s on %s", gpu.id, node.id)
            lines.append(f"GPU {gpu.pci_address} was reset successfully.")
        if exit_code == 0:
            lines.append("All done.")
        return CommandResult(output="\n".join(lines) + "\n", exit_code=exit_code)

    def _persistence_mode(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        value = parsed.get_flag_str("pm", "persistence-mode")
        if value not in ("0", "1", "ENABLED", "DISABLED"):
            return error("Invalid persistence mode value. Use 0/DISABLED or 1/ENABLED.", 2)
        enabled = value in ("1", "ENABLED")
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        lines = []
        for gpu in gpus:
            if gpu.has_fatal_xid:
                return error(_fallen_off_bus(gpu), 1)
            context.cluster.update_gpu(node.id, gpu.id, {"persistence_mode": enabled}, command=parsed.raw)
            lines.append(f"{'Enabled' if enabled else 'Disabled'} persistence mode for GPU {gpu.pci_address}.")
        lines.append("All done.")
        return success("\n".join(lines) + "\n")

    def _power_limit(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        raw = parsed.get_flag_str("pl", "power-limit")
        try:
            watts = float(raw)
        except (TypeError, ValueError):
            return error("Invalid power limit value. Provide the limit in watts.", 2)
        spec = get_hardware_spec(node.system_type)
        low = spec.gpu_tdp_watts * POWER_LIMIT_MIN_FRACTION
        high = float(spec.gpu_tdp_watts)
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        lines = []
        for gpu in gpus:
            if gpu.has_fatal_xid:
                return error(_fallen_off_bus(gpu), 1)
            if not low <= watts <= high:
                return error(
                    f"Provided power limit {watts:.2f} W is not a valid power limit which should be between "
                    f"{low:.2f} W and {high:.2f} W for GPU {gpu.pci_address}\n"
                    f"Terminating early due to previous errors.",
                    2,
                )
            previous = gpu.power_limit
            context.cluster.update_gpu(node.id, gpu.id, {"power_limit": watts}, command=parsed.raw)
            lines.append(f"Power limit for GPU {gpu.pci_address} was set to {watts:.2f} W from {previous:.2f} W.")
        lines.append("All done.")
        return success("\n".join(lines) + "\n")

    def _mig_mode(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        value = parsed.get_flag_str("mig", "multi-instance-gpu")
        if value not in ("0", "1", "ENABLED", "DISABLED"):
            return error("Invalid MIG mode value. Use 0/DISABLED or 1/ENABLED.", 2)
        enabled = value in ("1", "ENABLED")
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        lines = []
        for gpu in gpus:
            if gpu.has_fatal_xid:
                return error(_fallen_off_bus(gpu), 1)
            if gpu.allocated_job_id is not None:
                return error(f"Unable to change MIG mode for GPU {gpu.pci_address}: GPU is in use by job {gpu.allocated_job_id}", 1)
            context.cluster.set_mig_mode(node.id, gpu.id, enabled, command=parsed.raw)
            lines.append(f"{'Enabled' if enabled else 'Disabled'} MIG Mode for GPU {gpu.pci_address}")
        lines.append("Warning: the new MIG mode takes full effect after a GPU reset or node reboot.")
        lines.append("All done.")
        return success("\n".join(lines) + "\n")

    def _mig(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        mig_gpus = [g for g in gpus if g.mig_mode and not g.has_fatal_xid]
        if parsed.has_flag("lgip"):
            if not mig_gpus:
                return error("No MIG-enabled devices found.", 1)
            lines = [
                "+-----------------------------------------------------------------------------+",
                "| GPU instance profiles:                                                      |",
                "| GPU   Name             ID    Instances   Memory                              |",
                "|                              Free/Total   GiB                                |",
                "|=============================================================================|",
            ]
            for gpu in mig_gpus:
                for profile in mig_profiles(gpu):
                    used = sum(1 for i in gpu.mig_instances if i.profile_id == profile["id"])
                    free = max(profile["max_instances"] - used, 0)
                    text = (
                        f"{gpu.id:>3}  MIG {profile['name']:<12} {profile['id']:>3}"
                        f"     {free}/{profile['max_instances']}      {profile['memory_mib'] / 1024:>7.2f}"
                    )
                    lines.append(f"| {text:<75} |")
            lines.append("+-----------------------------------------------------------------------------+")
            return success("\n".join(lines) + "\n")
        if parsed.has_flag("lgi"):
            if not mig_gpus:
                return error("No MIG-enabled devices found.", 1)
            lines = ["GPU   Name             Profile  Instance  Memory MiB"]
            for gpu in mig_gpus:
                for inst in gpu.mig_instances:
                    lines.append(
                        f"{gpu.id:>3}   MIG {inst.profile_name:<12} {inst.profile_id:>5}  "
                        f"{inst.gpu_instance_id:>8}  {inst.memory_mib:>10}"
                    )
            if len(lines) == 1:
                lines.append("No GPU instances found.")
            return success("\n".join(lines) + "\n")
        if parsed.has_flag("cgi"):
            return self._create_instances(parsed, context, node, mig_gpus)
        if parsed.has_flag("dgi"):
            if not mig_gpus:
                return error("No MIG-enabled devices found.", 1)
            lines = []
            for gpu in mig_gpus:
                for inst in gpu.mig_instances:
                    lines.append(f"Successfully destroyed GPU instance ID {inst.gpu_instance_id:>2} from GPU {gpu.id:>2}")
                context.cluster.set_mig_mode(node.id, gpu.id, True, command=parsed.raw)
            return success("\n".join(lines or ["No GPU instances found."]) + "\n")
        return usage_error("nvidia-smi mig", "specify one of -lgip, -lgi, -cgi, -dgi")

    def _create_instances(
        self, parsed: ParsedCommand, context: CommandContext, node: Node, mig_gpus: list[GPU]
    ) -> CommandResult:
        if not mig_gpus:
            return error("No MIG-enabled devices found.", 1)
        requested = parsed.get_flag_str("cgi", default="")
        lines = []
        for gpu in mig_gpus:
            profiles = mig_profiles(gpu)
            for token in [t.strip() for t in requested.split(",") if t.strip()]:
                profile = next(
                    (p for p in profiles if token in (str(p["id"]), p["name"], f"MIG {p['name']}")), None
                )
                if profile is None:
                    return error(f"Unable to create a GPU instance on GPU {gpu.id}: invalid profile '{token}'", 2)
                used_compute = sum(
                    next((p["compute"] for p in profiles if p["id"] == i.profile_id), 0) for i in gpu.mig_instances
                )
                if used_compute + profile["compute"] > 7:
                    return error(
                        f"Unable to create a GPU instance on GPU {gpu.id} using profile {profile['id']}: "
                        f"Insufficient Resources",
                        1,
                    )
                inst = context.cluster.add_mig_instance(
                    node.id, gpu.id, profile["id"], profile["name"], profile["memory_mib"], command=parsed.raw
                )
                if inst is None:
                    return error(
                        f"Unable to create a GPU instance on GPU {gpu.id} using profile {profile['id']}: "
                        f"Insufficient Resources",
                        1,
                    )
                lines.append(
                    f"Successfully created GPU instance ID {inst.gpu_instance_id:>2} on GPU {gpu.id:>2} "
                    f"using profile MIG {profile['name']} (ID {profile['id']:>2})"
                )
                if parsed.has_flag("C"):
                    lines.append(
                        f"Successfully created compute instance ID {inst.compute_instance_id:>2} on GPU {gpu.id:>2} "
                        f"GPU instance ID {inst.gpu_instance_id:>2} using profile MIG {profile['name']} (ID  0)"
                    )
        return success("\n".join(lines) + "\n")

    def _nvlink(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        show_errors = parsed.has_flag("e")
        lines = []
        for gpu in gpus:
            lines.append(f"GPU {gpu.id}: {gpu.name} (UUID: {gpu.uuid})")
            if gpu.has_fatal_xid:
                lines.append("\t Unable to query NVLink: GPU is not accessible (XID 79)")
                continue
            for link in gpu.nvlinks:
                if show_errors:
                    lines.append(f"\t Link {link.link_id}: Replay Errors: {link.replay_errors}")
                    lines.append(f"\t Link {link.link_id}: Recovery Errors: 0")
                    lines.append(f"\t Link {link.link_id}: CRC Errors: {link.tx_errors + link.rx_errors}")
                elif link.status == "Down":
                    lines.append(f"\t Link {link.link_id}: <inactive>")
                else:
                    lines.append(f"\t Link {link.link_id}: {link.speed:g} GB/s")
        return success("\n".join(lines) + "\n")

    def _topo(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if not parsed.has_flag("m", "matrix"):
            return usage_error("nvidia-smi topo", "specify -m to print the topology matrix")
        spec = get_hardware_spec(node.system_type)
        gpu_names = [f"GPU{g.id}" for g in node.gpus]
        nic_names = [f"NIC{h.id}" for h in node.hcas]
        columns = gpu_names + nic_names
        half = max(len(node.gpus) // 2, 1)
        cores = node.cpu_cores_per_socket
        lines = ["\t" + "\t".join(columns) + "\tCPU Affinity\tNUMA Affinity"]
        for gpu in node.gpus:
            cells = []
            for other in node.gpus:
                cells.append("X" if other.id == gpu.id else spec.nvlink_label)
            for hca in node.hcas:
                cells.append("PXB" if hca.id // 2 == gpu.id // 2 else ("NODE" if hca.id // half == gpu.id // half else "SYS"))
            socket = gpu.id // half
            affinity = f"{socket * cores}-{socket * cores + cores - 1},{(socket + 2) * cores}-{(socket + 2) * cores + cores - 1}"
            lines.append(f"GPU{gpu.id}\t" + "\t".join(cells) + f"\t{affinity}\t{socket}")
        for hca in node.hcas:
            cells = []
            for gpu in node.gpus:
                cells.append("PXB" if hca.id // 2 == gpu.id // 2 else ("NODE" if hca.id // half == gpu.id // half else "SYS"))
            for other in node.hcas:
                cells.append("X" if other.id == hca.id else ("PIX" if other.id // 2 == hca.id // 2 else "SYS"))
            lines.append(f"NIC{hca.id}\t" + "\t".join(cells))
        lines += [
            "",
            "Legend:",
            "",
            "  X    = Self",
            "  SYS  = Connection traversing PCIe as well as the SMP interconnect between NUMA nodes",
            "  NODE = Connection traversing PCIe as well as the interconnect between PCIe Host Bridges within a NUMA node",
            "  PXB  = Connection traversing multiple PCIe bridges (without traversing the PCIe Host Bridge)",
            "  PIX  = Connection traversing at most a single PCIe bridge",
            "  NV#  = Connection traversing a bonded set of # NVLinks",
            "",
            "NIC Legend:",
            "",
        ]
        lines += [f"  NIC{h.id}: {h.dev_name}" for h in node.hcas]
        return success("\n".join(lines) + "\n")

    def _dmon(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        count = parse_int(parsed.get_flag_str("c", default="5"))
        if count is None or count == 0:
            return error("Invalid sample count for -c.", 2)
        gpus, failure = self._select_gpus(parsed, node)
        if failure is not None:
            return failure
        samples = {g.id: dmon_samples(g, count) for g in gpus}
        lines = [
            "# gpu    pwr  gtemp  mtemp     sm    mem    enc    dec   mclk   pclk",
            "# Idx      W      C      C      %      %      %      %    MHz    MHz",
        ]
        for i in range(count):
            for gpu in gpus:
                if gpu.has_fatal_xid:
                    lines.append(f"{gpu.id:>5}" + "      -" * 9)
                    continue
                s = samples[gpu.id][i]
                lines.append(
                    f"{gpu.id:>5} {s['pwr']:>6} {s['gtemp']:>6} {s['mtemp']:>6} {s['sm']:>6} {s['mem']:>6}"
                    f" {0:>6} {0:>6} {s['mclk']:>6} {s['pclk']:>6}"
                )
        return success("\n".join(lines) + "\n")
