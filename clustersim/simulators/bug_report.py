"""``nvidia-bug-report.sh``: summarize the node's GPU state into a report."""

from __future__ import annotations

import logging

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    BOLD,
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    colorize,
    error,
    gpu_temp,
    help_text,
    pci_bus_id,
    resolve_node,
    success,
)
from clustersim.state.xid import get_xid

LOGGER = logging.getLogger(__name__)

DEFAULT_OUTPUT = "/tmp/nvidia-bug-report.log.gz"

COLLECTION_STEPS = (
    "nvidia-smi",
    "dmesg",
    "lspci",
    "/proc/driver/nvidia",
    "Xorg and kernel logs",
    "DCGM diagnostics state",
)


class BugReportSimulator:
    """Simulates NVIDIA's bug report collection script."""

    METADATA = SimulatorMetadata(
        name="nvidia-bug-report",
        version="535.129.03",
        description="NVIDIA bug report generator",
        commands=("nvidia-bug-report.sh",),
        value_flags=("output-file",),
    )

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        if parsed.has_flag("help", "h"):
            return success(help_text(parsed.base_command, context))
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        if parsed.has_flag("version"):
            return success(f"nvidia-bug-report.sh Version: {node.nvidia_driver_version}\n")

        output_file = parsed.get_flag_str("output-file", "o", default=DEFAULT_OUTPUT)
        if parsed.has_flag("no-compress") and output_file.endswith(".gz"):
            output_file = output_file[:-3]
        verbose = parsed.has_flag("v", "verbose")

        lines = [
            colorize("NVIDIA Bug Report Generator", BOLD),
            "",
            f"nvidia-bug-report.sh will now collect information about your system and create the file '{output_file}'",
            "",
        ]
        for index, step in enumerate(COLLECTION_STEPS, 1):
            lines.append(f"  [{index}/{len(COLLECTION_STEPS)}] Collecting {step}..." if verbose else f"  - {step}")

        lines.extend(
            [
                "",
                "System Information",
                f"  Hostname: {node.hostname}",
                f"  System Type: {node.system_type}",
                f"  OS: {node.os_version}",
                f"  Kernel: {node.kernel_version}",
                "",
                "Driver Information",
                f"  Driver Version: {node.nvidia_driver_version}",
                f"  CUDA Version: {node.cuda_version}",
                "",
                "GPU Summary",
                f"  Total GPUs: {len(node.gpus)}",
            ]
        )
        for status in ("OK", "Warning", "Critical"):
            count = sum(1 for g in node.gpus if g.health_status == status)
            lines.append(f"  {status}: {count}")
        lines.extend(f"  GPU {g.id}: {g.name}, {gpu_temp(g)}C, {g.health_status}" for g in node.gpus)

        lines.extend(["", "XID Error History"])
        xid_lines = []
        for gpu in node.gpus:
            for xid in gpu.xid_errors:
                info = get_xid(xid.code)
                text = info.name if info else xid.description
                xid_lines.append(f"  GPU {gpu.id} (PCI:{pci_bus_id(gpu)}): Xid {xid.code} [{xid.severity}] {text}")
        lines.extend(xid_lines or ["  No XID errors recorded"])

        size_mb = 3.2 + 0.4 * len(xid_lines)
        if not output_file.endswith(".gz"):
            size_mb *= 6.5
        lines.extend(
            [
                "",
                "nvidia-bug-report.sh completed successfully.",
                f"Report written to: {output_file} ({size_mb:.1f} MB)",
                "",
                "Please include this file when reporting problems to NVIDIA Enterprise Support.",
            ]
        )
        LOGGER.debug("bug report for %s with %d XID record(s)", node.id, len(xid_lines))
        return success("\n".join(lines) + "\n")
