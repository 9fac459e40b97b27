"""Base Command Manager command-line tools: ``bcm`` and ``bcm-node``."""

from __future__ import annotations

import logging
from typing import Callable

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    format_table,
    help_text,
    parse_int,
    success,
)
from clustersim.simulators.cmsh import HEADNODE, category_of, device_ip
from clustersim.simulators.mellanox import LATEST_FIRMWARE
from clustersim.state.models import ClusterConfig, Node

LOGGER = logging.getLogger(__name__)

BCM_VERSION = "10.24.03"

# provisioning history shown by "bcm job"
DEPLOYMENT_JOBS = (
    (
        1,
        "node-discovery",
        "completed",
        (
            "Starting node discovery on internalnet",
            "Discovered {nodes} nodes via PXE",
            "Node discovery completed",
        ),
    ),
    (
        2,
        "image-provision",
        "completed",
        (
            "Provisioning software image baseos-image-v10",
            "Synchronized image to {nodes} nodes",
        ),
    ),
    (
        3,
        "firmware-update",
        "completed",
        (
            "Checking GPU and adapter firmware",
            "Applied firmware bundle to {nodes} nodes",
            "firmware update finished",
        ),
    ),
)

BCM_SHELL = f"""Base Command Manager (BCM) Shell {BCM_VERSION}

Available commands:
  bcm ha status          High availability status
  bcm job list           Deployment jobs
  bcm job logs <id>      Logs of a deployment job
  bcm validate pod       SuperPOD configuration validation
  bcm-node list          Node inventory
  bcm-node show <node>   Node details
"""


def _node_health(node: Node) -> str:
    if node.health_status == "Critical" or any(g.health_status == "Critical" for g in node.gpus):
        return "Critical"
    if node.health_status == "Warning" or any(g.health_status == "Warning" for g in node.gpus):
        return "Warning"
    return "Healthy"


class BcmSimulator:
    """Simulates the ``bcm`` and ``bcm-node`` front ends of Base Command Manager."""

    METADATA = SimulatorMetadata(
        name="bcm",
        version=BCM_VERSION,
        description="Base Command Manager tools",
        commands=("bcm", "bcm-node"),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext], CommandResult]] = {
            "bcm": self._bcm,
            "bcm-node": self._bcm_node,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"Unknown BCM tool: {parsed.base_command}", 127)
        if parsed.has_flag("help", "h"):
            return success(help_text(parsed.base_command, context, BCM_SHELL))
        if parsed.has_flag("version"):
            return success(f"{parsed.base_command} {BCM_VERSION}\n")
        return handler(parsed, context)

    def _bcm(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        words = parsed.args
        if not words:
            return success(BCM_SHELL)
        cluster = context.cluster.get_cluster()
        if words[:2] == ["ha", "status"]:
            return self._ha_status(cluster)
        if words[:2] == ["job", "list"]:
            rows = [[job_id, kind, status] for job_id, kind, status, _ in DEPLOYMENT_JOBS]
            return success("BCM Deployment Jobs\n\n" + format_table(["Job ID", "Type", "Status"], rows) + "\n")
        if words[:2] == ["job", "logs"]:
            if len(words) < 3:
                return error("bcm: Job ID not specified. Usage: bcm job logs <id>", 1)
            job_id = parse_int(words[2])
            job = next((j for j in DEPLOYMENT_JOBS if j[0] == job_id), None)
            if job is None:
                return error(f"bcm: Job {words[2]} not found", 1)
            lines = [f"Job Logs for Job #{job[0]} ({job[1]})", ""]
            lines.extend(f"[{i:02d}] {text.format(nodes=len(cluster.nodes))}" for i, text in enumerate(job[3], 1))
            return success("\n".join(lines) + "\n")
        if words[:2] == ["validate", "pod"]:
            return self._validate_pod(cluster)
        return error(f"bcm: unknown command '{' '.join(words)}'. Run 'bcm --help' for usage.", 1)

    def _ha_status(self, cluster: ClusterConfig) -> CommandResult:
        ha = cluster.bcm_ha
        lines = [
            "High Availability Status",
            "",
            "HA Configuration:",
            f"  Status:        {'Enabled' if ha.enabled else 'Disabled'}",
            f"  Primary:       {ha.primary}",
            f"  Secondary:     {ha.secondary}",
            f"  Active:        {ha.active}",
            f"  State:         {ha.state}",
            "",
            "Shared Resources:",
            "  /cm_shared     (DRBD replicated)",
            "  /home          (DRBD replicated)",
            "  Virtual IP     10.141.255.254",
        ]
        return success("\n".join(lines) + "\n")

    def _validate_pod(self, cluster: ClusterConfig) -> CommandResult:
        gpus = [g for n in cluster.nodes for g in n.gpus]
        unhealthy_gpus = [g for g in gpus if g.health_status != "OK"]
        down_ports = [p for n in cluster.nodes for h in n.hcas for p in h.ports if p.state != "Active"]
        stale = [h for n in cluster.nodes for h in n.hcas if h.firmware_version != LATEST_FIRMWARE.get(h.ca_type, h.firmware_version)]
        lustre_missing = [n for n in cluster.nodes if not any(m.fs_type == "lustre" for m in n.storage)]
        unavailable = [n for n in cluster.nodes if n.slurm_state in ("drain", "down")]

        checks = [
            ("Node Count", bool(cluster.nodes), f"{len(cluster.nodes)} nodes"),
            ("GPU Count", not unhealthy_gpus, f"{len(gpus)} GPUs, {len(unhealthy_gpus)} unhealthy"),
            ("Network Connectivity", True, "management network reachable"),
            ("InfiniBand Fabric", not down_ports, f"{len(down_ports)} ports down"),
            ("Firmware Versions", not stale, f"{len(stale)} adapters need updates"),
            ("Shared Storage", not lustre_missing, "/lustre mounted" if not lustre_missing else f"{len(lustre_missing)} nodes missing /lustre"),
            ("Slurm", not unavailable, f"{len(unavailable)} nodes drained or down"),
        ]
        lines = ["SuperPOD Configuration Validation", "", "Running validation checks...", ""]
        for name, ok, detail in checks:
            lines.append(f"  [{'PASS' if ok else 'WARN'}] {name:<22} {detail}")
        warnings = sum(1 for _, ok, _ in checks if not ok)
        lines.append("")
        if warnings:
            lines.append(f"Validation completed with {warnings} warnings.")
            return CommandResult(output="\n".join(lines) + "\n", exit_code=1)
        lines.append("All checks passed: SuperPOD validation passed.")
        return success("\n".join(lines) + "\n")

    def _bcm_node(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        words = parsed.args
        cluster = context.cluster.get_cluster()
        usage = "Usage: bcm-node <list | show NODE>"
        if not words:
            return error(usage, 1)
        if words[0] == "list":
            rows = [
                [n.id, n.hostname, n.system_type, f"{len(n.gpus)} x {n.gpus[0].name if n.gpus else 'none'}", n.slurm_state, _node_health(n)]
                for n in cluster.nodes
            ]
            gpu_total = sum(len(n.gpus) for n in cluster.nodes)
            output = (
                "BCM Node Inventory\n\n"
                + format_table(["Node ID", "Hostname", "Type", "GPUs", "Slurm", "Status"], rows)
                + f"\n\nTotal Nodes: {len(cluster.nodes)}\nTotal GPUs:  {gpu_total}\n"
            )
            return success(output)
        if words[0] == "show":
            if len(words) < 2:
                return error(f"bcm-node: node ID required. {usage}", 1)
            node = cluster.get_node(words[1])
            if node is None:
                return error(f"bcm-node: node '{words[1]}' not found", 1)
            return success(self._node_details(cluster, node))
        return error(usage, 1)

    def _node_details(self, cluster: ClusterConfig, node: Node) -> str:
        lines = [
            f"Node Details: {node.id}",
            "",
            "General Information:",
            f"  Hostname:      {node.hostname}",
            f"  Category:      {category_of(node)}",
            f"  IP Address:    {device_ip(cluster, node)}",
            f"  Head node:     {HEADNODE}",
            f"  Health:        {_node_health(node)}",
            "",
            "Hardware Configuration:",
            f"  System:        {node.system_type}",
            f"  CPU:           {node.cpu_sockets} x {node.cpu_model}",
            f"  Memory:        {node.ram_total_gb} GB",
            "",
            "GPU Summary:",
        ]
        lines.extend(f"  GPU {g.id}: {g.name} ({g.health_status})" for g in node.gpus)
        lines.extend(
            [
                "",
                "Software Versions:",
                f"  OS:            {node.os_version}",
                f"  Kernel:        {node.kernel_version}",
                f"  NVIDIA Driver: {node.nvidia_driver_version}",
                f"  CUDA Version:  {node.cuda_version}",
                "",
                "Slurm Status:",
                f"  State:         {node.slurm_state}",
            ]
        )
        if node.slurm_reason:
            lines.append(f"  Reason:        {node.slurm_reason}")
        lines.extend(["", "InfiniBand HCAs:"])
        lines.extend(
            f"  {h.dev_name}: {h.ca_type} FW {h.firmware_version} port {p.port_number} {p.state}"
            for h in node.hcas
            for p in h.ports
        )
        return "\n".join(lines) + "\n"
