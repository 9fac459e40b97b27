"""Slurm workload manager simulator.

``sinfo``, ``squeue``, ``scontrol``, ``sbatch``, ``srun``, ``scancel`` and
``sacct`` all read the node states, partitions and job list of the cluster
view, so a drain made with ``scontrol`` shows up in ``sinfo`` and in BCM
tools immediately.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional

from clustersim.parser import ParsedCommand
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    compress_hostlist,
    error,
    expand_hostlist,
    format_table,
    handle_help_version,
    parse_int,
    run_nested,
    success,
)
from clustersim.state.models import ClusterConfig, Job, Node, Partition
from clustersim.state.operations import node_allocation_state

LOGGER = logging.getLogger(__name__)

SLURM_VERSION = "slurm 23.02.7"
CPUS_PER_GPU = 16

_STATE_LONG = {"idle": "idle", "alloc": "allocated", "mix": "mixed", "drain": "drained", "down": "down"}
_JOB_CODES = {"PENDING": "PD", "RUNNING": "R", "COMPLETED": "CD", "CANCELLED": "CA", "FAILED": "F"}
_FORMAT_RE = re.compile(r"%([.-]?)(\d*)([a-zA-Z])")

# sinfo -o field letter -> header
_SINFO_HEADERS = {
    "P": "PARTITION",
    "a": "AVAIL",
    "l": "TIMELIMIT",
    "D": "NODES",
    "t": "STATE",
    "T": "STATE",
    "N": "NODELIST",
    "n": "HOSTNAMES",
    "G": "GRES",
    "c": "CPUS",
    "m": "MEMORY",
    "E": "REASON",
    "C": "CPUS(A/I/O/T)",
}


def node_state_label(node: Node) -> str:
    """Compact sinfo state; drained nodes with running jobs are still draining."""
    if node.slurm_state == "drain":
        busy = any(g.allocated_job_id is not None for g in node.gpus)
        return "drng" if busy else "drain"
    return node.slurm_state


def scontrol_state(node: Node) -> str:
    allocated = sum(1 for g in node.gpus if g.allocated_job_id is not None)
    base = "IDLE" if allocated == 0 else ("ALLOCATED" if allocated == len(node.gpus) else "MIXED")
    if node.slurm_state == "down":
        return "DOWN"
    if node.slurm_state == "drain":
        return f"{base}+DRAIN"
    return base


def _partitions_of(cluster: ClusterConfig, node: Node) -> list[str]:
    return [p.name for p in cluster.slurm_config.partitions if node.id in p.nodes]


def _timelimit(partition: Partition) -> str:
    return "infinite" if partition.max_time.lower() in ("infinite", "unlimited") else partition.max_time


def _elapsed(job: Job) -> str:
    if job.start_time is None:
        return "0:00"
    end = job.end_time if job.end_time is not None else time.time()
    seconds = max(int(end - job.start_time), 0)
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}" if hours else f"{minutes}:{secs:02d}"


def _gpu_request(parsed: ParsedCommand) -> Optional[int]:
    """GPU count from ``--gres=gpu[:type]:N``, ``--gpus N`` or ``-G N``; None if malformed."""
    gres = parsed.get_flag_str("gres")
    if gres is not None:
        parts = gres.split(":")
        if parts[0] != "gpu":
            return None
        return parse_int(parts[-1]) if len(parts) > 1 else 1
    gpus = parsed.get_flag_str("gpus", "G")
    if gpus is not None:
        return parse_int(gpus.split(":")[-1])
    return 0


def _key_values(tokens: list[str]) -> dict[str, str]:
    """``Key=Value`` tokens with case-insensitive keys."""
    values = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if sep:
            values[key.lower()] = value
    return values


class SlurmSimulator:
    """Simulates the Slurm client commands."""

    METADATA = SimulatorMetadata(
        name="slurm",
        version="23.02.7",
        description="Slurm workload manager client commands",
        commands=("sinfo", "squeue", "scontrol", "sbatch", "srun", "scancel", "sacct"),
        value_flags=("partition", "nodes", "format", "user", "jobs", "states", "nodelist", "gres", "gpus", "wrap", "job-name"),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext], CommandResult]] = {
            "sinfo": self._sinfo,
            "squeue": self._squeue,
            "scontrol": self._scontrol,
            "sbatch": self._sbatch,
            "srun": self._srun,
            "scancel": self._scancel,
            "sacct": self._sacct,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"{parsed.base_command}: not a Slurm command", 127)
        # srun/sbatch use -h and -V for nothing else; the wrapped command may not
        if parsed.base_command != "srun":
            handled = handle_help_version(parsed, context, f"{SLURM_VERSION}\n", short_version=False)
            if handled is not None:
                return handled
            if parsed.has_flag("V"):
                return success(f"{SLURM_VERSION}\n")
        return handler(parsed, context)

    # sinfo

    def _sinfo(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        if parsed.args:
            return error(f"sinfo: error: Unrecognized option: {parsed.args[0]}\nUsage: sinfo [OPTIONS]", 1)
        cluster = context.cluster.get_cluster()
        partitions = cluster.slurm_config.partitions
        wanted_partition = parsed.get_flag_str("p", "partition")
        if wanted_partition:
            names = set(wanted_partition.split(","))
            partitions = [p for p in partitions if p.name in names]
        node_filter = parsed.get_flag_str("n", "nodes")
        allowed = set(expand_hostlist(node_filter)) if node_filter else None

        if parsed.has_flag("R", "list-reasons"):
            return self._sinfo_reasons(cluster, allowed)

        # (partition, nodes) rows, grouped by state unless node-oriented
        node_oriented = parsed.has_flag("N", "Node")
        groups: list[tuple[Partition, list[Node]]] = []
        for partition in partitions:
            nodes = [cluster.get_node(n) for n in partition.nodes]
            nodes = [n for n in nodes if n is not None and (allowed is None or n.id in allowed)]
            if node_oriented:
                groups.extend((partition, [n]) for n in nodes)
                continue
            by_state: dict[str, list[Node]] = {}
            for node in nodes:
                by_state.setdefault(node_state_label(node), []).append(node)
            groups.extend((partition, members) for members in by_state.values())

        fmt = parsed.get_flag_str("o", "format")
        if fmt:
            return self._sinfo_formatted(fmt, groups)
        if node_oriented:
            rows = [
                [members[0].id, 1, p.name + ("*" if p.default else ""), node_state_label(members[0])]
                for p, members in groups
            ]
            return success(format_table(["NODELIST", "NODES", "PARTITION", "STATE"], rows, gap=1) + "\n")
        rows = [
            [
                p.name + ("*" if p.default else ""),
                p.state.lower(),
                _timelimit(p),
                len(members),
                node_state_label(members[0]),
                compress_hostlist(n.id for n in members),
            ]
            for p, members in groups
        ]
        return success(
            format_table(["PARTITION", "AVAIL", "TIMELIMIT", "NODES", "STATE", "NODELIST"], rows, gap=1) + "\n"
        )

    def _sinfo_reasons(self, cluster: ClusterConfig, allowed: Optional[set[str]]) -> CommandResult:
        by_reason: dict[str, list[str]] = {}
        for node in cluster.nodes:
            if node.slurm_state not in ("drain", "down"):
                continue
            if allowed is not None and node.id not in allowed:
                continue
            by_reason.setdefault(node.slurm_reason or "Not responding", []).append(node.id)
        rows = [[reason, "root", "Unknown", compress_hostlist(nodes)] for reason, nodes in by_reason.items()]
        return success(format_table(["REASON", "USER", "TIMESTAMP", "NODELIST"], rows, gap=1) + "\n")

    def _sinfo_formatted(self, fmt: str, groups: list[tuple[Partition, list[Node]]]) -> CommandResult:
        specs = _FORMAT_RE.findall(fmt)
        if not specs:
            return error(f"sinfo: error: Invalid format specification: {fmt}", 1)
        unknown = [letter for _, _, letter in specs if letter not in _SINFO_HEADERS]
        if unknown:
            return error(f"sinfo: error: Invalid node format specification: {unknown[0]}", 1)

        def value(letter: str, partition: Partition, members: list[Node]) -> str:
            first = members[0]
            if letter == "P":
                return partition.name + ("*" if partition.default else "")
            if letter == "a":
                return partition.state.lower()
            if letter == "l":
                return _timelimit(partition)
            if letter == "D":
                return str(len(members))
            if letter == "t":
                return node_state_label(first)
            if letter == "T":
                return _STATE_LONG.get(first.slurm_state, first.slurm_state)
            if letter in ("N", "n"):
                return compress_hostlist(n.id for n in members)
            if letter == "G":
                return f"gpu:{first.gpus[0].type.lower() if first.gpus else 'none'}:{len(first.gpus)}"
            if letter == "c":
                return str(first.cpu_count)
            if letter == "m":
                return str(first.ram_total_gb * 1024)
            if letter == "E":
                return first.slurm_reason or "none"
            allocated = sum(CPUS_PER_GPU for g in first.gpus if g.allocated_job_id is not None)
            return f"{allocated}/{first.cpu_count - allocated}/0/{first.cpu_count}"

        lines = []
        header = []
        for _, width, letter in specs:
            text = _SINFO_HEADERS[letter]
            header.append(text.ljust(int(width)) if width else text)
        lines.append(" ".join(header).rstrip())
        for partition, members in groups:
            cells = []
            for _, width, letter in specs:
                text = value(letter, partition, members)
                cells.append(text[: int(width)].ljust(int(width)) if width else text)
            lines.append(" ".join(cells).rstrip())
        return success("\n".join(lines) + "\n")

    # squeue / sacct

    def _squeue(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        jobs = [j for j in context.cluster.get_cluster().jobs if j.state in ("PENDING", "RUNNING")]
        user = parsed.get_flag_str("u", "user")
        if user:
            jobs = [j for j in jobs if j.user == user]
        job_ids = parsed.get_flag_str("j", "jobs")
        if job_ids:
            wanted = {parse_int(j) for j in job_ids.split(",")}
            if None in wanted:
                return error("squeue: error: Invalid job id specified", 1)
            jobs = [j for j in jobs if j.job_id in wanted]
        states = parsed.get_flag_str("t", "states")
        if states:
            wanted_states = {s.upper() for s in states.split(",")}
            jobs = [j for j in jobs if j.state in wanted_states or _JOB_CODES[j.state] in wanted_states]
        partition = parsed.get_flag_str("p", "partition")
        if partition:
            jobs = [j for j in jobs if j.partition == partition]

        lines = [
            f"{'JOBID':>18} {'PARTITION':>9} {'NAME':>8} {'USER':>8} {'ST':>2} {'TIME':>10} {'NODES':>6} NODELIST(REASON)"
        ]
        for job in jobs:
            where = job.node_id if job.state == "RUNNING" else "(Resources)"
            lines.append(
                f"{job.job_id:>18} {job.partition:>9} {job.name[:8]:>8} {job.user[:8]:>8} "
                f"{_JOB_CODES[job.state]:>2} {_elapsed(job):>10} {1:>6} {where}"
            )
        return success("\n".join(lines) + "\n")

    def _sacct(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        jobs = list(context.cluster.get_cluster().jobs)
        job_ids = parsed.get_flag_str("j", "jobs")
        if job_ids:
            wanted = {parse_int(j) for j in job_ids.split(",")}
            jobs = [j for j in jobs if j.job_id in wanted]
        lines = [
            f"{'JobID':<12} {'JobName':>10} {'Partition':>10} {'Account':>10} {'AllocCPUS':>10} {'State':>10} {'ExitCode':>8}",
            f"{'-' * 12} {'-' * 10} {'-' * 10} {'-' * 10} {'-' * 10} {'-' * 10} {'-' * 8}",
        ]
        for job in jobs:
            cpus = max(len(job.gpu_ids) * CPUS_PER_GPU, 1)
            lines.append(
                f"{job.job_id:<12} {job.name[:10]:>10} {job.partition:>10} {job.user[:10]:>10} "
                f"{cpus:>10} {job.state:>10} {job.exit_code:>8}"
            )
        return success("\n".join(lines) + "\n")

    # scontrol

    def _scontrol(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        words = parsed.args
        if not words:
            return error("scontrol: error: no command given. Use 'scontrol show' or 'scontrol update'.", 1)
        command = words[0].lower()
        if command == "show":
            return self._scontrol_show(words[1:], context)
        if command == "update":
            return self._scontrol_update(words[1:], parsed, context)
        if command == "ping":
            controller = context.cluster.get_cluster().slurm_config.controller
            return success(f"Slurmctld(primary) at {controller} is UP\n")
        if command == "help" and len(words) == 1:
            return success(
                "scontrol [<OPTION>] [<COMMAND>]\n"
                "  show <ENTITY> [<ID>]    display state of identified entity (node, partition, job)\n"
                "  update <SPECIFICATIONS> update job, node, partition configuration\n"
                "  ping                    print status of slurmctld daemons\n"
            )
        return error(f"invalid keyword: {words[0]}", 1)

    def _scontrol_show(self, words: list[str], context: CommandContext) -> CommandResult:
        if not words:
            return error("invalid entity: (null) for keyword: show", 1)
        entity = words[0].lower()
        target = words[1] if len(words) > 1 else None
        cluster = context.cluster.get_cluster()
        if entity in ("node", "nodes"):
            if target:
                names = expand_hostlist(target)
                nodes = [cluster.get_node(n) for n in names]
                if any(n is None for n in nodes):
                    return error(f"Node {target} not found", 1)
            else:
                nodes = list(cluster.nodes)
            return success("\n\n".join(self._node_record(cluster, n) for n in nodes) + "\n")
        if entity in ("partition", "partitions"):
            partitions = [p for p in cluster.slurm_config.partitions if target is None or p.name == target]
            if not partitions:
                return error(f"Partition {target} not found", 1)
            return success("\n\n".join(self._partition_record(cluster, p) for p in partitions) + "\n")
        if entity in ("job", "jobs"):
            if target is not None:
                job_id = parse_int(target)
                job = cluster.get_job(job_id) if job_id is not None else None
                if job is None:
                    return error("slurm_load_jobs error: Invalid job id specified", 1)
                jobs = [job]
            else:
                jobs = list(cluster.jobs)
            if not jobs:
                return success("No jobs in the system\n")
            return success("\n\n".join(self._job_record(j) for j in jobs) + "\n")
        return error(f"invalid entity:{words[0]} for keyword:show", 1)

    def _node_record(self, cluster: ClusterConfig, node: Node) -> str:
        gpu_type = node.gpus[0].type.lower() if node.gpus else "none"
        allocated = sum(1 for g in node.gpus if g.allocated_job_id is not None)
        lines = [
            f"NodeName={node.id} Arch=x86_64 CoresPerSocket={node.cpu_cores_per_socket}",
            f"   CPUAlloc={allocated * CPUS_PER_GPU} CPUTot={node.cpu_count} CPULoad=0.00",
            f"   AvailableFeatures={node.system_type.lower()}",
            f"   Gres=gpu:{gpu_type}:{len(node.gpus)}",
            f"   NodeAddr={node.hostname} NodeHostName={node.hostname}",
            f"   OS=Linux {node.kernel_version}",
            f"   RealMemory={node.ram_total_gb * 1024} AllocMem=0 FreeMem={(node.ram_total_gb - node.ram_used_gb) * 1024}",
            f"   Sockets={node.cpu_sockets} Boards=1",
            f"   State={scontrol_state(node)} ThreadsPerCore=2 TmpDisk=0 Weight=1",
            f"   Partitions={','.join(_partitions_of(cluster, node))}",
            f"   CfgTRES=cpu={node.cpu_count},mem={node.ram_total_gb}G,billing={node.cpu_count},gres/gpu={len(node.gpus)}",
            f"   AllocTRES={'gres/gpu=' + str(allocated) if allocated else ''}",
        ]
        if node.slurm_reason:
            lines.append(f"   Reason={node.slurm_reason} [root@{cluster.slurm_config.controller}]")
        return "\n".join(lines)

    def _partition_record(self, cluster: ClusterConfig, partition: Partition) -> str:
        nodes = [cluster.get_node(n) for n in partition.nodes]
        cpus = sum(n.cpu_count for n in nodes if n is not None)
        return "\n".join(
            [
                f"PartitionName={partition.name}",
                f"   AllowGroups=ALL Default={'YES' if partition.default else 'NO'}",
                f"   MaxTime={'UNLIMITED' if _timelimit(partition) == 'infinite' else partition.max_time}",
                f"   Nodes={compress_hostlist(partition.nodes)}",
                f"   State={partition.state} TotalCPUs={cpus} TotalNodes={len(partition.nodes)}",
            ]
        )

    def _job_record(self, job: Job) -> str:
        return "\n".join(
            [
                f"JobId={job.job_id} JobName={job.name}",
                f"   UserId={job.user}(0) GroupId={job.user}(0)",
                f"   JobState={job.state} Reason={'None' if job.state != 'PENDING' else 'Resources'}",
                f"   RunTime={_elapsed(job)} TimeLimit={job.time_limit}",
                f"   Partition={job.partition}",
                f"   NodeList={job.node_id or '(null)'}",
                f"   TRES=gres/gpu={len(job.gpu_ids)}",
                f"   ExitCode={job.exit_code}",
                f"   Command={job.command or '(null)'}",
            ]
        )

    def _scontrol_update(self, words: list[str], parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        spec = _key_values(words)
        if "nodename" not in spec:
            return error("scontrol: error: update requires NodeName=<nodes>", 1)
        state = spec.get("state", "").upper()
        if not state:
            return error("scontrol: error: update requires State=<state>", 1)
        reason = spec.get("reason")
        cluster = context.cluster.get_cluster()
        names = expand_hostlist(spec["nodename"])
        nodes = [cluster.get_node(n) for n in names]
        if any(n is None for n in nodes):
            missing = [name for name, n in zip(names, nodes) if n is None]
            return error(f"Invalid node name specified: {missing[0]}", 1)

        if state in ("DRAIN", "DOWN"):
            if not reason:
                return error("You must specify a reason when DOWNING or DRAINING a node. Request denied", 1)
            target = state.lower()
        elif state in ("RESUME", "UNDRAIN", "IDLE"):
            target = None
        else:
            return error(f"Invalid node state specified: {state}", 1)

        for node in nodes:
            if target is None:
                ok = context.cluster.set_slurm_state(node.id, node_allocation_state(node), command=parsed.raw)
            else:
                ok = context.cluster.set_slurm_state(node.id, target, reason, command=parsed.raw)
            if not ok:
                return error(f"slurm_update error: Access/permission denied for {node.id}", 1)
            LOGGER.debug("Node %s set to %s", node.id, target or "resume")
        return success("")

    # job submission

    def _submit(self, parsed: ParsedCommand, context: CommandContext, tool: str, job_command: str, name: str):
        """Validate a submission and queue it; returns ``(job, error_result)``."""
        cluster = context.cluster.get_cluster()
        gpu_count = _gpu_request(parsed)
        if gpu_count is None:
            return None, error(f"{tool}: error: Invalid generic resource (gres) specification", 1)
        partition = parsed.get_flag_str("p", "partition")
        if partition and not any(p.name == partition for p in cluster.slurm_config.partitions):
            return None, error(f"{tool}: error: Batch job submission failed: Invalid partition name specified", 1)
        node_id = parsed.get_flag_str("w", "nodelist")
        if node_id and cluster.get_node(node_id) is None:
            return None, error(f"{tool}: error: Batch job submission failed: Invalid node name specified", 1)
        max_gpus = max((len(n.gpus) for n in cluster.nodes), default=0)
        if gpu_count > max_gpus:
            return None, error(
                f"{tool}: error: Batch job submission failed: Requested node configuration is not available", 1
            )
        job = context.cluster.submit_job(
            name,
            user=context.user,
            partition=partition,
            gpu_count=gpu_count,
            node_id=node_id,
            job_command=job_command,
            command=parsed.raw,
        )
        if job is None:
            return None, error(f"{tool}: error: Batch job submission failed: Access/permission denied", 1)
        return job, None

    def _sbatch(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        wrap = parsed.get_flag_str("wrap")
        script = parsed.args[0] if parsed.args else None
        if not wrap and not script:
            return error("sbatch: error: no batch script specified", 1)
        name = parsed.get_flag_str("J", "job-name") or (script.rsplit("/", 1)[-1] if script else "wrap")
        job, failure = self._submit(parsed, context, "sbatch", wrap or script, name)
        if failure is not None:
            return failure
        return success(f"Submitted batch job {job.job_id}\n")

    def _srun(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        if not parsed.args:
            return error("srun: fatal: No command given to execute.", 1)
        # the wrapped command is everything after srun's own options
        inner = " ".join(parsed.args)
        raw_tokens = parsed.raw.split()
        if parsed.args[0] in raw_tokens:
            inner = " ".join(raw_tokens[raw_tokens.index(parsed.args[0]):])
        name = parsed.get_flag_str("J", "job-name") or parsed.args[0]
        job, failure = self._submit(parsed, context, "srun", inner, name)
        if failure is not None:
            return failure
        if job.state != "RUNNING":
            context.cluster.cancel_job(job.job_id, command=parsed.raw)
            return error("srun: error: Unable to allocate resources: Resources temporarily unavailable", 1)
        result = run_nested(context, inner, job.node_id)
        context.cluster.complete_job(job.job_id, failed=result.exit_code != 0, command=parsed.raw)
        return result

    def _scancel(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        cluster = context.cluster.get_cluster()
        user = parsed.get_flag_str("u", "user")
        if user and not parsed.args:
            for job in [j for j in cluster.jobs if j.user == user and j.state in ("PENDING", "RUNNING")]:
                context.cluster.cancel_job(job.job_id, command=parsed.raw)
            return success("")
        if not parsed.args:
            return error("scancel: error: No job identification provided", 1)
        for token in parsed.args:
            job_id = parse_int(token)
            if job_id is None:
                return error(f"scancel: error: Invalid job id {token}", 1)
            if not context.cluster.cancel_job(job_id, command=parsed.raw):
                return error(f"scancel: error: Kill job error on job id {job_id}: Invalid job id specified", 1)
        return success("")
