"""Mutation operations shared by the canonical store and scenario contexts.

Every function takes the ``ClusterConfig`` to mutate and returns ``True``
when the change was applied or ``False`` when its target does not exist.
Missing targets are not errors: simulators and fault descriptors routinely
name nodes or GPUs that a smaller cluster does not have.
"""

from __future__ import annotations

import logging
import time
from dataclasses import fields
from typing import Any, Iterable, Optional

from clustersim.state.models import (
    GPU,
    HCA,
    ClusterConfig,
    IBPort,
    Job,
    MIGInstance,
    NVLinkConnection,
    Node,
    XIDError,
)
from clustersim.state.xid import describe_xid, xid_severity

LOGGER = logging.getLogger(__name__)

MAX_TEMPERATURE = 120.0
POWER_HEADROOM = 1.1
SLURM_STATES = ("idle", "alloc", "mix", "drain", "down")
HEALTH_STATES = ("OK", "Warning", "Critical")

_GPU_FIELDS = {f.name for f in fields(GPU)}
_HCA_FIELDS = {f.name for f in fields(HCA)} - {"ports"}
_PORT_FIELDS = {f.name for f in fields(IBPort)} - {"errors"}
_NVLINK_FIELDS = {f.name for f in fields(NVLinkConnection)}


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def find_gpu(cluster: ClusterConfig, node_id: str, gpu_id: int) -> Optional[GPU]:
    node = cluster.get_node(node_id)
    if node is None:
        return None
    return node.get_gpu(gpu_id)


def find_hca(cluster: ClusterConfig, node_id: str, hca_id: int) -> Optional[HCA]:
    node = cluster.get_node(node_id)
    if node is None:
        return None
    for hca in node.hcas:
        if hca.id == hca_id:
            return hca
    return None


def clamp_gpu(gpu: GPU) -> None:
    """Force telemetry back inside its physical bounds."""
    gpu.temperature = _clamp(float(gpu.temperature), 0.0, MAX_TEMPERATURE)
    gpu.utilization = _clamp(float(gpu.utilization), 0.0, 100.0)
    gpu.memory_used = int(_clamp(int(gpu.memory_used), 0, int(gpu.memory_total)))
    gpu.power_draw = _clamp(float(gpu.power_draw), 0.0, float(gpu.power_limit) * POWER_HEADROOM)


def update_gpu(cluster: ClusterConfig, node_id: str, gpu_id: int, updates: dict[str, Any]) -> bool:
    """Set GPU attributes, then clamp telemetry.

    Args:
        cluster: Cluster to mutate
        node_id: Node id or hostname
        gpu_id: GPU index on the node
        updates: Attribute name to new value; unknown names are ignored

    Returns:
        True if the GPU exists
    """
    gpu = find_gpu(cluster, node_id, gpu_id)
    if gpu is None:
        return False
    # memory_total and power_limit first so the clamps see the new bounds
    for key in sorted(updates, key=lambda k: k not in ("memory_total", "power_limit")):
        if key in _GPU_FIELDS and key != "id":
            setattr(gpu, key, updates[key])
        else:
            LOGGER.debug("Ignoring unknown GPU attribute %r", key)
    clamp_gpu(gpu)
    return True


def add_xid_error(
    cluster: ClusterConfig,
    node_id: str,
    gpu_id: int,
    code: int,
    description: Optional[str] = None,
    severity: Optional[str] = None,
    timestamp: Optional[float] = None,
) -> bool:
    """Append an XID record and escalate GPU health to match its severity."""
    gpu = find_gpu(cluster, node_id, gpu_id)
    if gpu is None:
        return False
    severity = severity or xid_severity(code)
    gpu.xid_errors.append(
        XIDError(
            code=int(code),
            timestamp=time.time() if timestamp is None else timestamp,
            description=description or describe_xid(code),
            severity=severity,
        )
    )
    if severity == "Critical":
        gpu.health_status = "Critical"
    elif severity == "Warning" and gpu.health_status == "OK":
        gpu.health_status = "Warning"
    return True


def clear_gpu_errors(cluster: ClusterConfig, node_id: str, gpu_id: int) -> bool:
    """Reset-style recovery: drop XIDs and volatile ECC counts, restore health."""
    gpu = find_gpu(cluster, node_id, gpu_id)
    if gpu is None:
        return False
    gpu.xid_errors = []
    gpu.ecc_errors.single_bit = 0
    gpu.ecc_errors.double_bit = 0
    gpu.health_status = "OK"
    gpu.utilization = 0.0
    for link in gpu.nvlinks:
        link.status = "Active"
    return True


def set_ecc_errors(
    cluster: ClusterConfig, node_id: str, gpu_id: int, single_bit: int, double_bit: int
) -> bool:
    """Set volatile ECC counts; lifetime totals grow by the increase."""
    gpu = find_gpu(cluster, node_id, gpu_id)
    if gpu is None:
        return False
    ecc = gpu.ecc_errors
    ecc.aggregated.single_bit += max(int(single_bit) - ecc.single_bit, 0)
    ecc.aggregated.double_bit += max(int(double_bit) - ecc.double_bit, 0)
    ecc.single_bit = int(single_bit)
    ecc.double_bit = int(double_bit)
    return True


def update_nvlink(
    cluster: ClusterConfig, node_id: str, gpu_id: int, link_id: int, updates: dict[str, Any]
) -> bool:
    gpu = find_gpu(cluster, node_id, gpu_id)
    if gpu is None:
        return False
    for link in gpu.nvlinks:
        if link.link_id == link_id:
            for key, value in updates.items():
                if key in _NVLINK_FIELDS and key != "link_id":
                    setattr(link, key, value)
            return True
    return False


def update_hca(cluster: ClusterConfig, node_id: str, hca_id: int, updates: dict[str, Any]) -> bool:
    """Update HCA attributes.

    ``updates`` may carry a ``ports`` mapping of port number to port updates;
    a port's ``errors`` entry is merged into its counters.
    """
    hca = find_hca(cluster, node_id, hca_id)
    if hca is None:
        return False
    for key, value in updates.items():
        if key in _HCA_FIELDS and key != "id":
            setattr(hca, key, value)
    for port_number, port_updates in (updates.get("ports") or {}).items():
        update_ib_port(cluster, node_id, hca_id, int(port_number), port_updates)
    return True


def update_ib_port(
    cluster: ClusterConfig, node_id: str, hca_id: int, port_number: int, updates: dict[str, Any]
) -> bool:
    hca = find_hca(cluster, node_id, hca_id)
    if hca is None:
        return False
    for port in hca.ports:
        if port.port_number != port_number:
            continue
        for key, value in updates.items():
            if key == "errors":
                for counter, count in value.items():
                    if hasattr(port.errors, counter):
                        setattr(port.errors, counter, int(count))
            elif key in _PORT_FIELDS and key != "port_number":
                setattr(port, key, value)
        return True
    return False


def update_node_health(cluster: ClusterConfig, node_id: str, status: str) -> bool:
    node = cluster.get_node(node_id)
    if node is None or status not in HEALTH_STATES:
        return False
    node.health_status = status
    return True


def set_mig_mode(cluster: ClusterConfig, node_id: str, gpu_id: int, enabled: bool) -> bool:
    """Toggle MIG mode; instances are cleared either way."""
    gpu = find_gpu(cluster, node_id, gpu_id)
    if gpu is None:
        return False
    gpu.mig_mode = bool(enabled)
    gpu.mig_instances = []
    return True


def add_mig_instance(
    cluster: ClusterConfig,
    node_id: str,
    gpu_id: int,
    profile_id: int,
    profile_name: str,
    memory_mib: int,
) -> Optional[MIGInstance]:
    gpu = find_gpu(cluster, node_id, gpu_id)
    if gpu is None or not gpu.mig_mode:
        return None
    used = sum(i.memory_mib for i in gpu.mig_instances)
    if used + memory_mib > gpu.memory_total:
        return None
    next_id = len(gpu.mig_instances)
    instance = MIGInstance(
        id=next_id,
        gpu_instance_id=next_id + 1,
        compute_instance_id=0,
        profile_id=profile_id,
        profile_name=profile_name,
        memory_mib=memory_mib,
    )
    gpu.mig_instances.append(instance)
    return instance


def node_allocation_state(node: Node) -> str:
    """Scheduler state implied by GPU allocations alone."""
    allocated = sum(1 for g in node.gpus if g.allocated_job_id is not None)
    if allocated == 0:
        return "idle"
    if allocated == len(node.gpus):
        return "alloc"
    return "mix"


def set_slurm_state(cluster: ClusterConfig, node_id: str, state: str, reason: Optional[str] = None) -> bool:
    node = cluster.get_node(node_id)
    if node is None or state not in SLURM_STATES:
        return False
    node.slurm_state = state
    node.slurm_reason = reason if state in ("drain", "down") else None
    return True


def _refresh_node_state(node: Node) -> None:
    if node.slurm_state not in ("drain", "down"):
        node.slurm_state = node_allocation_state(node)


def allocate_gpus_for_job(cluster: ClusterConfig, job_id: int, node_id: str, gpu_ids: Iterable[int]) -> bool:
    """Allocate every GPU in ``gpu_ids`` to ``job_id`` or none of them.

    Fails when the node or any GPU is missing or already held by another job.
    """
    node = cluster.get_node(node_id)
    if node is None:
        return False
    wanted = list(gpu_ids)
    gpus = [node.get_gpu(gpu_id) for gpu_id in wanted]
    if not wanted or any(g is None for g in gpus):
        return False
    if any(g.allocated_job_id not in (None, job_id) for g in gpus):
        return False
    for gpu in gpus:
        gpu.allocated_job_id = job_id
    _refresh_node_state(node)
    return True


def deallocate_gpus_for_job(cluster: ClusterConfig, job_id: int) -> bool:
    """Release every GPU held by ``job_id``; False if it held none."""
    released = False
    for node in cluster.nodes:
        touched = False
        for gpu in node.gpus:
            if gpu.allocated_job_id == job_id:
                gpu.allocated_job_id = None
                touched = True
        if touched:
            released = True
            _refresh_node_state(node)
    return released


def free_gpu_ids(node: Node) -> list[int]:
    return [g.id for g in node.gpus if g.allocated_job_id is None]


def _place_job(cluster: ClusterConfig, job: Job, gpu_count: int, node_id: Optional[str]) -> bool:
    partition = next((p for p in cluster.slurm_config.partitions if p.name == job.partition), None)
    candidates = [node_id] if node_id else (partition.nodes if partition else [n.id for n in cluster.nodes])
    for candidate in candidates:
        node = cluster.get_node(candidate)
        if node is None or node.slurm_state in ("drain", "down"):
            continue
        free = free_gpu_ids(node)
        if len(free) < gpu_count:
            continue
        chosen = free[:gpu_count]
        if gpu_count and not allocate_gpus_for_job(cluster, job.job_id, node.id, chosen):
            continue
        job.node_id = node.id
        job.gpu_ids = chosen
        job.state = "RUNNING"
        job.start_time = time.time()
        return True
    return False


def submit_job(
    cluster: ClusterConfig,
    name: str,
    user: str = "root",
    partition: Optional[str] = None,
    gpu_count: int = 0,
    node_id: Optional[str] = None,
    command: str = "",
) -> Job:
    """Queue a job and start it immediately if a node has enough free GPUs."""
    if partition is None:
        default = next((p for p in cluster.slurm_config.partitions if p.default), None)
        partition = default.name if default else "batch"
    job = Job(
        job_id=cluster.next_job_id,
        name=name,
        user=user,
        partition=partition,
        state="PENDING",
        submit_time=time.time(),
        command=command,
    )
    cluster.next_job_id += 1
    cluster.jobs.append(job)
    if not _place_job(cluster, job, gpu_count, node_id):
        LOGGER.debug("Job %s pending: no node with %d free GPUs", job.job_id, gpu_count)
    return job


def _finish_job(cluster: ClusterConfig, job_id: int, state: str, exit_code: str) -> bool:
    job = cluster.get_job(job_id)
    if job is None or job.state not in ("PENDING", "RUNNING"):
        return False
    job.state = state
    job.end_time = time.time()
    job.exit_code = exit_code
    deallocate_gpus_for_job(cluster, job_id)
    return True


def cancel_job(cluster: ClusterConfig, job_id: int) -> bool:
    return _finish_job(cluster, job_id, "CANCELLED", "0:15")


def complete_job(cluster: ClusterConfig, job_id: int, failed: bool = False) -> bool:
    return _finish_job(cluster, job_id, "FAILED" if failed else "COMPLETED", "1:0" if failed else "0:0")


def set_service_state(cluster: ClusterConfig, node_id: str, service: str, state: str) -> bool:
    """Set a systemd unit to ``active``, ``inactive`` or ``failed``."""
    node = cluster.get_node(node_id)
    if node is None or service not in node.services or state not in ("active", "inactive", "failed"):
        return False
    node.services[service] = state
    return True


def set_power_state(cluster: ClusterConfig, node_id: str, power_state: str) -> bool:
    """Change BMC chassis power; a node that is off is down to the scheduler."""
    node = cluster.get_node(node_id)
    if node is None or node.bmc is None or power_state not in ("On", "Off"):
        return False
    node.bmc.power_state = power_state
    if power_state == "Off":
        node.slurm_state = "down"
        node.slurm_reason = "Node powered off"
    elif node.slurm_state == "down" and node.slurm_reason == "Node powered off":
        node.slurm_state = node_allocation_state(node)
        node.slurm_reason = None
    return True
