"""Read/write view over a ``ClusterConfig``.

Simulators talk to whatever object is the current cluster view: the
canonical :class:`~clustersim.state.store.ClusterStateStore` or an isolated
:class:`~clustersim.scenario.context.ScenarioContext`. Both derive from
:class:`ClusterView` so they expose the same accessors and named mutations
and enforce the same invariants.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Iterable, Optional

from clustersim.state import operations as ops
from clustersim.state.models import GPU, ClusterConfig, Job, MIGInstance, Node

LOGGER = logging.getLogger(__name__)


def clone_cluster(cluster: ClusterConfig) -> ClusterConfig:
    """Deep copy of the whole aggregate.

    Nodes, GPUs (NVLinks, XID lists, ECC counters, MIG instances), HCAs with
    ports and error counters, DPUs, BMC sensors, storage mounts, the BCM HA
    config, the Slurm config and the job list are all copied; the result
    shares no mutable object with ``cluster``.
    """
    return copy.deepcopy(cluster)


class ClusterView:
    """Accessors and named mutations over one ``ClusterConfig``."""

    def __init__(self, cluster: ClusterConfig):
        self._cluster = cluster

    @property
    def cluster(self) -> ClusterConfig:
        return self._cluster

    def get_cluster(self) -> ClusterConfig:
        return self._cluster

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._cluster.get_node(node_id)

    def get_gpu(self, node_id: str, gpu_id: int) -> Optional[GPU]:
        return ops.find_gpu(self._cluster, node_id, gpu_id)

    def snapshot(self) -> ClusterConfig:
        return clone_cluster(self._cluster)

    def is_readonly(self) -> bool:
        return False

    def _record(
        self,
        kind: str,
        node_id: Optional[str],
        gpu_id: Optional[int],
        data: Any,
        command: Optional[str],
    ) -> None:
        LOGGER.debug("%s applied to %s/%s (%s)", kind, node_id, gpu_id, command or "api")

    def _mutate(
        self,
        kind: str,
        fn: Callable[..., Any],
        *args: Any,
        node_id: Optional[str] = None,
        gpu_id: Optional[int] = None,
        data: Any = None,
        command: Optional[str] = None,
    ) -> Any:
        if self.is_readonly():
            LOGGER.debug("Read-only view rejected %s", kind)
            return None
        result = fn(self._cluster, *args)
        if result:
            self._record(kind, node_id, gpu_id, data, command)
        return result

    def update_gpu(
        self, node_id: str, gpu_id: int, updates: dict[str, Any], command: Optional[str] = None
    ) -> bool:
        return bool(
            self._mutate(
                "gpu-update", ops.update_gpu, node_id, gpu_id, updates,
                node_id=node_id, gpu_id=gpu_id, data=dict(updates), command=command,
            )
        )

    def add_xid_error(
        self,
        node_id: str,
        gpu_id: int,
        code: int,
        description: Optional[str] = None,
        severity: Optional[str] = None,
        command: Optional[str] = None,
    ) -> bool:
        return bool(
            self._mutate(
                "xid-error", ops.add_xid_error, node_id, gpu_id, code, description, severity,
                node_id=node_id, gpu_id=gpu_id, data={"code": code}, command=command,
            )
        )

    def clear_gpu_errors(self, node_id: str, gpu_id: int, command: Optional[str] = None) -> bool:
        return bool(
            self._mutate(
                "gpu-reset", ops.clear_gpu_errors, node_id, gpu_id,
                node_id=node_id, gpu_id=gpu_id, command=command,
            )
        )

    def set_ecc_errors(
        self, node_id: str, gpu_id: int, single_bit: int, double_bit: int, command: Optional[str] = None
    ) -> bool:
        return bool(
            self._mutate(
                "ecc-update", ops.set_ecc_errors, node_id, gpu_id, single_bit, double_bit,
                node_id=node_id, gpu_id=gpu_id,
                data={"single_bit": single_bit, "double_bit": double_bit}, command=command,
            )
        )

    def update_nvlink(
        self, node_id: str, gpu_id: int, link_id: int, updates: dict[str, Any], command: Optional[str] = None
    ) -> bool:
        return bool(
            self._mutate(
                "nvlink-update", ops.update_nvlink, node_id, gpu_id, link_id, updates,
                node_id=node_id, gpu_id=gpu_id, data={"link_id": link_id, **updates}, command=command,
            )
        )

    def update_hca(
        self, node_id: str, hca_id: int, updates: dict[str, Any], command: Optional[str] = None
    ) -> bool:
        return bool(
            self._mutate(
                "hca-update", ops.update_hca, node_id, hca_id, updates,
                node_id=node_id, data={"hca_id": hca_id, **updates}, command=command,
            )
        )

    def update_ib_port(
        self,
        node_id: str,
        hca_id: int,
        port_number: int,
        updates: dict[str, Any],
        command: Optional[str] = None,
    ) -> bool:
        return bool(
            self._mutate(
                "ib-port-update", ops.update_ib_port, node_id, hca_id, port_number, updates,
                node_id=node_id, data={"hca_id": hca_id, "port": port_number, **updates}, command=command,
            )
        )

    def update_node_health(self, node_id: str, status: str, command: Optional[str] = None) -> bool:
        return bool(
            self._mutate(
                "node-health", ops.update_node_health, node_id, status,
                node_id=node_id, data={"health_status": status}, command=command,
            )
        )

    def set_mig_mode(self, node_id: str, gpu_id: int, enabled: bool, command: Optional[str] = None) -> bool:
        return bool(
            self._mutate(
                "mig-mode", ops.set_mig_mode, node_id, gpu_id, enabled,
                node_id=node_id, gpu_id=gpu_id, data={"enabled": enabled}, command=command,
            )
        )

    def add_mig_instance(
        self,
        node_id: str,
        gpu_id: int,
        profile_id: int,
        profile_name: str,
        memory_mib: int,
        command: Optional[str] = None,
    ) -> Optional[MIGInstance]:
        return self._mutate(
            "mig-instance", ops.add_mig_instance, node_id, gpu_id, profile_id, profile_name, memory_mib,
            node_id=node_id, gpu_id=gpu_id, data={"profile": profile_name}, command=command,
        )

    def set_slurm_state(
        self, node_id: str, state: str, reason: Optional[str] = None, command: Optional[str] = None
    ) -> bool:
        return bool(
            self._mutate(
                "slurm-state", ops.set_slurm_state, node_id, state, reason,
                node_id=node_id, data={"state": state, "reason": reason}, command=command,
            )
        )

    def allocate_gpus_for_job(
        self, job_id: int, node_id: str, gpu_ids: Iterable[int], command: Optional[str] = None
    ) -> bool:
        gpu_ids = list(gpu_ids)
        return bool(
            self._mutate(
                "gpu-allocate", ops.allocate_gpus_for_job, job_id, node_id, gpu_ids,
                node_id=node_id, data={"job_id": job_id, "gpu_ids": gpu_ids}, command=command,
            )
        )

    def deallocate_gpus_for_job(self, job_id: int, command: Optional[str] = None) -> bool:
        return bool(
            self._mutate(
                "gpu-deallocate", ops.deallocate_gpus_for_job, job_id,
                data={"job_id": job_id}, command=command,
            )
        )

    def submit_job(
        self,
        name: str,
        user: str = "root",
        partition: Optional[str] = None,
        gpu_count: int = 0,
        node_id: Optional[str] = None,
        job_command: str = "",
        command: Optional[str] = None,
    ) -> Optional[Job]:
        return self._mutate(
            "job-submit", ops.submit_job, name, user, partition, gpu_count, node_id, job_command,
            node_id=node_id, data={"name": name, "gpu_count": gpu_count}, command=command,
        )

    def cancel_job(self, job_id: int, command: Optional[str] = None) -> bool:
        return bool(
            self._mutate("job-cancel", ops.cancel_job, job_id, data={"job_id": job_id}, command=command)
        )

    def complete_job(self, job_id: int, failed: bool = False, command: Optional[str] = None) -> bool:
        return bool(
            self._mutate(
                "job-complete", ops.complete_job, job_id, failed,
                data={"job_id": job_id, "failed": failed}, command=command,
            )
        )

    def set_service_state(self, node_id: str, service: str, state: str, command: Optional[str] = None) -> bool:
        return bool(
            self._mutate(
                "service-state", ops.set_service_state, node_id, service, state,
                node_id=node_id, data={"service": service, "state": state}, command=command,
            )
        )

    def set_power_state(self, node_id: str, power_state: str, command: Optional[str] = None) -> bool:
        return bool(
            self._mutate(
                "power-state", ops.set_power_state, node_id, power_state,
                node_id=node_id, data={"power_state": power_state}, command=command,
            )
        )
