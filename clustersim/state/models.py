"""Dataclasses describing simulated cluster hardware and scheduler state."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional

HealthStatus = Literal["OK", "Warning", "Critical"]
XIDSeverity = Literal["Informational", "Warning", "Critical"]
SlurmState = Literal["idle", "alloc", "mix", "drain", "down"]
JobState = Literal["PENDING", "RUNNING", "COMPLETED", "CANCELLED", "FAILED"]
PortState = Literal["Active", "Down", "Init", "Polling"]
LinkStatus = Literal["Active", "Down"]

SYSTEM_TYPES = ("DGX-A100", "DGX-H100", "DGX-H200", "DGX-B200")

# systemd units the simulated tools report on, with their initial state
DEFAULT_SERVICES = {
    "nvidia-fabricmanager": "active",
    "nvidia-persistenced": "active",
    "nvidia-dcgm": "active",
    "nvsm-core": "active",
    "slurmd": "active",
    "docker": "active",
    "openibd": "active",
    "sshd": "active",
}


@dataclass
class XIDError:
    code: int
    timestamp: float
    description: str
    severity: XIDSeverity = "Critical"


@dataclass
class ECCCounts:
    single_bit: int = 0
    double_bit: int = 0


@dataclass
class ECCErrors:
    """Volatile ECC counters plus lifetime (aggregated) totals."""

    single_bit: int = 0
    double_bit: int = 0
    aggregated: ECCCounts = field(default_factory=ECCCounts)


@dataclass
class NVLinkConnection:
    link_id: int
    status: LinkStatus = "Active"
    speed: float = 25.0
    tx_errors: int = 0
    rx_errors: int = 0
    replay_errors: int = 0


@dataclass
class MIGInstance:
    id: int
    gpu_instance_id: int
    compute_instance_id: int
    profile_id: int
    profile_name: str
    memory_mib: int


@dataclass
class GPU:
    """One GPU and its telemetry.

    Telemetry invariants (enforced by the mutation operations):
    ``0 <= memory_used <= memory_total``, ``0 <= temperature <= 120``,
    ``0 <= utilization <= 100`` and ``0 <= power_draw <= power_limit * 1.1``.
    """

    id: int
    uuid: str
    name: str
    type: str
    pci_address: str
    temperature: float = 32.0
    power_draw: float = 60.0
    power_limit: float = 400.0
    memory_total: int = 81920
    memory_used: int = 0
    utilization: float = 0.0
    clocks_sm: int = 1410
    clocks_mem: int = 1215
    ecc_errors: ECCErrors = field(default_factory=ECCErrors)
    xid_errors: list[XIDError] = field(default_factory=list)
    nvlinks: list[NVLinkConnection] = field(default_factory=list)
    health_status: HealthStatus = "OK"
    mig_mode: bool = False
    mig_instances: list[MIGInstance] = field(default_factory=list)
    persistence_mode: bool = True
    allocated_job_id: Optional[int] = None

    @property
    def has_fatal_xid(self) -> bool:
        """True when the GPU has fallen off the bus (XID 79)."""
        return any(e.code == 79 for e in self.xid_errors)


@dataclass
class IBPortErrors:
    symbol_errors: int = 0
    link_downed: int = 0
    port_rcv_errors: int = 0
    port_xmit_discards: int = 0
    port_xmit_wait: int = 0


@dataclass
class IBPort:
    port_number: int
    state: PortState = "Active"
    physical_state: str = "LinkUp"
    rate: int = 200
    lid: int = 1
    guid: str = "0x0000000000000000"
    link_layer: str = "InfiniBand"
    errors: IBPortErrors = field(default_factory=IBPortErrors)


@dataclass
class HCA:
    id: int
    dev_name: str
    ca_type: str
    firmware_version: str
    pci_address: str = ""
    ports: list[IBPort] = field(default_factory=list)


@dataclass
class DPU:
    id: int
    name: str
    firmware_version: str
    mode: str = "DPU"
    state: str = "Running"


@dataclass
class BMCSensor:
    name: str
    reading: float
    unit: str
    status: str = "ok"
    upper_critical: Optional[float] = None


@dataclass
class BMC:
    ip_address: str
    mac_address: str
    firmware_version: str
    manufacturer: str = "NVIDIA"
    power_state: str = "On"
    sensors: list[BMCSensor] = field(default_factory=list)


@dataclass
class StorageMount:
    filesystem: str
    fs_type: str
    size_kb: int
    used_kb: int
    mount_point: str
    inodes_total: int = 0
    inodes_used: int = 0

    @property
    def available_kb(self) -> int:
        return max(self.size_kb - self.used_kb, 0)


@dataclass
class Node:
    id: str
    hostname: str
    system_type: str
    gpus: list[GPU] = field(default_factory=list)
    hcas: list[HCA] = field(default_factory=list)
    dpus: list[DPU] = field(default_factory=list)
    bmc: Optional[BMC] = None
    cpu_model: str = "AMD EPYC 7742"
    cpu_sockets: int = 2
    cpu_cores_per_socket: int = 64
    ram_total_gb: int = 1024
    ram_used_gb: int = 64
    os_version: str = "Ubuntu 22.04.3 LTS"
    kernel_version: str = "5.15.0-91-generic"
    nvidia_driver_version: str = "535.129.03"
    cuda_version: str = "12.2"
    health_status: HealthStatus = "OK"
    slurm_state: SlurmState = "idle"
    slurm_reason: Optional[str] = None
    storage: list[StorageMount] = field(default_factory=list)
    services: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SERVICES))

    @property
    def cpu_count(self) -> int:
        return self.cpu_sockets * self.cpu_cores_per_socket * 2

    def get_gpu(self, gpu_id: int) -> Optional[GPU]:
        for gpu in self.gpus:
            if gpu.id == gpu_id:
                return gpu
        return None


@dataclass
class Job:
    job_id: int
    name: str
    user: str
    partition: str
    state: JobState
    node_id: Optional[str] = None
    gpu_ids: list[int] = field(default_factory=list)
    submit_time: float = 0.0
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    command: str = ""
    time_limit: str = "UNLIMITED"
    exit_code: str = "0:0"


@dataclass
class Partition:
    name: str
    nodes: list[str] = field(default_factory=list)
    default: bool = False
    max_time: str = "infinite"
    state: str = "UP"


@dataclass
class SlurmConfig:
    cluster_name: str = "dgx-superpod"
    controller: str = "headnode"
    partitions: list[Partition] = field(default_factory=list)


@dataclass
class BcmHAConfig:
    enabled: bool = True
    primary: str = "headnode-01"
    secondary: str = "headnode-02"
    active: str = "headnode-01"
    state: str = "OK"


@dataclass
class ClusterConfig:
    """Root aggregate of simulated state."""

    name: str
    nodes: list[Node] = field(default_factory=list)
    fabric_topology: str = "FatTree"
    bcm_ha: BcmHAConfig = field(default_factory=BcmHAConfig)
    slurm_config: SlurmConfig = field(default_factory=SlurmConfig)
    jobs: list[Job] = field(default_factory=list)
    next_job_id: int = 1001

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id or node.hostname == node_id:
                return node
        return None

    def get_job(self, job_id: int) -> Optional[Job]:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        return None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
