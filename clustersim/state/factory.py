"""Deterministic construction of simulated clusters."""

from __future__ import annotations

import uuid

from clustersim.state.hardware import HardwareSpec, get_hardware_spec
from clustersim.state.models import (
    BMC,
    DPU,
    GPU,
    HCA,
    BcmHAConfig,
    BMCSensor,
    ClusterConfig,
    IBPort,
    NVLinkConnection,
    Node,
    Partition,
    SlurmConfig,
    StorageMount,
)

DEFAULT_NODE_COUNT = 8
DEFAULT_SYSTEM_TYPE = "DGX-A100"

# PCI bus numbers of the eight SXM slots on a DGX baseboard
GPU_PCI_BUSES = ("07", "0F", "47", "4E", "87", "90", "B7", "BD")
HCA_PCI_BUSES = ("0C", "12", "4B", "54", "8D", "94", "BA", "CC")

_UUID_NAMESPACE = uuid.UUID("6f1c2a8e-3b0d-4c55-9a7e-2d1e5f0b7c44")


def node_id_for(index: int) -> str:
    return f"dgx-{index:02d}"


def _gpu_uuid(hostname: str, gpu_index: int) -> str:
    return f"GPU-{uuid.uuid5(_UUID_NAMESPACE, f'{hostname}/gpu{gpu_index}')}"


def _create_gpu(spec: HardwareSpec, hostname: str, index: int) -> GPU:
    bus = GPU_PCI_BUSES[index % len(GPU_PCI_BUSES)]
    return GPU(
        id=index,
        uuid=_gpu_uuid(hostname, index),
        name=spec.gpu_model,
        type=spec.gpu_type,
        pci_address=f"00000000:{bus}:00.0",
        temperature=32.0 + index % 4,
        power_draw=round(spec.gpu_tdp_watts * 0.15, 1),
        power_limit=float(spec.gpu_tdp_watts),
        memory_total=spec.gpu_memory_mib,
        memory_used=0,
        utilization=0.0,
        clocks_sm=spec.boost_clock_mhz,
        clocks_mem=spec.memory_clock_mhz,
        nvlinks=[
            NVLinkConnection(link_id=link, speed=spec.nvlink_speed_gbs)
            for link in range(spec.nvlinks_per_gpu)
        ],
    )


def _create_hca(spec: HardwareSpec, node_index: int, index: int) -> HCA:
    lid = node_index * spec.hca_count + index + 2
    guid = f"0x{0xB8CEF60300000000 + node_index * 0x100 + index:016x}"
    return HCA(
        id=index,
        dev_name=f"mlx5_{index}",
        pci_address=f"0000:{HCA_PCI_BUSES[index % len(HCA_PCI_BUSES)]}:00.0",
        ca_type=spec.hca_model,
        firmware_version=spec.hca_firmware,
        ports=[IBPort(port_number=1, rate=spec.hca_rate_gbs, lid=lid, guid=guid)],
    )


def _create_bmc(node_index: int) -> BMC:
    return BMC(
        ip_address=f"10.0.254.{node_index + 10}",
        mac_address=f"b8:ce:f6:00:fe:{node_index + 10:02x}",
        firmware_version="24.01.05",
        sensors=[
            BMCSensor("CPU0_Temp", 45.0, "degrees C", upper_critical=95.0),
            BMCSensor("CPU1_Temp", 47.0, "degrees C", upper_critical=95.0),
            BMCSensor("Inlet_Temp", 22.0, "degrees C", upper_critical=40.0),
            BMCSensor("Exhaust_Temp", 38.0, "degrees C", upper_critical=70.0),
            BMCSensor("PSU0_Power", 1650.0, "Watts"),
            BMCSensor("PSU1_Power", 1640.0, "Watts"),
            BMCSensor("FAN1_Speed", 8400.0, "RPM"),
            BMCSensor("FAN2_Speed", 8520.0, "RPM"),
        ],
    )


def _create_storage() -> list[StorageMount]:
    return [
        StorageMount("/dev/nvme0n1p2", "ext4", 1_843_200_000, 412_000_000, "/", 117_000_000, 1_520_000),
        StorageMount("/dev/md0", "ext4", 14_060_000_000, 2_110_000_000, "/raid", 878_000_000, 84_000),
        StorageMount("headnode:/home", "nfs4", 4_194_304_000, 1_311_000_000, "/home", 262_000_000, 9_400_000),
        StorageMount(
            "10.10.0.1@o2ib:/lustre", "lustre", 1_319_413_953_331, 659_706_976_665, "/lustre",
            4_000_000_000, 1_250_000_000,
        ),
    ]


def create_node(index: int, system_type: str = DEFAULT_SYSTEM_TYPE) -> Node:
    """Build one node whose hardware is derived from ``system_type``."""
    spec = get_hardware_spec(system_type)
    node_id = node_id_for(index)
    return Node(
        id=node_id,
        hostname=node_id,
        system_type=spec.system_type,
        gpus=[_create_gpu(spec, node_id, i) for i in range(spec.gpu_count)],
        hcas=[_create_hca(spec, index, i) for i in range(spec.hca_count)],
        dpus=[DPU(id=i, name=f"BlueField-3 DPU {i}", firmware_version="32.39.1002") for i in range(2)],
        bmc=_create_bmc(index),
        cpu_model=spec.cpu_model,
        cpu_sockets=spec.cpu_sockets,
        cpu_cores_per_socket=spec.cpu_cores_per_socket,
        ram_total_gb=spec.system_memory_gb,
        ram_used_gb=spec.system_memory_gb // 16,
        storage=_create_storage(),
    )


def create_custom_cluster(
    node_count: int = DEFAULT_NODE_COUNT,
    system_type: str = DEFAULT_SYSTEM_TYPE,
    name: str = "dgx-superpod",
) -> ClusterConfig:
    """Build a cluster of identical nodes.

    Args:
        node_count: Number of compute nodes (at least 1)
        system_type: One of the DGX system types; unknown values fall back to DGX-A100
        name: Cluster name reported by Slurm and BCM tools

    Returns:
        A fresh ClusterConfig with every node idle and healthy
    """
    node_count = max(int(node_count), 1)
    nodes = [create_node(i, system_type) for i in range(node_count)]
    node_ids = [n.id for n in nodes]
    slurm = SlurmConfig(
        cluster_name=name,
        partitions=[
            Partition(name="batch", nodes=list(node_ids), default=True),
            Partition(name="debug", nodes=node_ids[:2], max_time="1:00:00"),
        ],
    )
    return ClusterConfig(name=name, nodes=nodes, bcm_ha=BcmHAConfig(), slurm_config=slurm)


def create_default_cluster() -> ClusterConfig:
    """Eight DGX-A100 nodes, dgx-00 through dgx-07."""
    return create_custom_cluster(DEFAULT_NODE_COUNT, DEFAULT_SYSTEM_TYPE)
