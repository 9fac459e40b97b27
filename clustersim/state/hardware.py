"""Per-system-type hardware values used by the cluster factory."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class HardwareSpec:
    """Hardware derived deterministically from a DGX system type."""

    system_type: str
    generation: str
    gpu_model: str
    gpu_type: str
    gpu_count: int
    gpu_memory_mib: int
    gpu_tdp_watts: int
    gpu_pci_device_id: str
    boost_clock_mhz: int
    memory_clock_mhz: int
    nvlink_version: str
    nvlinks_per_gpu: int
    nvlink_speed_gbs: float
    nvswitch_count: int
    hca_model: str
    hca_count: int
    hca_rate_gbs: int
    hca_firmware: str
    cpu_model: str
    cpu_sockets: int
    cpu_cores_per_socket: int
    system_memory_gb: int

    @property
    def display_name(self) -> str:
        return self.system_type.replace("-", " ")

    @property
    def nvlink_label(self) -> str:
        return f"NV{self.nvlinks_per_gpu}"


HARDWARE_SPECS: dict[str, HardwareSpec] = {
    "DGX-A100": HardwareSpec(
        system_type="DGX-A100",
        generation="Ampere",
        gpu_model="NVIDIA A100-SXM4-80GB",
        gpu_type="A100",
        gpu_count=8,
        gpu_memory_mib=81920,
        gpu_tdp_watts=400,
        gpu_pci_device_id="20B2",
        boost_clock_mhz=1410,
        memory_clock_mhz=1215,
        nvlink_version="3.0",
        nvlinks_per_gpu=12,
        nvlink_speed_gbs=25.0,
        nvswitch_count=6,
        hca_model="ConnectX-6",
        hca_count=8,
        hca_rate_gbs=200,
        hca_firmware="20.35.1012",
        cpu_model="AMD EPYC 7742",
        cpu_sockets=2,
        cpu_cores_per_socket=64,
        system_memory_gb=1024,
    ),
    "DGX-H100": HardwareSpec(
        system_type="DGX-H100",
        generation="Hopper",
        gpu_model="NVIDIA H100-SXM5-80GB",
        gpu_type="H100",
        gpu_count=8,
        gpu_memory_mib=81920,
        gpu_tdp_watts=700,
        gpu_pci_device_id="2330",
        boost_clock_mhz=1830,
        memory_clock_mhz=2619,
        nvlink_version="4.0",
        nvlinks_per_gpu=18,
        nvlink_speed_gbs=25.0,
        nvswitch_count=4,
        hca_model="ConnectX-7",
        hca_count=8,
        hca_rate_gbs=400,
        hca_firmware="28.39.1002",
        cpu_model="Intel Xeon 8480C",
        cpu_sockets=2,
        cpu_cores_per_socket=56,
        system_memory_gb=2048,
    ),
    "DGX-H200": HardwareSpec(
        system_type="DGX-H200",
        generation="Hopper",
        gpu_model="NVIDIA H200-SXM-141GB",
        gpu_type="H200",
        gpu_count=8,
        gpu_memory_mib=144384,
        gpu_tdp_watts=700,
        gpu_pci_device_id="2335",
        boost_clock_mhz=1830,
        memory_clock_mhz=2619,
        nvlink_version="4.0",
        nvlinks_per_gpu=18,
        nvlink_speed_gbs=25.0,
        nvswitch_count=4,
        hca_model="ConnectX-7",
        hca_count=8,
        hca_rate_gbs=400,
        hca_firmware="28.39.1002",
        cpu_model="Intel Xeon 8480C",
        cpu_sockets=2,
        cpu_cores_per_socket=56,
        system_memory_gb=2048,
    ),
    "DGX-B200": HardwareSpec(
        system_type="DGX-B200",
        generation="Blackwell",
        gpu_model="NVIDIA B200-SXM-192GB",
        gpu_type="B200",
        gpu_count=8,
        gpu_memory_mib=196608,
        gpu_tdp_watts=1000,
        gpu_pci_device_id="2900",
        boost_clock_mhz=2100,
        memory_clock_mhz=3200,
        nvlink_version="5.0",
        nvlinks_per_gpu=18,
        nvlink_speed_gbs=50.0,
        nvswitch_count=2,
        hca_model="ConnectX-7",
        hca_count=8,
        hca_rate_gbs=400,
        hca_firmware="28.39.1002",
        cpu_model="Intel Xeon 8570",
        cpu_sockets=2,
        cpu_cores_per_socket=56,
        system_memory_gb=2048,
    ),
}


def get_hardware_spec(system_type: str) -> HardwareSpec:
    """Return the spec for ``system_type``, falling back to DGX-A100."""
    return HARDWARE_SPECS.get(system_type, HARDWARE_SPECS["DGX-A100"])


def ib_standard_name(rate_gbs: float) -> str:
    """Map an InfiniBand link rate to its standard name (HDR, NDR, ...)."""
    if rate_gbs >= 800:
        return "XDR"
    if rate_gbs >= 400:
        return "NDR"
    if rate_gbs >= 200:
        return "HDR"
    if rate_gbs >= 100:
        return "EDR"
    if rate_gbs >= 56:
        return "FDR"
    return "QDR"
