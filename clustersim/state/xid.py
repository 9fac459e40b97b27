"""Catalog of NVIDIA XID error codes used by fault injection and tool output."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class XIDInfo:
    code: int
    name: str
    severity: str
    category: str
    action: str


XID_CATALOG: dict[int, XIDInfo] = {
    info.code: info
    for info in (
        XIDInfo(13, "Graphics Engine Exception", "Warning", "Application", "Check application for illegal memory access"),
        XIDInfo(23, "GPU Shared Memory Exception", "Warning", "Application", "Check application shared memory usage"),
        XIDInfo(24, "GPU Exception During Kernel Launch", "Warning", "Application", "Verify kernel launch parameters"),
        XIDInfo(27, "GPU Memory Interface Error", "Critical", "Memory", "Run dcgmi diag -r 3 and contact support"),
        XIDInfo(31, "GPU Memory Page Fault", "Warning", "Application", "Debug application with compute-sanitizer"),
        XIDInfo(32, "Invalid or Corrupted Push Buffer", "Warning", "Driver", "Reinstall the NVIDIA driver"),
        XIDInfo(38, "Driver Firmware Mismatch", "Critical", "Driver", "Reinstall matching driver and firmware"),
        XIDInfo(43, "GPU Stopped Responding", "Critical", "Hardware", "Reset the GPU with nvidia-smi --gpu-reset"),
        XIDInfo(45, "Preemptive GPU Cleanup", "Informational", "Driver", "No action required"),
        XIDInfo(48, "Double-Bit ECC Error", "Critical", "Memory", "Drain node, reset GPU, check row remapping"),
        XIDInfo(54, "Hardware Watchdog Timeout", "Critical", "Hardware", "Power cycle the node"),
        XIDInfo(56, "Display Engine Error", "Warning", "Hardware", "Check display configuration"),
        XIDInfo(57, "Error in Copy Engine", "Warning", "Driver", "Update the NVIDIA driver"),
        XIDInfo(62, "Spurious Host Interrupt", "Informational", "Driver", "No action required"),
        XIDInfo(63, "Row Remapping Failure", "Critical", "Memory", "Reset GPU; replace if recurring"),
        XIDInfo(64, "Row Remapping Threshold Exceeded", "Critical", "Memory", "Schedule GPU replacement"),
        XIDInfo(68, "Video Processor Exception", "Warning", "Hardware", "Check video decode workload"),
        XIDInfo(69, "Graphics Engine Class Error", "Warning", "Driver", "Update the NVIDIA driver"),
        XIDInfo(72, "NVLink Flow Control Error", "Warning", "NVLink", "Check NVLink status with nvidia-smi nvlink -s"),
        XIDInfo(74, "NVLink Error", "Critical", "NVLink", "Check NVLink and NVSwitch health"),
        XIDInfo(76, "NVLink Training Error", "Critical", "NVLink", "Restart nv-fabricmanager and reset GPUs"),
        XIDInfo(77, "NVLink Timeout", "Critical", "NVLink", "Check NVSwitch fabric"),
        XIDInfo(78, "NVLink ECC Error", "Critical", "NVLink", "Monitor NVLink error counters"),
        XIDInfo(79, "GPU has fallen off the bus", "Critical", "Hardware", "Drain node and power cycle; RMA if recurring"),
        XIDInfo(92, "High Single-Bit ECC Rate", "Warning", "Memory", "Monitor ECC counters"),
        XIDInfo(94, "Contained ECC Error", "Warning", "Memory", "Restart affected application"),
        XIDInfo(95, "Uncontained ECC Error", "Critical", "Memory", "Reset GPU and drain node"),
        XIDInfo(119, "GSP Error", "Critical", "Hardware", "Reset GPU; update firmware"),
    )
}


def get_xid(code: int) -> Optional[XIDInfo]:
    return XID_CATALOG.get(code)


def describe_xid(code: int) -> str:
    info = XID_CATALOG.get(code)
    return info.name if info else f"Unknown XID {code}"


def xid_severity(code: int, default: str = "Critical") -> str:
    info = XID_CATALOG.get(code)
    return info.severity if info else default


def xids_by_severity(severity: str) -> list[XIDInfo]:
    return [info for info in XID_CATALOG.values() if info.severity == severity]
