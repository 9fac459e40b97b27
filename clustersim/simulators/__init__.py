"""Tool simulators.

Each simulator is a plain class with ``describe()`` and ``execute()``;
``default_simulators()`` builds one instance of each for the router.
"""

from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    InteractiveSimulator,
    InteractiveState,
    Simulator,
    SimulatorMetadata,
)
from clustersim.simulators.bcm import BcmSimulator
from clustersim.simulators.benchmark import BenchmarkSimulator
from clustersim.simulators.bug_report import BugReportSimulator
from clustersim.simulators.clusterkit import ClusterKitSimulator
from clustersim.simulators.cmsh import CmshSimulator
from clustersim.simulators.container import ContainerSimulator
from clustersim.simulators.dcgmi import DcgmiSimulator
from clustersim.simulators.fabric_manager import FabricManagerSimulator
from clustersim.simulators.infiniband import InfiniBandSimulator
from clustersim.simulators.ipmitool import IpmitoolSimulator
from clustersim.simulators.linux_utils import LinuxUtilsSimulator
from clustersim.simulators.mellanox import MellanoxSimulator
from clustersim.simulators.meta import MetaSimulator
from clustersim.simulators.nvidia_smi import NvidiaSmiSimulator
from clustersim.simulators.nvsm import NvsmSimulator
from clustersim.simulators.pci_tools import PciToolsSimulator
from clustersim.simulators.slurm import SlurmSimulator
from clustersim.simulators.storage import StorageSimulator
from clustersim.simulators.system import SystemSimulator


def default_simulators() -> list:
    """One instance of every tool simulator, meta-commands last."""
    return [
        NvidiaSmiSimulator(),
        DcgmiSimulator(),
        SlurmSimulator(),
        InfiniBandSimulator(),
        MellanoxSimulator(),
        IpmitoolSimulator(),
        NvsmSimulator(),
        CmshSimulator(),
        BcmSimulator(),
        StorageSimulator(),
        PciToolsSimulator(),
        SystemSimulator(),
        LinuxUtilsSimulator(),
        FabricManagerSimulator(),
        ContainerSimulator(),
        BenchmarkSimulator(),
        BugReportSimulator(),
        ClusterKitSimulator(),
        MetaSimulator(),
    ]


__all__ = [
    "BcmSimulator",
    "BenchmarkSimulator",
    "BugReportSimulator",
    "ClusterKitSimulator",
    "CmshSimulator",
    "CommandContext",
    "CommandResult",
    "ContainerSimulator",
    "DcgmiSimulator",
    "FabricManagerSimulator",
    "InfiniBandSimulator",
    "InteractiveSimulator",
    "InteractiveState",
    "IpmitoolSimulator",
    "LinuxUtilsSimulator",
    "MellanoxSimulator",
    "MetaSimulator",
    "NvidiaSmiSimulator",
    "NvsmSimulator",
    "PciToolsSimulator",
    "Simulator",
    "SimulatorMetadata",
    "SlurmSimulator",
    "StorageSimulator",
    "SystemSimulator",
    "default_simulators",
]
