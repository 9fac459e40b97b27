"""Simulated cluster state: models, factory and mutation operations."""

from clustersim.state.factory import create_custom_cluster, create_default_cluster
from clustersim.state.hardware import HARDWARE_SPECS, get_hardware_spec, ib_standard_name
from clustersim.state.models import GPU, HCA, ClusterConfig, Job, Node, XIDError
from clustersim.state.store import ClusterStateStore
from clustersim.state.view import ClusterView, clone_cluster
from clustersim.state.xid import XID_CATALOG, describe_xid, get_xid

__all__ = [
    "ClusterConfig",
    "ClusterStateStore",
    "ClusterView",
    "GPU",
    "HARDWARE_SPECS",
    "HCA",
    "Job",
    "Node",
    "XIDError",
    "XID_CATALOG",
    "clone_cluster",
    "create_custom_cluster",
    "create_default_cluster",
    "describe_xid",
    "get_hardware_spec",
    "get_xid",
    "ib_standard_name",
]
