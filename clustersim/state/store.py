"""Canonical cluster state."""

from __future__ import annotations

import logging
from typing import Optional

from clustersim.state.factory import create_custom_cluster, create_default_cluster
from clustersim.state.models import ClusterConfig
from clustersim.state.view import ClusterView, clone_cluster

LOGGER = logging.getLogger(__name__)


class ClusterStateStore(ClusterView):
    """Owner of the canonical ``ClusterConfig``.

    The store is an explicit handle passed to whoever needs it; there is no
    module-level instance. Scenario contexts receive deep copies via
    :meth:`snapshot` and never write back.
    """

    def __init__(
        self,
        cluster: Optional[ClusterConfig] = None,
        node_count: Optional[int] = None,
        system_type: Optional[str] = None,
    ):
        self._node_count = node_count
        self._system_type = system_type
        super().__init__(cluster if cluster is not None else self._build())

    @classmethod
    def from_config(cls, config) -> "ClusterStateStore":
        """Build a store from a :class:`~clustersim.configs.Config`."""
        return cls(
            cluster=create_custom_cluster(
                config.get("cluster.node_count", 8),
                config.get("cluster.system_type", "DGX-A100"),
                config.get("cluster.name", "dgx-superpod"),
            ),
            node_count=config.get("cluster.node_count", 8),
            system_type=config.get("cluster.system_type", "DGX-A100"),
        )

    def _build(self) -> ClusterConfig:
        if self._node_count is None and self._system_type is None:
            return create_default_cluster()
        return create_custom_cluster(self._node_count or 8, self._system_type or "DGX-A100")

    def reset(self, cluster: Optional[ClusterConfig] = None) -> None:
        """Replace the canonical cluster wholesale."""
        self._cluster = clone_cluster(cluster) if cluster is not None else self._build()
        LOGGER.info("Cluster state reset (%d nodes)", len(self._cluster.nodes))
