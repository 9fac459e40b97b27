"""Isolated per-scenario cluster state.

A ScenarioContext starts from a deep clone of a baseline cluster and logs
every mutation applied to it. Nothing written to a context ever reaches the
canonical store, so a training exercise can break hardware freely and be
thrown away afterwards.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from clustersim.state.models import ClusterConfig
from clustersim.state.store import ClusterStateStore
from clustersim.state.view import ClusterView, clone_cluster

LOGGER = logging.getLogger(__name__)


@dataclass
class Mutation:
    """One state change recorded by a scenario context."""

    type: str
    node_id: Optional[str] = None
    gpu_id: Optional[int] = None
    data: Any = None
    command: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ScenarioContext(ClusterView):
    """Private, mutable copy of cluster state for one scenario."""

    def __init__(self, scenario_id: str, baseline: ClusterConfig):
        """Initialize the context.

        Args:
            scenario_id: Identifier of the owning scenario
            baseline: Cluster to clone; never referenced after construction
        """
        self.scenario_id = scenario_id
        self._baseline = clone_cluster(baseline)
        super().__init__(clone_cluster(self._baseline))
        self._mutations: List[Mutation] = []
        self._readonly = False
        self._created_at = time.monotonic()

    def _record(self, kind, node_id, gpu_id, data, command) -> None:
        self._mutations.append(Mutation(type=kind, node_id=node_id, gpu_id=gpu_id, data=data, command=command))
        LOGGER.debug("[%s] mutation #%d %s on %s/%s", self.scenario_id, len(self._mutations), kind, node_id, gpu_id)

    def set_readonly(self, readonly: bool) -> None:
        self._readonly = bool(readonly)

    def is_readonly(self) -> bool:
        return self._readonly

    def apply_fault(
        self,
        fault_type: str,
        node_id: str,
        gpu_id: int,
        steps: List[Callable[[ClusterConfig], bool]],
        data: Any = None,
    ) -> bool:
        """Apply several field changes as one recorded mutation.

        Each step receives the working cluster. The mutation is recorded once
        if at least one step succeeded.
        """
        if self._readonly:
            return False
        applied = False
        for step in steps:
            applied = bool(step(self._cluster)) or applied
        if applied:
            self._record(f"fault:{fault_type}", node_id, gpu_id, data, None)
        return applied

    def get_mutations(self) -> List[Mutation]:
        return list(self._mutations)

    def get_mutation_count(self) -> int:
        return len(self._mutations)

    def get_diff(self) -> List[Dict[str, Any]]:
        """Mutations applied since creation or the last reset, oldest first."""
        return [m.to_dict() for m in self._mutations]

    def get_runtime_ms(self) -> float:
        return (time.monotonic() - self._created_at) * 1000.0

    def reset(self) -> None:
        """Restore the baseline clone and clear the mutation log (no-op when read-only)."""
        if self._readonly:
            return
        self._cluster = clone_cluster(self._baseline)
        self._mutations = []

    def export(self) -> str:
        """JSON document with the scenario id, current cluster and mutation log."""
        return json.dumps(
            {
                "scenario_id": self.scenario_id,
                "cluster": self._cluster.to_dict(),
                "mutations": self.get_diff(),
            },
            default=str,
        )


class ScenarioContextManager:
    """Tracks scenario contexts and which one, if any, is active.

    Args:
        store: Canonical store contexts are cloned from
    """

    def __init__(self, store: ClusterStateStore):
        self.store = store
        self._contexts: Dict[str, ScenarioContext] = {}
        self._active_id: Optional[str] = None

    def create_context(self, scenario_id: str, baseline: Optional[ClusterConfig] = None) -> ScenarioContext:
        """Create (or replace) the context for ``scenario_id``."""
        context = ScenarioContext(scenario_id, baseline if baseline is not None else self.store.cluster)
        self._contexts[scenario_id] = context
        LOGGER.info("Created scenario context %s", scenario_id)
        return context

    def get_context(self, scenario_id: str) -> Optional[ScenarioContext]:
        return self._contexts.get(scenario_id)

    def get_or_create(self, scenario_id: str) -> ScenarioContext:
        context = self._contexts.get(scenario_id)
        if context is None:
            context = self.create_context(scenario_id)
        return context

    def set_active_context(self, scenario_id: Optional[str]) -> bool:
        """Activate a context by id, or deactivate with ``None``.

        Returns:
            False when ``scenario_id`` names no context
        """
        if scenario_id is not None and scenario_id not in self._contexts:
            return False
        self._active_id = scenario_id
        LOGGER.info("Active scenario context: %s", scenario_id or "none")
        return True

    def get_active_context(self) -> Optional[ScenarioContext]:
        if self._active_id is None:
            return None
        return self._contexts.get(self._active_id)

    def destroy_context(self, scenario_id: str) -> bool:
        context = self._contexts.pop(scenario_id, None)
        if context is None:
            return False
        if self._active_id == scenario_id:
            self._active_id = None
        LOGGER.info("Destroyed scenario context %s", scenario_id)
        return True

    def clear(self) -> None:
        self._contexts.clear()
        self._active_id = None

    def list_contexts(self) -> List[str]:
        return list(self._contexts)

    def resolve_view(self) -> Union[ScenarioContext, ClusterStateStore]:
        """The object commands read and write: the active context, else the store."""
        return self.get_active_context() or self.store
