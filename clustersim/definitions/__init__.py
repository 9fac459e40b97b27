"""Command documentation data and the registry that serves it."""

from clustersim.definitions.registry import (
    CommandDefinition,
    CommandDefinitionRegistry,
    load_consistency_groups,
)

__all__ = ["CommandDefinition", "CommandDefinitionRegistry", "load_consistency_groups"]
