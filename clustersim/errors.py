"""Custom exceptions for clustersim.

Command execution reports user mistakes as non-zero exit codes, so these
errors only surface at load boundaries: configuration files, scenario files
and the command definition registry.
"""


class ClusterSimError(Exception):
    """Base exception for all clustersim errors."""

    pass


class ConfigError(ClusterSimError):
    """Raised when configuration is invalid or a required config file is missing."""

    pass


class ScenarioError(ClusterSimError):
    """Raised when a scenario file is malformed or references unknown entities."""

    pass


class DefinitionError(ClusterSimError):
    """Raised when a command definition file cannot be parsed."""

    pass
