"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest

from clustersim.definitions.registry import CommandDefinitionRegistry
from clustersim.router import build_default_router
from clustersim.scenario.context import ScenarioContextManager
from clustersim.shell import ShellSession
from clustersim.state.store import ClusterStateStore

SCENARIO_DIR = Path(__file__).resolve().parent.parent / "examples" / "scenarios"


@pytest.fixture(scope="session")
def registry():
    """Command definitions loaded once per test session."""
    return CommandDefinitionRegistry()


@pytest.fixture(scope="session")
def router():
    """Default router; simulators hold no cluster state so it can be shared."""
    return build_default_router()


@pytest.fixture
def store():
    """Fresh canonical store: eight DGX-A100 nodes."""
    return ClusterStateStore()


@pytest.fixture
def manager(store):
    return ScenarioContextManager(store)


@pytest.fixture
def scenario_context(manager):
    """Active scenario context named ``test``."""
    context = manager.create_context("test")
    manager.set_active_context("test")
    return context


@pytest.fixture
def shell(manager, router, registry):
    return ShellSession(manager, router=router, registry=registry)


@pytest.fixture
def run(shell):
    """Execute one line in the shell and return the CommandResult."""
    return shell.execute


@pytest.fixture
def scenario_dir():
    return SCENARIO_DIR
