"""Identical commands against two fresh clusters give identical results."""

import pytest

from clustersim.scenario.context import ScenarioContextManager
from clustersim.shell import ShellSession
from clustersim.state.store import ClusterStateStore

COMMANDS = [
    "nvidia-smi",
    "nvidia-smi -L",
    "nvidia-smi -q -i 0",
    "nvidia-smi --query-gpu=index,temperature.gpu --format=csv",
    "nvidia-smi dmon -c 2 -i 0",
    "nvidia-smi topo -m",
    "dcgmi discovery -l",
    "dcgmi diag -r 2",
    "dcgmi health -c",
    "dcgmi dmon -e 150 -i 1 -c 1",
    "sinfo",
    "sinfo -N",
    "ipmitool sensor",
    "ipmitool sdr type temperature",
    "ipmitool sel elist",
    "nvsm show health",
    "nvsm show gpus",
]


def fresh_shell(router, registry):
    """Shell on a new store with one fault-free active context."""
    manager = ScenarioContextManager(ClusterStateStore())
    manager.create_context("test")
    manager.set_active_context("test")
    return ShellSession(manager, router=router, registry=registry)


@pytest.mark.parametrize("command", COMMANDS)
def test_same_command_same_result(router, registry, command):
    first = fresh_shell(router, registry).execute(command)
    second = fresh_shell(router, registry).execute(command)
    assert (first.output, first.exit_code) == (second.output, second.exit_code)


def test_repeated_session_is_stable(router, registry):
    shells = [fresh_shell(router, registry), fresh_shell(router, registry)]
    runs = [[(r.output, r.exit_code) for r in map(shell.execute, COMMANDS)] for shell in shells]
    assert runs[0] == runs[1]
