"""Tests for the command router."""

from clustersim.parser import parse
from clustersim.router import CommandRouter
from clustersim.simulators.base import CommandResult, SimulatorMetadata, success


class EchoSimulator:
    """Test double answering with its own name."""

    def __init__(self, name, commands=("echo-test",)):
        self.metadata = SimulatorMetadata(name=name, version="0", description="", commands=tuple(commands))

    def describe(self):
        return self.metadata

    def execute(self, parsed, context):
        return success(f"{self.metadata.name}:{parsed.base_command}\n")


def test_default_router_covers_every_tool(router):
    for name in (
        "nvidia-smi", "dcgmi", "sinfo", "scontrol", "ibstat", "mlxconfig", "ipmitool", "cmsh", "nvsm",
        "nv-fabricmanager", "docker", "all_reduce_perf", "nvidia-bug-report.sh", "clusterkit", "help",
    ):
        assert router.has(name), name


def test_by_simulator_groups_commands(router):
    groups = router.by_simulator()
    assert "nvswitch-audit" in groups["nv-fabricmanager"]
    assert groups["meta"] == ["explain", "help", "practice"]


def test_register_simulator_and_dispatch(shell):
    router = CommandRouter()
    router.register_simulator(EchoSimulator("first", ["alpha", "beta"]))
    assert router.names() == ["alpha", "beta"]
    result = router.dispatch(parse("beta --x"), shell.context())
    assert isinstance(result, CommandResult)
    assert result.output == "first:beta\n"


def test_last_registration_wins(shell):
    router = CommandRouter()
    router.register("alpha", EchoSimulator("first"))
    router.register("alpha", EchoSimulator("second"))
    assert router.dispatch(parse("alpha"), shell.context()).output == "second:alpha\n"


def test_unknown_command_dispatches_to_none(shell):
    assert CommandRouter().dispatch(parse("alpha"), shell.context()) is None


class FlagEchoSimulator(EchoSimulator):
    """Test double answering with the flags it received."""

    def __init__(self):
        self.metadata = SimulatorMetadata(
            name="flags", version="0", description="", commands=("tool",), value_flags=("count",)
        )

    def execute(self, parsed, context):
        return success(f"{sorted(parsed.flags.items())} {parsed.args}\n")


def test_dispatch_binds_declared_value_flags(shell):
    router = CommandRouter()
    router.register_simulator(FlagEchoSimulator())
    result = router.dispatch(parse("tool --count 3 --dry-run target"), shell.context())
    assert result.output == "[('count', '3'), ('dry-run', True)] ['target']\n"


def test_bind_leaves_other_commands_alone(router):
    parsed = parse("unknown --count 3")
    assert router.bind(parsed) is parsed
    assert router.bind(parse("nccl-test --operation broadcast")).get_flag("operation") == "broadcast"
