"""Tests for the infiniband-diags simulator."""

import pytest

from clustersim.simulators.infiniband import fabric_switches, find_port_by_lid, port_gid, switch_model


@pytest.fixture
def downed_port(scenario_context):
    """mlx5_1 on dgx-00 has lost its link."""
    scenario_context.update_ib_port(
        "dgx-00", 1, 1, {"state": "Down", "physical_state": "Polling", "errors": {"link_downed": 3}}
    )
    return scenario_context


class TestIbstat:
    def test_all_adapters(self, run):
        result = run("ibstat")
        assert result.exit_code == 0
        assert result.output.count("CA '") == 8
        assert "CA type: MT4123" in result.output
        assert "Firmware version: 20.35.1012" in result.output
        assert "State: Active" in result.output
        assert "Rate: 200" in result.output

    def test_single_adapter_and_port(self, run):
        output = run("ibstat mlx5_2 1").output
        assert output.count("CA '") == 1
        assert "Base lid: 4" in output

    def test_unknown_adapter(self, run):
        result = run("ibstat mlx5_9")
        assert result.exit_code == 255
        assert "stat of IB device 'mlx5_9' failed" in result.output

    def test_unknown_port(self, run):
        assert run("ibstat mlx5_0 2").exit_code == 255

    def test_list(self, run):
        assert run("ibstat -l").output == "".join(f"mlx5_{i}\n" for i in range(8))

    def test_down_port(self, run, downed_port):
        output = run("ibstat mlx5_1").output
        assert "State: Down" in output
        assert "Physical state: Polling" in output

    def test_follows_current_node(self, shell):
        shell.execute("ssh dgx-01")
        assert "Base lid: 10" in shell.execute("ibstat mlx5_0").output


class TestIbstatus:
    def test_port_status(self, run):
        output = run("ibstatus mlx5_0").output
        assert "Infiniband device 'mlx5_0' port 1 status:" in output
        assert "base lid:\t 0x2" in output
        assert "state:\t\t 4: ACTIVE" in output
        assert "rate:\t\t 200 Gb/sec (4X HDR)" in output

    def test_down_port(self, run, downed_port):
        output = run("ibstatus mlx5_1").output
        assert "1: DOWN" in output
        assert "2: Polling" in output

    def test_missing_device(self, run):
        assert run("ibstatus mlx5_8").exit_code == 1

    def test_ibdev2netdev(self, run, downed_port):
        lines = run("ibdev2netdev").output.strip().splitlines()
        assert lines[0] == "mlx5_0 port 1 ==> ibp0s0 (Up)"
        assert lines[1] == "mlx5_1 port 1 ==> ibp1s0 (Down)"


class TestPortState:
    def test_query(self, run):
        output = run("ibportstate 2 1").output
        assert "LinkState:.......................Active" in output
        assert "LinkSpeedActive:.................HDR" in output

    def test_disable_then_enable(self, run, scenario_context):
        run("ibportstate 2 1 disable")
        port = scenario_context.get_node("dgx-00").hcas[0].ports[0]
        assert port.state == "Down"
        assert port.physical_state == "Disabled"
        assert scenario_context.get_mutations()[-1].command == "ibportstate 2 1 disable"
        run("ibportstate 2 1 enable")
        assert port.state == "Active"

    def test_usage(self, run):
        assert run("ibportstate 2").exit_code == 2
        assert run("ibportstate 2 1 explode").exit_code == 2

    def test_unknown_lid(self, run):
        assert "smp query portinfo failed" in run("ibportstate 9999 1").output


class TestFabricTools:
    def test_porterrors_clean(self, run):
        output = run("ibporterrors").output
        assert "No port errors found." in output
        assert "## Summary: 64 ports checked, 0 bad nodes found" in output

    def test_porterrors_reports_down_port(self, run, downed_port):
        output = run("ibporterrors").output
        assert '"dgx-00 mlx5_1"' in output
        assert "[LinkDownedCounter == 3]" in output
        assert "1 bad nodes found" in output

    def test_iblinkinfo(self, run, downed_port):
        output = run("iblinkinfo").output
        assert output.count("Switch: ") == 8
        assert 'leaf-00 "Quantum QM8700"' in output
        assert '"dgx-03 mlx5_0"' in output
        assert "Down/  Polling" in output

    def test_perfquery_local_and_lid(self, run, scenario_context):
        scenario_context.update_ib_port("dgx-00", 0, 1, {"errors": {"symbol_errors": 5}})
        lines = run("perfquery").output.splitlines()
        assert lines[0].startswith("# Port counters: Lid 2 port 1")
        symbol = next(line for line in lines if line.startswith("SymbolErrorCounter:"))
        assert symbol.endswith(".5")
        assert not any(line.startswith("PortXmitWait") for line in lines)
        assert any(line.startswith("PortXmitWait") for line in run("perfquery -x").output.splitlines())

    def test_perfquery_reset(self, run, scenario_context):
        scenario_context.update_ib_port("dgx-00", 0, 1, {"errors": {"symbol_errors": 5}})
        run("perfquery 2 -r")
        assert scenario_context.get_node("dgx-00").hcas[0].ports[0].errors.symbol_errors == 0

    def test_perfquery_traffic_is_stable(self, run):
        assert run("perfquery 3").output == run("perfquery 3").output

    def test_perfquery_unknown_lid(self, run):
        assert run("perfquery 9999").exit_code == 1

    def test_ibnetdiscover_and_hosts(self, run):
        assert "# Topology file: generated by ibnetdiscover" in run("ibnetdiscover").output
        hosts = run("ibhosts").output.strip().splitlines()
        assert len(hosts) == 64
        assert hosts[0].endswith('"dgx-00 mlx5_0"')
        switches = run("ibswitches").output.strip().splitlines()
        assert len(switches) == 8
        assert "lid 4000" in switches[0]

    def test_ibdiagnet_clean(self, run):
        result = run("ibdiagnet")
        assert result.exit_code == 0
        assert "72 nodes (8 Switches & 64 CA-s) discovered" in result.output

    def test_ibdiagnet_errors(self, run, downed_port):
        result = run("ibdiagnet")
        assert result.exit_code == 1
        assert '-E- Port "dgx-00 mlx5_1" port 1 lid 3 is Down (Polling)' in result.output
        assert "LinkDownedCounter = 3" in result.output


class TestHelpers:
    def test_fabric_switches(self, store):
        switches = fabric_switches(store.get_cluster())
        assert [s.rail for s in switches] == list(range(8))
        assert len(switches[0].links) == 8
        assert switches[0].name == "leaf-00"

    def test_find_port_by_lid(self, store):
        node, hca, port = find_port_by_lid(store.get_cluster(), 10)
        assert (node.id, hca.dev_name) == ("dgx-01", "mlx5_0")
        assert find_port_by_lid(store.get_cluster(), 1) is None

    def test_port_gid(self, store):
        port = store.get_node("dgx-00").hcas[0].ports[0]
        assert port_gid(port) == "fe80:0000:0000:0000:b8ce:f603:0000:0000"

    def test_switch_model(self):
        assert switch_model(400) == "Quantum-2 QM9700"
        assert switch_model(200) == "Quantum QM8700"
