"""Tests for Base Command Manager tools (cmsh, bcm, bcm-node) and nvsm."""

import json

import pytest

from clustersim.simulators.cmsh import device_status, make_prompt
from clustersim.simulators.nvsm import PROMPT, health_checks


class TestCmshOneShot:
    """cmsh -c runs ;-separated commands from the top level."""

    def test_device_status(self, run):
        lines = run('cmsh -c "device; status"').output.strip().splitlines()
        assert len(lines) == 9
        assert lines[0].startswith("headnode ....")
        assert lines[1].startswith("dgx-00 ")
        assert lines[1].endswith("[   UP   ]")

    def test_drained_node_status(self, run, scenario_context):
        scenario_context.set_slurm_state("dgx-03", "drain", "xid79")
        output = run('cmsh -c "device status"').output
        assert "(slurm: drain, xid79)" in output

    def test_device_list(self, run):
        lines = run('cmsh -c "device list"').output.strip().splitlines()
        assert lines[0].split()[:3] == ["Type", "Hostname", "(key)"]
        assert lines[1].split()[:2] == ["HeadNode", "headnode"]
        assert lines[2].split()[:2] == ["PhysicalNode", "dgx-00"]
        assert len(lines) == 10

    def test_device_list_json(self, run):
        data = json.loads(run('cmsh -c "device; list -d {}"').output)
        assert len(data) == 8
        assert data[0] == {"Hostname (key)": "dgx-00", "IPAddress": "10.141.0.2", "Category": "dgx-a100"}

    def test_use_and_show(self, run):
        output = run('cmsh -c "device; use dgx-01; show"').output
        assert "Parameter" in output
        rows = {line[:32].strip(): line[32:] for line in output.splitlines() if line and not line.startswith("-")}
        assert rows["Hostname"] == "dgx-01"
        assert rows["IP"] == "10.141.0.3"
        assert rows["Slurm state"] == "idle"

    def test_use_unknown_object(self, run):
        result = run('cmsh -c "device; use dgx-99"')
        assert result.exit_code == 1
        assert "Error: Object 'dgx-99' not found." in result.output

    def test_show_without_selection(self, run):
        assert run('cmsh -c "device; show"').exit_code == 1

    def test_other_modes(self, run):
        assert "dgx-a100       | 8" in run('cmsh -c "category; list"').output
        assert "headnode-01, headnode-02" in run('cmsh -c "partition; use base; show"').output
        assert "baseos-image-v10" in run('cmsh -c "softwareimage list"').output

    def test_status_outside_device_mode(self, run):
        assert run('cmsh -c "category; status"').exit_code == 1

    def test_unknown_command(self, run):
        result = run("cmsh -c frob")
        assert result.exit_code == 1
        assert "frob: Command not found." in result.output


class TestCmshInteractive:
    def test_session(self, shell):
        result = shell.execute("cmsh")
        assert result.prompt == "[root@headnode]% "
        assert shell.interactive is not None

        assert shell.execute("device").prompt == "[root@headnode->device]% "
        assert shell.execute("use dgx-02").prompt == "[root@headnode->device[dgx-02]]% "
        output = shell.execute("status").output
        assert output.startswith("dgx-02 ")
        assert "headnode" not in output

        assert shell.execute("exit").prompt == "[root@headnode]% "
        result = shell.execute("quit")
        assert result.prompt is None
        assert shell.interactive is None

    def test_inline_mode_keeps_prompt(self, shell):
        shell.execute("cmsh")
        result = shell.execute("device list")
        assert "PhysicalNode" in result.output
        assert result.prompt == "[root@headnode]% "

    def test_make_prompt(self):
        assert make_prompt("alice") == "[alice@headnode]% "
        assert make_prompt("root", "category", "dgx-a100") == "[root@headnode->category[dgx-a100]]% "


def test_device_status_reports_health(store):
    node = store.get_node("dgx-00")
    assert device_status(node) == "[   UP   ]"
    store.update_node_health("dgx-00", "Warning")
    assert device_status(node) == "[   UP   ], health check warning"
    store.set_power_state("dgx-00", "Off")
    assert device_status(node).startswith("[  DOWN  ] (slurm: down")


class TestBcm:
    """Tests for bcm and bcm-node."""

    def test_banner(self, run):
        assert "Base Command Manager (BCM) Shell 10.24.03" in run("bcm").output
        assert run("bcm --version").output == "bcm 10.24.03\n"

    def test_ha_status(self, run):
        output = run("bcm ha status").output
        assert "Status:        Enabled" in output
        assert "Primary:       headnode-01" in output

    def test_jobs(self, run):
        assert "firmware-update" in run("bcm job list").output
        assert "[02] Discovered 8 nodes via PXE" in run("bcm job logs 1").output
        assert run("bcm job logs 9").exit_code == 1
        assert run("bcm job logs").exit_code == 1

    def test_validate_pod_flags_firmware(self, run):
        result = run("bcm validate pod")
        assert result.exit_code == 1
        assert "[WARN] Firmware Versions" in result.output
        assert "64 adapters need updates" in result.output
        assert "[PASS] GPU Count" in result.output
        assert "Validation completed with 1 warnings." in result.output

    def test_validate_pod_passes_after_update(self, run, scenario_context):
        for node in scenario_context.get_cluster().nodes:
            for hca in node.hcas:
                scenario_context.update_hca(node.id, hca.id, {"firmware_version": "20.39.1002"})
        result = run("bcm validate pod")
        assert result.exit_code == 0
        assert "SuperPOD validation passed." in result.output

    def test_validate_pod_sees_drain(self, run, scenario_context):
        scenario_context.set_slurm_state("dgx-00", "drain", "maint")
        assert "1 nodes drained or down" in run("bcm validate pod").output

    def test_unknown(self, run):
        assert run("bcm frob").exit_code == 1

    def test_node_list(self, run, scenario_context):
        scenario_context.set_slurm_state("dgx-01", "drain", "maint")
        output = run("bcm-node list").output
        assert "Total Nodes: 8" in output
        assert "Total GPUs:  64" in output
        row = next(line for line in output.splitlines() if line.startswith("dgx-01"))
        assert "drain" in row

    def test_node_show(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-02", 0, 79)
        scenario_context.set_slurm_state("dgx-02", "drain", "xid79")
        output = run("bcm-node show dgx-02").output
        assert "Node Details: dgx-02" in output
        assert "IP Address:    10.141.0.4" in output
        assert "Health:        Critical" in output
        assert "Reason:        xid79" in output
        assert "mlx5_7: ConnectX-6 FW 20.35.1012 port 1 Active" in output

    @pytest.mark.parametrize("line", ["bcm-node", "bcm-node show", "bcm-node show dgx-99", "bcm-node frob"])
    def test_node_errors(self, run, line):
        assert run(line).exit_code == 1


class TestNvsm:
    """Tests for nvsm one-shot and interactive use."""

    def test_show_health_healthy(self, run):
        output = run("nvsm show health").output
        assert "21 out of 21 checks are healthy" in output
        assert "Overall system status is Healthy" in output

    def test_show_health_lost_gpu(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 3, 79)
        output = run("nvsm show health").output
        assert "18 out of 21 checks are healthy" in output
        assert "(GPU 3 fell off the bus)" in output
        assert "Overall system status is Unhealthy" in output

    def test_health_checks_cover_links_and_services(self, store):
        store.update_ib_port("dgx-00", 0, 1, {"state": "Down"})
        store.set_service_state("dgx-00", "nvidia-fabricmanager", "failed")
        failing = {label: detail for label, ok, detail in health_checks(store.get_node("dgx-00")) if not ok}
        assert failing == {
            "Verify InfiniBand links are up": "mlx5_0 port 1",
            "Verify system services": "nvidia-fabricmanager",
        }

    def test_show_gpus(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 3, 79)
        output = run("nvsm show gpus").output
        assert output.count("Inventory_ModelName = NVIDIA A100-SXM4-80GB") == 8
        assert "Stats_TemperatureGPU = 32" in output
        assert "Status_Health = Critical (XID 79: GPU has fallen off the bus)" in output

    def test_dump_health(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 3, 79)
        output = run("nvsm dump health").output
        assert "Health dump captured 3 unhealthy check(s)." in output
        assert "  - Check GPU 3 for XID errors" in output

    def test_show_other_targets(self, run):
        assert "NVSM version       : 23.09.04" in run("nvsm show version").output
        assert "TotalSystemMemoryGiB = 1024" in run("nvsm show memory").output
        assert run("nvsm show toaster").exit_code == 1
        assert run("nvsm frob").exit_code == 1

    def test_interactive_navigation(self, shell):
        assert shell.execute("nvsm").prompt == PROMPT
        assert shell.execute("pwd").output == "/systems/localhost\n"
        shell.execute("cd gpus")
        assert shell.execute("pwd").output == "/systems/localhost/gpus\n"
        assert "GPU7" in shell.execute("show").output
        assert shell.execute("cd bogus").exit_code == 1
        shell.execute("cd ..")
        assert shell.execute("pwd").output == "/systems/localhost\n"
        result = shell.execute("exit")
        assert result.prompt is None
        assert shell.interactive is None
