"""Tests for the clusterkit node assessment."""

import json

import pytest

from clustersim.simulators.clusterkit import CATEGORIES, Assessment, CheckResult, assess, check_storage


class TestAssess:
    def test_default_node_is_degraded_by_firmware(self, run):
        result = run("clusterkit assess")
        assert result.exit_code == 0
        assert "Node: dgx-00" in result.output
        assert "Overall Status: DEGRADED" in result.output
        assert "mlx5_0 firmware: 20.35.1012 installed, 20.39.1002 available" in result.output
        assert "  1 check(s) passed" in result.output
        assert "  Total Checks: 34" in result.output
        assert "  Passed: 26" in result.output
        assert "  Warnings: 8" in result.output
        assert "  Failed: 0" in result.output

    def test_json(self, run):
        data = json.loads(run("clusterkit assess --json").output)
        assert data["node_id"] == "dgx-00"
        assert data["overall_status"] == "degraded"
        assert list(data["checks"]) == list(CATEGORIES)
        assert data["summary"] == {"total": 34, "passed": 26, "failed": 0, "warnings": 8}

    def test_lost_gpu_fails(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 3, 79)
        result = run("clusterkit assess")
        assert result.exit_code == 1
        assert "Overall Status: FAILED" in result.output
        assert "GPU 3 health: XID 79: GPU has fallen off the bus" in result.output

    def test_other_node(self, run, scenario_context):
        scenario_context.set_service_state("dgx-01", "openibd", "failed")
        result = run("clusterkit check drivers --node dgx-01")
        assert result.exit_code == 1
        assert "Node: dgx-01" in result.output
        assert "openibd service: failed" in result.output
        assert "GPU:" not in result.output


class TestCheck:
    def test_network_down_port(self, run, scenario_context):
        scenario_context.update_ib_port("dgx-00", 1, 1, {"state": "Down", "physical_state": "Polling"})
        result = run("clusterkit check network")
        assert result.exit_code == 1
        assert "mlx5_1 port 1: link is Down (Polling)" in result.output

    def test_network_counters_warn(self, run, scenario_context):
        scenario_context.update_ib_port("dgx-00", 2, 1, {"errors": {"symbol_errors": 7}})
        data = json.loads(run("clusterkit check network --json").output)
        assert data["overall_status"] == "degraded"
        warned = [c for c in data["checks"]["network"] if c["status"] == "warning"]
        assert [c["check_name"] for c in warned] == ["mlx5_2 port 1"]
        assert "SymbolErrors=7" in warned[0]["message"]

    def test_single_category_passes(self, run):
        result = run("clusterkit check storage")
        assert result.exit_code == 0
        assert "Overall Status: HEALTHY" in result.output
        assert "/lustre capacity: 50% used (lustre)" in result.output

    @pytest.mark.parametrize(
        "line", ["clusterkit check", "clusterkit check bogus", "clusterkit frob", "clusterkit assess --node dgx-99"]
    )
    def test_errors(self, run, line):
        assert run(line).exit_code == 1

    def test_help_and_version(self, run):
        assert run("clusterkit --version").output == "clusterkit version 1.0.0\n"
        assert run("clusterkit").exit_code == 0


class TestChecks:
    def test_storage_thresholds(self, store):
        node = store.get_node("dgx-00")
        root, raid = node.storage[0], node.storage[1]
        root.used_kb = int(root.size_kb * 0.92)
        raid.used_kb = raid.size_kb
        statuses = {r.check_name: r.status for r in check_storage(node)}
        assert statuses["/ capacity"] == "warning"
        assert statuses["/raid capacity"] == "fail"
        assert statuses["/home capacity"] == "pass"

    def test_powered_off_bmc_fails(self, store):
        store.set_power_state("dgx-00", "Off")
        assessment = assess(store.get_node("dgx-00"), ("firmware",))
        bmc = assessment.checks["firmware"][-1]
        assert bmc.check_name == "BMC"
        assert bmc.status == "fail"
        assert assessment.overall_status == "failed"

    def test_assessment_summary(self):
        assessment = Assessment(
            "n",
            {
                "gpu": [CheckResult("a", "pass", ""), CheckResult("b", "warning", "")],
                "network": [CheckResult("c", "pass", "")],
            },
        )
        assert assessment.overall_status == "degraded"
        assert assessment.summary() == {"total": 3, "passed": 2, "failed": 0, "warnings": 1}
