"""Tests for the dcgmi simulator."""

import pytest

from clustersim.simulators.dcgmi import THERMAL_WARNING_C, diag_failures, health_incidents


class TestTopLevel:
    def test_usage(self, run):
        result = run("dcgmi")
        assert result.exit_code == 0
        assert "usage: dcgmi" in result.output
        assert "DCGM" in result.output

    def test_version(self, run):
        assert run("dcgmi --version").output == "dcgmi  version: 3.3.5\n"

    def test_invalid_subsystem(self, run):
        result = run("dcgmi frob")
        assert result.exit_code == 1
        assert "Invalid subsystem 'frob'" in result.output

    def test_unknown_option(self, run):
        assert run("dcgmi --frob").exit_code == 1


class TestDiscovery:
    def test_list(self, run):
        output = run("dcgmi discovery -l").output
        assert "8 GPUs found." in output
        assert "| GPU ID |" in output
        assert "Name: NVIDIA A100-SXM4-80GB" in output

    def test_lost_gpu_flagged(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 4, 79)
        assert "Status: Inaccessible (XID 79)" in run("dcgmi discovery -l").output

    def test_requires_list_flag(self, run):
        assert run("dcgmi discovery").exit_code == 1


class TestHealth:
    """Tests for dcgmi health."""

    def test_healthy(self, run):
        output = run("dcgmi health -c").output
        assert "Overall Health" in output
        assert "Healthy" in output
        assert "Unhealthy" not in output

    def test_fault_reported_on_its_gpu_only(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 3, 79)
        output = run("dcgmi health -c").output
        assert "Unhealthy" in output
        assert "GPU ID: 3" in output
        assert "GPU ID: 0" not in output
        assert "XID 79: GPU has fallen off the bus" in output
        assert "Warning: 1 incident(s) detected on 1 GPU(s)." in output

    def test_thermal_warning(self, run, scenario_context):
        scenario_context.update_gpu("dgx-00", 5, {"temperature": 95})
        output = run("dcgmi health -c").output
        assert "GPU ID: 5" in output
        assert "Temperature 95 C exceeds 85 C" in output

    def test_set_watches(self, run):
        assert run("dcgmi health -g 1 -s a").output == "Health monitor systems set successfully.\n"

    def test_invalid_group(self, run):
        result = run("dcgmi health -g abc -c")
        assert result.exit_code == 1
        assert "Invalid group id 'abc'" in result.output

    def test_gpu_list(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 3, 79)
        assert "Healthy" in run("dcgmi health -i 0,1 -c").output
        assert run("dcgmi health -i 0,9 -c").exit_code == 1


class TestDiag:
    """Tests for dcgmi diag."""

    def test_pass(self, run):
        result = run("dcgmi diag -r 1")
        assert result.exit_code == 0
        assert "Overall Result: PASS" in result.output
        assert "All tests passed." in result.output
        assert "Memory Bandwidth" not in result.output

    def test_long_run_includes_stress(self, run):
        assert "Memory Bandwidth" in run("dcgmi diag -r long").output

    def test_fail_on_lost_gpu(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 0, 79)
        result = run("dcgmi diag -r 1")
        assert result.exit_code == 1
        assert "Fail - GPU(s): 0" in result.output
        assert "Error: GPU 0 is not accessible (XID 79" in result.output
        assert "Overall Result: FAIL" in result.output
        assert "All tests passed." not in result.output

    def test_ecc_caught_by_memory_tests(self, run, scenario_context):
        scenario_context.set_ecc_errors("dgx-00", 2, 0, 1)
        output = run("dcgmi diag -r 2").output
        assert "Page Retirement/Row Remap" in output
        assert "Fail - GPU(s): 2" in output

    @pytest.mark.parametrize("level", ["0", "5", "-1", "huge"])
    def test_invalid_level(self, run, level):
        result = run(f"dcgmi diag -r {level}")
        assert result.exit_code == 1
        assert "Error: Invalid diagnostic level" in result.output

    def test_missing_level(self, run):
        assert run("dcgmi diag").exit_code == 1


class TestOtherSubsystems:
    def test_group_list(self, run):
        output = run("dcgmi group -l").output
        assert "DCGM_ALL_SUPPORTED_GPUS" in output
        assert "GPU 0, GPU 1" in output

    def test_group_create_delete(self, run):
        assert 'Successfully created group "mygpus"' in run("dcgmi group -c mygpus").output
        assert run("dcgmi group -d 2").exit_code == 0
        assert run("dcgmi group -d 0").exit_code == 1

    def test_dmon_temperature(self, run, scenario_context):
        scenario_context.update_gpu("dgx-00", 1, {"temperature": 88})
        output = run("dcgmi dmon -e 150 -i 1 -c 1").output
        lines = output.strip().splitlines()
        assert "TMPTR" in lines[0]
        assert lines[2].split() == ["GPU", "1", "88"]

    def test_dmon_unknown_field(self, run):
        assert run("dcgmi dmon -e 999").exit_code == 1

    def test_stats_for_job(self, run, scenario_context):
        job = scenario_context.submit_job("train", gpu_count=2)
        output = run(f"dcgmi stats -j {job.job_id}").output
        assert f"Successfully retrieved statistics for job: {job.job_id}." in output
        assert "GPU 0, GPU 1" in output
        assert run("dcgmi stats -j 42").exit_code == 1

    def test_policy(self, run):
        assert run("dcgmi policy --set 0,0").output == "Policy successfully set.\n"
        assert "Policy information" in run("dcgmi policy --get").output

    def test_nvlink_status(self, run, scenario_context):
        scenario_context.update_nvlink("dgx-00", 0, 0, {"status": "Down"})
        output = run("dcgmi nvlink -s").output
        assert "gpuId 0:" in output
        assert "D U U" in output


class TestHelpers:
    def test_health_incidents(self, store):
        gpu = store.get_gpu("dgx-00", 0)
        assert health_incidents(gpu) == []
        store.update_gpu("dgx-00", 0, {"temperature": THERMAL_WARNING_C})
        assert health_incidents(gpu)[0][0] == "Warning"

    def test_hang_without_other_incidents(self, store):
        store.update_gpu("dgx-00", 0, {"health_status": "Critical"})
        assert health_incidents(store.get_gpu("dgx-00", 0)) == [("Failure", "GPU is not responding")]

    def test_diag_failures(self, store):
        gpu = store.get_gpu("dgx-00", 0)
        assert diag_failures(gpu) == set()
        store.set_ecc_errors("dgx-00", 0, 10, 0)
        assert diag_failures(gpu) == {"ecc"}
        store.add_xid_error("dgx-00", 0, 13)
        assert diag_failures(gpu) == {"ecc", "xid"}
