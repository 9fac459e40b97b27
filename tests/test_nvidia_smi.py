"""Tests for the nvidia-smi simulator."""

import pytest


@pytest.fixture
def lost_gpu(scenario_context):
    """GPU 3 on dgx-00 has fallen off the bus."""
    scenario_context.add_xid_error("dgx-00", 3, 79)
    return scenario_context


class TestSummary:
    """Tests for the default summary table."""

    def test_header(self, run):
        result = run("nvidia-smi")
        assert result.exit_code == 0
        assert "Driver Version: 535.129.03" in result.output
        assert "CUDA Version: 12.2" in result.output
        assert result.output.count("NVIDIA A100-SXM4-80GB") == 8
        assert "No running processes found" in result.output

    def test_lost_gpu_hidden_with_footer(self, run, lost_gpu):
        output = run("nvidia-smi").output
        assert "WARNING: 1 GPU(s) not shown due to critical errors" in output
        assert "GPU 3 (00000000:4E:00.0): XID 79 - GPU has fallen off the bus" in output
        assert output.count("NVIDIA A100-SXM4-80GB") == 7

    def test_critical_gpu_shows_err(self, run, scenario_context):
        scenario_context.update_gpu("dgx-00", 6, {"health_status": "Critical"})
        assert "ERR!" in run("nvidia-smi").output

    def test_select_single_gpu(self, run):
        output = run("nvidia-smi -i 1").output
        assert output.count("NVIDIA A100-SXM4-80GB") == 1

    def test_select_lost_gpu_fails(self, run, lost_gpu):
        result = run("nvidia-smi -i 3")
        assert result.exit_code == 1
        assert "Unable to query GPU 3 (00000000:4E:00.0): GPU is not accessible (XID 79" in result.output

    @pytest.mark.parametrize("index", ["8", "-0", "x"])
    def test_bad_index(self, run, index):
        result = run(f"nvidia-smi -i {index}")
        assert result.exit_code == 1
        assert f"Unable to query GPU {index}: device not found" in result.output

    def test_select_by_uuid(self, run, store):
        uuid = store.get_gpu("dgx-00", 2).uuid
        assert run(f"nvidia-smi -i {uuid}").exit_code == 0

    def test_unknown_flag(self, run):
        result = run("nvidia-smi --bogus")
        assert result.exit_code == 2
        assert "Unknown option: -bogus" in result.output

    def test_unknown_subcommand(self, run):
        assert run("nvidia-smi frobnicate").exit_code == 2

    def test_running_job_process(self, run, scenario_context):
        job = scenario_context.submit_job("train", gpu_count=2, job_command="python train.py")
        output = run("nvidia-smi").output
        assert str(job.job_id * 10) in output
        assert "python" in output

    def test_version(self, run):
        assert "NVIDIA-SMI version  : 535.129.03" in run("nvidia-smi --version").output
        result = run("nvidia-smi -v")
        assert result.exit_code == 0
        assert "NVIDIA-SMI version  : 535.129.03" in result.output


class TestListAndQuery:
    def test_list(self, run, store):
        output = run("nvidia-smi -L").output
        assert f"GPU 0: NVIDIA A100-SXM4-80GB (UUID: {store.get_gpu('dgx-00', 0).uuid})" in output
        assert len(output.strip().splitlines()) == 8

    def test_list_lost_gpu(self, run, lost_gpu):
        output = run("nvidia-smi -L").output
        assert "GPU 3: Unable to determine the device handle for GPU 00000000:4E:00.0: Unknown Error (XID 79)" in output

    def test_query_full(self, run):
        output = run("nvidia-smi -q -i 0").output
        assert "==============NVSMI LOG==============" in output
        assert "Product Name" in output
        assert "GPU Current Temp" in output
        assert "Recent" in output

    def test_query_display_section(self, run):
        output = run("nvidia-smi -q -d TEMPERATURE").output
        assert "GPU Current Temp" in output
        assert "FB Memory Usage" not in output

    def test_query_lists_xids(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 0, 13)
        assert "XID 13" in run("nvidia-smi -q -i 0").output

    def test_query_gpu_csv(self, run):
        output = run("nvidia-smi --query-gpu=index,temperature.gpu --format=csv").output
        lines = output.strip().splitlines()
        assert lines[0] == "index, temperature.gpu"
        assert lines[1] == "0, 32"
        assert lines[2] == "1, 33"
        assert len(lines) == 9

    def test_query_gpu_units(self, run):
        output = run("nvidia-smi --query-gpu=memory.used,power.limit --format=csv").output
        lines = output.strip().splitlines()
        assert lines[0] == "memory.used [MiB], power.limit [W]"
        assert lines[1] == "0 MiB, 400.00 W"

    def test_query_gpu_noheader_nounits(self, run):
        output = run("nvidia-smi --query-gpu=memory.total --format=csv,noheader,nounits -i 0").output
        assert output == "81920\n"

    def test_query_gpu_lost(self, run, lost_gpu):
        output = run("nvidia-smi --query-gpu=index,temperature.gpu --format=csv,noheader").output
        assert "3, [GPU is lost]" in output

    def test_query_gpu_invalid_field(self, run):
        result = run("nvidia-smi --query-gpu=bogus --format=csv")
        assert result.exit_code == 2
        assert 'Field "bogus" is not a valid field to query.' in result.output

    def test_query_gpu_requires_format(self, run):
        assert run("nvidia-smi --query-gpu=index").exit_code == 2

    def test_query_compute_apps(self, run, scenario_context):
        scenario_context.submit_job("train", gpu_count=1, job_command="python train.py")
        output = run("nvidia-smi --query-compute-apps=pid,process_name --format=csv,noheader").output
        assert output == "10010, python\n"


class TestReset:
    """Tests for --gpu-reset."""

    def test_reset_healthy(self, run):
        result = run("nvidia-smi --gpu-reset -i 0")
        assert result.exit_code == 0
        assert "GPU 00000000:07:00.0 was reset successfully." in result.output
        assert "All done." in result.output

    def test_reset_clears_recoverable_errors(self, run, scenario_context):
        scenario_context.add_xid_error("dgx-00", 1, 48)
        scenario_context.set_ecc_errors("dgx-00", 1, 0, 2)
        assert run("nvidia-smi -r -i 1").exit_code == 0
        gpu = scenario_context.get_gpu("dgx-00", 1)
        assert gpu.xid_errors == []
        assert gpu.health_status == "OK"
        assert scenario_context.get_mutations()[-1].command == "nvidia-smi -r -i 1"

    def test_reset_lost_gpu_fails(self, run, lost_gpu):
        result = run("nvidia-smi --gpu-reset -i 3")
        assert result.exit_code == 1
        assert "Unable to reset GPU 00000000:4E:00.0: GPU is not accessible." in result.output
        assert "fallen off the bus (XID 79)" in result.output
        assert lost_gpu.get_gpu("dgx-00", 3).has_fatal_xid

    def test_reset_busy_gpu_fails(self, run, scenario_context):
        job = scenario_context.submit_job("train", gpu_count=1)
        result = run("nvidia-smi --gpu-reset -i 0")
        assert result.exit_code == 1
        assert f"in use by another process (Slurm job {job.job_id})" in result.output

    def test_reset_requires_root(self, shell):
        shell.user = "alice"
        result = shell.execute("nvidia-smi --gpu-reset -i 0")
        assert result.exit_code == 1
        assert "requires root privileges" in result.output
        assert shell.execute("sudo nvidia-smi --gpu-reset -i 0").exit_code == 0


class TestAdministration:
    def test_persistence_mode(self, run, scenario_context):
        result = run("nvidia-smi -pm 0 -i 2")
        assert result.exit_code == 0
        assert "Disabled persistence mode for GPU 00000000:47:00.0." in result.output
        assert scenario_context.get_gpu("dgx-00", 2).persistence_mode is False
        assert run("nvidia-smi -pm ENABLED -i 2").exit_code == 0
        assert scenario_context.get_gpu("dgx-00", 2).persistence_mode is True

    def test_persistence_mode_invalid(self, run):
        assert run("nvidia-smi -pm 5").exit_code == 2

    def test_power_limit(self, run, scenario_context):
        result = run("nvidia-smi -pl 300 -i 0")
        assert result.exit_code == 0
        assert "was set to 300.00 W from 400.00 W" in result.output
        assert scenario_context.get_gpu("dgx-00", 0).power_limit == 300.0

    @pytest.mark.parametrize("watts", ["50", "500", "lots"])
    def test_power_limit_out_of_range(self, run, watts):
        assert run(f"nvidia-smi -pl {watts} -i 0").exit_code == 2

    def test_mig_enable_and_instances(self, run, scenario_context):
        result = run("nvidia-smi -i 0 -mig 1")
        assert result.exit_code == 0
        assert "Enabled MIG Mode for GPU 00000000:07:00.0" in result.output
        assert scenario_context.get_gpu("dgx-00", 0).mig_mode

        result = run("nvidia-smi mig -i 0 -cgi 19,19 -C")
        assert result.exit_code == 0
        assert result.output.count("Successfully created GPU instance") == 2
        assert "Successfully created compute instance" in result.output
        assert "1g.10gb" in run("nvidia-smi mig -lgi").output
        assert "MIG 1g.10gb" in run("nvidia-smi -L").output

    def test_mig_busy_gpu(self, run, scenario_context):
        scenario_context.submit_job("train", gpu_count=1)
        assert run("nvidia-smi -i 0 -mig 1").exit_code == 1

    def test_mig_without_mig_gpus(self, run):
        result = run("nvidia-smi mig -lgip")
        assert result.exit_code == 1
        assert "No MIG-enabled devices found." in result.output

    def test_mig_insufficient_resources(self, run, scenario_context):
        run("nvidia-smi -i 0 -mig 1")
        result = run("nvidia-smi mig -i 0 -cgi 0,0")
        assert result.exit_code == 1
        assert "Insufficient Resources" in result.output


class TestSubcommands:
    def test_nvlink_status(self, run, scenario_context):
        scenario_context.update_nvlink("dgx-00", 0, 1, {"status": "Down"})
        output = run("nvidia-smi nvlink -s -i 0").output
        assert "Link 0: 25 GB/s" in output
        assert "Link 1: <inactive>" in output

    def test_nvlink_errors(self, run):
        assert "CRC Errors: 0" in run("nvidia-smi nvlink -e -i 0").output

    def test_topo_matrix(self, run):
        output = run("nvidia-smi topo -m").output
        assert "GPU0\tX\tNV12" in output
        assert "NIC0: mlx5_0" in output

    def test_topo_requires_matrix_flag(self, run):
        assert run("nvidia-smi topo").exit_code == 2

    def test_dmon(self, run):
        output = run("nvidia-smi dmon -c 2 -i 0").output
        lines = output.strip().splitlines()
        assert lines[0].startswith("# gpu")
        assert len(lines) == 4

    def test_dmon_invalid_count(self, run):
        assert run("nvidia-smi dmon -c 0").exit_code == 2
