"""Tests for help, explain and practice."""

import pytest


class TestHelp:
    def test_lists_categories(self, run):
        output = run("help").output
        assert "Gpu Monitoring:" in output
        assert "nvidia-smi" in output
        assert "Type 'help <command>' for usage" in output

    def test_command_help(self, run):
        output = run("help nvidia-smi").output
        assert output.startswith("nvidia-smi - NVIDIA System Management Interface")
        assert "  -L, --list-gpus" in output
        assert "Subcommands:" in output

    def test_unknown_topic(self, run):
        result = run("help frob")
        assert result.exit_code == 1
        assert "no help topics match 'frob'" in result.output


class TestExplain:
    def test_flag(self, run):
        output = run("explain nvidia-smi -L").output
        assert output.startswith("nvidia-smi: NVIDIA System Management Interface")
        assert "  -L, --list-gpus: Display a list of GPUs connected to the system" in output

    def test_root_flag(self, run):
        assert "(requires root privileges)" in run("explain nvidia-smi -r").output

    def test_subcommand(self, run):
        output = run("explain nvidia-smi nvlink").output
        assert "  nvlink: Display NVLink status and error counters" in output
        assert "  usage: nvidia-smi nvlink -s | -e [-i ID]" in output

    def test_bare_command_shows_examples(self, run):
        output = run("explain nvidia-smi").output
        assert "Examples:" in output
        assert "See also: dcgmi, nvsm" in output

    def test_unknown_flag(self, run):
        assert "-Z: not a recognized option of nvidia-smi" in run("explain nvidia-smi -Z").output

    @pytest.mark.parametrize("line", ["explain", "explain frob"])
    def test_errors(self, run, line):
        assert run(line).exit_code == 1


class TestPractice:
    def test_all_exercises(self, run):
        output = run("practice").output
        assert "Practice exercises" in output
        assert "nvidia-smi -L" in output

    def test_filtered_by_tool(self, run):
        output = run("practice nvidia-smi").output
        assert "nvidia-smi -L" in output
        assert "dcgmi" not in output

    def test_filtered_by_category(self, run):
        assert "nvidia-smi -L" in run("practice gpu_monitoring").output

    def test_next(self, run):
        assert run("practice next").output.startswith("Try this: ")

    def test_unknown(self, run):
        assert run("practice frob").exit_code == 1
