"""Tests for the clustersim command-line interface."""

import io
import json

import pandas as pd
import pytest

from clustersim.cli import main


@pytest.fixture
def xid_files(scenario_dir):
    return str(scenario_dir / "xid79-gpu-lost.yaml"), str(scenario_dir / "xid79-gpu-lost.commands")


def run_main(argv):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


class TestExec:
    def test_runs_line(self, capsys):
        assert run_main(["exec", "nvidia-smi -L"]) == 0
        assert capsys.readouterr().out.count("GPU ") == 8

    def test_exit_code_propagates(self, capsys):
        assert run_main(["exec", "ibstat mlx5_9"]) == 255

    def test_scenario(self, capsys, xid_files):
        assert run_main(["exec", "nvidia-smi -i 3", "--scenario", xid_files[0]]) == 1
        assert "XID 79" in capsys.readouterr().out

    def test_node_and_user(self, capsys):
        assert run_main(["exec", "hostname", "--node", "dgx-05"]) == 0
        assert capsys.readouterr().out == "dgx-05\n"
        assert run_main(["exec", "systemctl stop docker", "--user", "alice"]) == 1

    def test_config_file(self, capsys, tmp_path):
        config = tmp_path / "small.yaml"
        config.write_text("cluster:\n  node_count: 2\n", encoding="utf-8")
        assert run_main(["exec", "scontrol show nodes", "--config", str(config)]) == 0
        assert capsys.readouterr().out.count("NodeName=") == 2

    def test_missing_config(self, capsys, tmp_path):
        assert run_main(["exec", "hostname", "--config", str(tmp_path / "nope.yaml")]) == 2
        assert "[ERROR] Config file not found" in capsys.readouterr().err

    def test_workload(self, capsys):
        assert run_main(["exec", "nvidia-smi -L", "--workload", "training"]) == 0


class TestShell:
    def test_reads_until_exit(self, capsys, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("nvidia-smi -L\nexit\nhostname\n"))
        assert run_main(["shell"]) == 0
        out = capsys.readouterr().out
        assert out.strip().splitlines()[-1].startswith("GPU 7:")
        assert "dgx-00\n" not in out

    def test_exit_code_of_last_line(self, capsys, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("hostname\nibstat mlx5_9\n"))
        assert run_main(["shell"]) == 255

    def test_scenario_progress(self, capsys, monkeypatch, xid_files):
        monkeypatch.setattr("sys.stdin", io.StringIO("nvidia-smi\n"))
        run_main(["shell", "--scenario", xid_files[0]])
        out = capsys.readouterr().out
        assert out.startswith("Scenario: GPU fallen off the bus\n")
        assert "Objective: List the GPUs on dgx-00 and find the one that is missing" in out
        assert "[OK] Step find-gpu complete (20%)" in out
        assert "Objective: Confirm the XID code in the kernel log" in out


class TestScenarioRun:
    def test_walkthrough(self, capsys, tmp_path, xid_files):
        report = tmp_path / "progress.csv"
        code = run_main(["scenario", "run", xid_files[0], "--commands", xid_files[1], "--report", str(report)])
        assert code == 0
        out = capsys.readouterr().out
        assert "Running scenario xid79-gpu-lost: 1/1 faults applied" in out
        assert "[OK] find-gpu completed by: nvidia-smi" in out
        assert "5/5 steps completed (100%)" in out
        assert f"Report saved to: {report}" in out
        frame = pd.read_csv(report)
        assert list(frame["step_id"]) == ["find-gpu", "confirm-xid", "try-reset", "diagnose", "drain"]
        assert set(frame["status"]) == {"completed"}

    def test_incomplete(self, capsys, tmp_path, xid_files):
        commands = tmp_path / "partial.commands"
        commands.write_text("# just looking\nnvidia-smi\n\n", encoding="utf-8")
        assert run_main(["scenario", "run", xid_files[0], "--commands", str(commands), "--show-output"]) == 1
        out = capsys.readouterr().out
        assert "root@dgx-00:/root# nvidia-smi" in out
        assert "1/5 steps completed (20%)" in out

    def test_missing_commands_file(self, capsys, tmp_path, xid_files):
        assert run_main(["scenario", "run", xid_files[0], "--commands", str(tmp_path / "none")]) == 2
        assert "Could not read commands file" in capsys.readouterr().err

    def test_fault_report(self, capsys, tmp_path, xid_files):
        path = tmp_path / "faults.json"
        code = run_main(
            ["scenario", "run", xid_files[0], "--commands", xid_files[1], "--fault-report", str(path), "--show-output"]
        )
        assert code == 0
        out = capsys.readouterr().out
        assert "FAULT INJECTION: xid79-gpu-lost" in out
        assert "[APPLIED] xid-error        dgx-00 GPU 3" in out
        assert f"Fault report saved to: {path}" in out
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["num_applied"] == 1
        assert data["applied"][0]["parameters"] == {"xid": 79}

    def test_bad_scenario(self, capsys, tmp_path, xid_files):
        bad = tmp_path / "bad.yaml"
        bad.write_text("id: broken\n", encoding="utf-8")
        assert run_main(["scenario", "run", str(bad), "--commands", xid_files[1]]) == 2
        assert "has no steps" in capsys.readouterr().err

    def test_no_subcommand(self, capsys):
        assert run_main(["scenario"]) == 2


class TestExplainAndTools:
    def test_explain(self, capsys):
        main(["explain", "nvidia-smi", "-L"])
        assert "-L, --list-gpus" in capsys.readouterr().out

    def test_explain_errors(self, capsys):
        assert run_main(["explain", "frob"]) == 1
        assert run_main(["explain"]) == 2

    def test_tools(self, capsys):
        main(["tools"])
        out = capsys.readouterr().out
        assert "nv-fabricmanager:\n" in out
        assert "  explain, help, practice\n" in out


def test_no_command(capsys):
    assert run_main([]) == 2


def test_version(capsys):
    assert run_main(["--version"]) == 0
    assert capsys.readouterr().out.startswith("clustersim ")
