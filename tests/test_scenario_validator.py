"""Tests for the scenario step state machine."""

import pytest

from clustersim.scenario.loader import scenario_from_dict
from clustersim.simulators.base import CommandResult
from clustersim.validation.inference import InferredValidation
from clustersim.validation.scenario_validator import ScenarioValidator, check_expectations


def ok(output="", exit_code=0):
    return CommandResult(output=output, exit_code=exit_code)


@pytest.fixture
def scenario():
    return scenario_from_dict(
        {
            "id": "demo",
            "title": "Demo",
            "steps": [
                {"id": "look", "objective": "List GPUs", "expected_commands": ["nvidia-smi -L", "nvidia-smi"]},
                {
                    "id": "both",
                    "objective": "Run both checks",
                    "expected_commands": ["dcgmi diag -r 1", "dcgmi health -c"],
                    "require_all": True,
                },
                {
                    "id": "grep",
                    "objective": "Find the XID",
                    "expected_commands": ["dmesg | grep -i xid"],
                    "validation": {"output_contains": ["Xid 79"]},
                },
            ],
        }
    )


@pytest.fixture
def validator(scenario):
    return ScenarioValidator(scenario)


class TestScenarioValidator:
    def test_initial_state(self, validator):
        assert validator.current_step.id == "look"
        assert validator.progress == 0.0
        assert not validator.is_complete

    def test_unmatched_command_does_not_advance(self, validator, store):
        result = validator.validate_command("hostname", ok("dgx-00\n"), store.get_cluster())
        assert not result.passed
        assert validator.current_step.id == "look"
        assert validator.results["look"].attempts == 1

    def test_any_expected_command_completes(self, validator, store):
        result = validator.validate_command("nvidia-smi -L", ok(), store.get_cluster())
        assert result.passed
        assert result.matched == ["nvidia-smi -L", "nvidia-smi"]
        assert validator.results["look"].completed_by == "nvidia-smi -L"
        assert validator.current_step.id == "both"

    def test_require_all(self, validator, store):
        cluster = store.get_cluster()
        validator.validate_command("nvidia-smi", ok(), cluster)
        first = validator.validate_command("dcgmi diag -r 1", ok(), cluster)
        assert not first.passed
        assert first.progress == 0.5
        validator.validate_command("dcgmi diag -r 1", ok(), cluster)
        assert validator.results["both"].progress == 0.5
        assert validator.validate_command("dcgmi health -c", ok(), cluster).passed

    def test_output_checks(self, validator, store):
        cluster = store.get_cluster()
        for line in ("nvidia-smi", "dcgmi diag -r 1", "dcgmi health -c"):
            validator.validate_command(line, ok(), cluster)
        failed = validator.validate_command("dmesg | grep -i xid", ok("", 1), cluster)
        assert not failed.passed
        assert failed.failures == ["exit code 1, expected 0", "output is missing 'Xid 79'"]
        passed = validator.validate_command(
            "dmesg | grep -i xid", ok("NVRM: Xid 79, GPU has fallen off the bus\n"), cluster
        )
        assert passed.passed
        assert validator.is_complete
        assert validator.progress == 1.0
        assert validator.validate_command("nvidia-smi", ok(), cluster) is None

    def test_step_without_expected_commands(self, store):
        scenario = scenario_from_dict(
            {"id": "free", "steps": [{"id": "any", "validation": {"output_contains": ["drain"]}}]}
        )
        validator = ScenarioValidator(scenario)
        assert not validator.validate_command("sinfo", ok("idle\n"), store.get_cluster()).passed
        assert validator.validate_command("sinfo -R", ok("drain\n"), store.get_cluster()).passed

    def test_inferred_step(self, store):
        store.add_xid_error("dgx-00", 3, 79)
        scenario = scenario_from_dict(
            {"id": "reset", "steps": [{"id": "r", "expected_commands": ["nvidia-smi --gpu-reset -i 3"], "infer": True}]}
        )
        validator = ScenarioValidator(scenario)
        result = validator.validate_command(
            "nvidia-smi --gpu-reset -i 3", ok("reset successfully\n"), store.get_cluster()
        )
        assert not result.passed
        assert "exit code 0, expected 1" in result.failures
        good = ok("Unable to reset GPU: The GPU has fallen off the bus (XID 79).\n", 1)
        assert validator.validate_command("nvidia-smi --gpu-reset -i 3", good, store.get_cluster()).passed

    def test_reports(self, validator, store, capsys):
        validator.validate_command("nvidia-smi -L", ok(), store.get_cluster())
        data = validator.to_dict()
        assert data["scenario_id"] == "demo"
        assert data["steps"][0]["status"] == "completed"
        frame = validator.to_dataframe()
        assert list(frame["step_id"]) == ["look", "both", "grep"]
        assert list(frame["status"]) == ["completed", "incomplete", "incomplete"]
        validator.print_report(verbose=True)
        out = capsys.readouterr().out
        assert "SCENARIO: demo - Demo" in out
        assert "[OK]   look: List GPUs" in out
        assert "completed by: nvidia-smi -L" in out
        assert "1/3 steps completed (33%)" in out


class TestCheckExpectations:
    def test_all_kinds(self, store):
        expected = InferredValidation(
            exit_code=0,
            output_contains=["GPU"],
            output_not_contains=["ERROR"],
            field_checks={"temperature": ">= 85"},
            state_checks={"node.slurm_state": "drain"},
        )
        failures = check_expectations(expected, ok("GPU 0 ERROR 40\n"), store.get_cluster())
        assert failures == [
            "output unexpectedly contains 'ERROR'",
            "no temperature value satisfies '>= 85'",
            "state node.slurm_state does not satisfy 'drain'",
        ]

    def test_passes(self, store):
        store.set_slurm_state("dgx-02", "drain", "x")
        expected = InferredValidation(state_checks={"node.slurm_state": "drain"})
        assert check_expectations(expected, ok(), store.get_cluster(), node_id="dgx-02") == []
