"""Tests for scenario file loading."""

import pytest

from clustersim.errors import ScenarioError
from clustersim.scenario.loader import load_scenario, scenario_from_dict


def _write(tmp_path, text, name="scenario.yaml"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestScenarioFromDict:
    def test_minimal(self):
        scenario = scenario_from_dict({"id": "s", "steps": [{"objective": "look"}]})
        assert scenario.id == "s"
        assert scenario.faults == []
        step = scenario.steps[0]
        assert step.id == "step-1"
        assert step.expected_commands == []
        assert step.require_all is False

    def test_expected_command_string_becomes_list(self):
        scenario = scenario_from_dict({"id": "s", "steps": [{"id": "a", "expected_commands": "nvidia-smi"}]})
        assert scenario.steps[0].expected_commands == ["nvidia-smi"]

    def test_faults_are_converted(self):
        scenario = scenario_from_dict(
            {
                "id": "s",
                "faults": [{"nodeId": "dgx-00", "gpuId": 1, "type": "thermal"}],
                "steps": [{"id": "a"}],
            }
        )
        assert scenario.faults[0].gpu_id == 1
        assert scenario.faults[0].type == "thermal"

    def test_fault_with_bad_gpu_id_is_dropped(self):
        scenario = scenario_from_dict(
            {
                "id": "s",
                "faults": [
                    {"nodeId": "dgx-00", "gpuId": "first", "type": "xid-error"},
                    {"nodeId": "dgx-00", "gpuId": 2, "type": "xid-error"},
                ],
                "steps": [{"id": "a"}],
            }
        )
        assert [f.gpu_id for f in scenario.faults] == [2]

    def test_unknown_keys_are_ignored(self):
        scenario = scenario_from_dict({"id": "s", "difficulty": "hard", "steps": [{"id": "a", "points": 5}]})
        assert scenario.steps[0].id == "a"

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"steps": [{"id": "a"}]},
            {"id": "s"},
            {"id": "s", "steps": []},
            {"id": "s", "steps": ["not a mapping"]},
            {"id": "s", "steps": [{"id": "a"}], "faults": "xid"},
            {"id": "s", "steps": [{"id": "a"}], "faults": ["xid"]},
        ],
    )
    def test_malformed(self, data):
        with pytest.raises(ScenarioError):
            scenario_from_dict(data)


class TestLoadScenario:
    def test_load_example(self, scenario_dir):
        scenario = load_scenario(str(scenario_dir / "xid79-gpu-lost.yaml"))
        assert scenario.id == "xid79-gpu-lost"
        assert scenario.node == "dgx-00"
        assert [s.id for s in scenario.steps] == ["find-gpu", "confirm-xid", "try-reset", "diagnose", "drain"]
        assert scenario.steps[3].require_all is True
        assert scenario.steps[4].validation == {"state_checks": {"node.slurm_state": "drain"}}

    def test_load_from_tmp(self, tmp_path):
        path = _write(
            tmp_path,
            "id: t\nsteps:\n  - id: one\n    expected_commands: [sinfo]\n    infer: true\n    hints: [try sinfo]\n",
        )
        scenario = load_scenario(path)
        assert scenario.steps[0].infer is True
        assert scenario.steps[0].hints == ["try sinfo"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ScenarioError, match="not found"):
            load_scenario(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path, "id: [unclosed\n")
        with pytest.raises(ScenarioError, match="Could not parse"):
            load_scenario(path)
