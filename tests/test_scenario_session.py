"""End-to-end tests: a scenario session driven through its shell."""

import pytest

from clustersim.scenario.loader import load_scenario
from clustersim.scenario.session import ScenarioSession


@pytest.fixture
def xid_scenario(scenario_dir):
    return load_scenario(str(scenario_dir / "xid79-gpu-lost.yaml"))


@pytest.fixture
def session(store, manager, xid_scenario):
    with ScenarioSession(store, manager, xid_scenario) as running:
        yield running


def walkthrough(scenario_dir):
    lines = (scenario_dir / "xid79-gpu-lost.commands").read_text(encoding="utf-8").splitlines()
    return [line for line in lines if line.strip() and not line.startswith("#")]


class TestScenarioSession:
    def test_faults_injected_into_private_context(self, session, store):
        assert session.fault_report.num_applied == 1
        assert session.context.get_gpu("dgx-00", 3).has_fatal_xid
        assert not store.get_gpu("dgx-00", 3).has_fatal_xid
        assert session.shell.current_node == "dgx-00"

    def test_walkthrough_completes(self, session, scenario_dir):
        for line in walkthrough(scenario_dir):
            session.execute(line)
        assert session.is_complete, session.validator.to_dict()
        assert session.progress == 1.0

    def test_progress_by_step(self, session):
        session.execute("nvidia-smi")
        assert session.last_validation.passed
        assert session.validator.current_step.id == "confirm-xid"
        session.execute("hostname")
        assert not session.last_validation.passed
        session.execute("journalctl -k | grep -i xid")
        assert session.validator.current_step.id == "try-reset"

    def test_reset_attempt_must_fail(self, session):
        session.execute("nvidia-smi -L")
        session.execute("dmesg | grep -i xid")
        result = session.execute("nvidia-smi --gpu-reset -i 3")
        assert result.exit_code == 1
        assert session.last_validation.passed
        assert session.validator.current_step.id == "diagnose"

    def test_drain_reaches_state(self, session, scenario_dir):
        for line in walkthrough(scenario_dir)[:-2]:
            session.execute(line)
        assert session.validator.current_step.id == "drain"
        session.execute("scontrol update NodeName=dgx-00 State=DRAIN Reason=xid79")
        assert session.context.get_node("dgx-00").slurm_state == "drain"
        assert session.is_complete


def test_end_discards_context(store, manager, xid_scenario):
    session = ScenarioSession(store, manager, xid_scenario)
    session.execute("scontrol update NodeName=dgx-00 State=DRAIN Reason=xid79")
    session.end()
    assert manager.get_context("xid79-gpu-lost") is None
    assert manager.get_active_context() is None
    assert store.get_node("dgx-00").slurm_state == "idle"
    session.end()


def test_observer_stops_after_end(store, manager, xid_scenario):
    session = ScenarioSession(store, manager, xid_scenario)
    session.end()
    session.execute("nvidia-smi")
    assert session.last_validation is None


def test_lines_inside_nvsm_do_not_complete_steps(session):
    session.execute("nvsm")
    session.execute("nvidia-smi")
    assert session.shell.interactive is not None
    assert session.validator.current_step.id == "find-gpu"
    session.execute("exit")
    session.execute("nvidia-smi")
    assert session.validator.current_step.id == "confirm-xid"
