"""Tests for validation inference, overrides and check evaluation."""

import pytest

from clustersim.validation.inference import (
    InferredValidation,
    ValidationOverride,
    check_output_field,
    evaluate_field_check,
    evaluate_state_check,
    infer_validation,
    merge_with_override,
    resolve_state_path,
)


@pytest.fixture
def cluster(store):
    return store.get_cluster()


@pytest.fixture
def lost_gpu(store):
    store.add_xid_error("dgx-00", 3, 79)
    return store.get_cluster()


class TestNvidiaSmiRules:
    def test_summary(self, cluster):
        inferred = infer_validation("nvidia-smi", cluster)
        assert inferred.exit_code == 0
        assert inferred.output_contains == ["Driver Version", "CUDA Version"]

    def test_summary_with_lost_gpu(self, lost_gpu):
        inferred = infer_validation("nvidia-smi", lost_gpu)
        assert "GPU(s) not shown due to critical errors" in inferred.output_contains
        assert "XID 79" in inferred.output_contains

    def test_pipes_are_ignored(self, cluster):
        assert infer_validation("nvidia-smi | grep GPU", cluster).output_contains == ["Driver Version", "CUDA Version"]

    def test_list(self, cluster):
        assert infer_validation("nvidia-smi -L", cluster).output_contains == [f"GPU {i}:" for i in range(8)]

    def test_single_gpu(self, lost_gpu):
        assert infer_validation("nvidia-smi -i 0", lost_gpu).output_contains == ["Driver Version"]
        assert infer_validation("nvidia-smi -i 3", lost_gpu).exit_code == 1
        assert infer_validation("nvidia-smi -i 12", lost_gpu).output_contains == ["Unable to query GPU", "not found"]

    def test_node_id_selects_node(self, lost_gpu):
        assert infer_validation("nvidia-smi -i 3", lost_gpu, node_id="dgx-01").exit_code == 0

    def test_reset_lost_gpu(self, lost_gpu):
        inferred = infer_validation("nvidia-smi --gpu-reset -i 3", lost_gpu)
        assert inferred.exit_code == 1
        assert inferred.output_not_contains == ["reset successfully"]
        assert inferred.state_checks == {"gpu.3.xid_errors.length": "> 0"}

    def test_reset_healthy_and_busy(self, store, cluster):
        inferred = infer_validation("nvidia-smi -i 1 -r", cluster)
        assert inferred.output_contains == ["reset successfully"]
        assert inferred.state_checks == {"gpu.1.xid_errors.length": "== 0"}
        store.update_gpu("dgx-00", 1, {"allocated_job_id": 1001})
        assert infer_validation("nvidia-smi -r -i 1", cluster).output_contains == ["in use"]

    def test_temperature_query_uses_thermal_fault(self, cluster):
        command = "nvidia-smi --query-gpu=index,temperature.gpu --format=csv"
        assert infer_validation(command, cluster).field_checks == {}
        faults = [{"nodeId": "dgx-00", "gpuId": 0, "type": "thermal", "parameters": {"targetTemp": 92}}]
        assert infer_validation(command, cluster, faults).field_checks == {"temperature": ">= 92"}

    def test_thermal_fault_on_other_node_ignored(self, cluster):
        faults = [{"nodeId": "dgx-05", "gpuId": 0, "type": "thermal"}]
        command = "nvidia-smi --query-gpu=temperature.gpu --format=csv"
        assert infer_validation(command, cluster, faults).field_checks == {}


class TestOtherRules:
    def test_dcgmi_diag(self, cluster, lost_gpu):
        assert infer_validation("dcgmi diag -r 5", cluster).exit_code == 1
        inferred = infer_validation("dcgmi diag -r 1", lost_gpu)
        assert inferred.exit_code == 1
        assert inferred.output_not_contains == ["All tests passed"]

    def test_dcgmi_diag_healthy(self, cluster):
        assert infer_validation("dcgmi diag -r 2", cluster).output_contains == ["PASS"]

    def test_dcgmi_diag_honours_gpu_selection(self, scenario_context, run):
        scenario_context.add_xid_error("dgx-00", 0, 79)
        cluster = scenario_context.get_cluster()
        inferred = infer_validation("dcgmi diag -r 1 -i 1", cluster)
        assert inferred.exit_code == 0
        assert inferred.output_contains == ["PASS"]
        result = run("dcgmi diag -r 1 -i 1")
        assert result.exit_code == 0
        assert "Overall Result: PASS" in result.output

        assert infer_validation("dcgmi diag -r 1 -i 0,1", cluster).exit_code == 1
        assert infer_validation("dcgmi diag -r 1 --gpuid 0", cluster).exit_code == 1
        assert infer_validation("dcgmi diag -r 1 -g 0", cluster).exit_code == 1

    def test_dcgmi_diag_unknown_gpu(self, cluster, run):
        inferred = infer_validation("dcgmi diag -r 1 -i 42", cluster)
        assert inferred.exit_code == 1
        assert inferred.output_contains == ["Error"]
        result = run("dcgmi diag -r 1 -i 42")
        assert result.exit_code == 1
        assert "Error: GPU 42 not found." in result.output

    def test_dcgmi_health(self, store, cluster):
        assert infer_validation("dcgmi health -g 0 -c", cluster).output_contains == ["Healthy"]
        store.set_ecc_errors("dgx-00", 0, 3, 0)
        assert infer_validation("dcgmi health -c", cluster).output_contains == ["Warning"]

    def test_sinfo(self, cluster):
        assert infer_validation("sinfo", cluster).output_contains == ["PARTITION", "NODES", "STATE"]
        assert infer_validation("sinfo -o '%N %T'", cluster).output_contains == []

    def test_infiniband(self, cluster):
        assert infer_validation("ibstat mlx5_0", cluster).output_contains == ["CA", "Port"]
        assert infer_validation("iblinkinfo", cluster).output_contains == ["Switch"]

    def test_unknown_command_is_permissive(self, cluster):
        assert infer_validation("ls -la", cluster) == InferredValidation()


class TestOverrides:
    def test_from_dict_accepts_camel_case(self):
        override = ValidationOverride.from_dict({"exitCode": "1", "outputContains": ["x"], "stateChecks": {"a": 1}})
        assert override.exit_code == 1
        assert override.output_contains == ["x"]
        assert override.state_checks == {"a": "1"}
        assert override.output_not_contains is None

    def test_merge(self):
        inferred = InferredValidation(
            output_contains=["Driver Version"], field_checks={"temperature": ">= 85", "power": "< 400"}
        )
        merged = merge_with_override(inferred, {"exit_code": 1, "field_checks": {"temperature": ">= 90"}})
        assert merged.exit_code == 1
        assert merged.output_contains == ["Driver Version"]
        assert merged.field_checks == {"temperature": ">= 90", "power": "< 400"}
        assert inferred.field_checks["temperature"] == ">= 85"

    def test_merge_without_override_copies(self):
        inferred = InferredValidation(output_contains=["a"])
        merged = merge_with_override(inferred)
        merged.output_contains.append("b")
        assert inferred.output_contains == ["a"]


class TestChecks:
    @pytest.mark.parametrize(
        "value,expression,expected",
        [
            ("90", ">= 85", True),
            (84.9, ">= 85", False),
            (3, "== 3", True),
            (0, "!= 0", False),
            ("-2", "< 0", True),
            ("hot", "> 1", False),
            (5, "about 5", False),
        ],
    )
    def test_evaluate_field_check(self, value, expression, expected):
        assert evaluate_field_check(value, expression) is expected

    def test_check_output_field(self):
        assert check_output_field("GPU 0: 91 C\n", "> 90")
        assert not check_output_field("GPU 0: 45 C\n", "> 90")

    def test_resolve_state_path(self, store, lost_gpu):
        node = store.get_node("dgx-00")
        assert resolve_state_path(lost_gpu, node, "gpu.3.xid_errors.length") == 1
        assert resolve_state_path(lost_gpu, node, "node.slurm_state") == "idle"
        assert resolve_state_path(lost_gpu, node, "gpu.x.temperature") is None
        assert resolve_state_path(lost_gpu, node, "gpu.42.temperature") is None
        assert resolve_state_path(lost_gpu, node, "cluster.name") is None

    def test_length_of_scalar_is_none(self, store, cluster):
        node = store.get_node("dgx-00")
        assert resolve_state_path(cluster, node, "gpu.0.temperature.length") is None
        assert resolve_state_path(cluster, node, "gpu.0.xid_errors.length") == 0
        assert not evaluate_state_check(cluster, node, "gpu.0.temperature.length", "> 0")

    def test_evaluate_state_check(self, store, cluster):
        node = store.get_node("dgx-00")
        assert evaluate_state_check(cluster, node, "node.slurm_state", "IDLE")
        assert evaluate_state_check(cluster, node, "gpu.0.temperature", "< 50")
        assert not evaluate_state_check(cluster, node, "node.nonexistent", "x")
