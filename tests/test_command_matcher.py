"""Tests for command normalization and matching."""

import pytest

from clustersim.validation.command_matcher import (
    is_invalid_command,
    matched_expected,
    matches_expected,
    normalize_command,
    validate_command_executed,
)


class TestNormalize:
    def test_case_and_whitespace(self):
        assert normalize_command("  NVIDIA-SMI    -L  ") == "nvidia-smi -l"

    def test_substitutions(self):
        assert normalize_command("scontrol show node $(hostname)") == "scontrol show node 12345"
        assert normalize_command("ssh `hostname -s`") == "ssh 12345"


@pytest.mark.parametrize(
    "command,invalid",
    [
        ("nvidia-smi -i -1", True),
        ("nvidia-smi --id=-2", True),
        ("nvidia-smi -gpu 0", True),
        ("sinfo help", True),
        ("scontrol help", True),
        ("nvidia-smi -i 1", False),
        ("scontrol show node", False),
    ],
)
def test_is_invalid_command(command, invalid):
    assert is_invalid_command(command) is invalid


class TestMatchesExpected:
    @pytest.mark.parametrize(
        "executed,expected",
        [
            ("nvidia-smi -L", "nvidia-smi -L"),
            ("NVIDIA-SMI   -l", "nvidia-smi -L"),
            ("nvidia-smi --id=0", "nvidia-smi -i 0"),
            ("nvidia-smi --list-gpus", "nvidia-smi -L"),
            ("nvidia-smi -q -i 0", "nvidia-smi -q"),
            ("nvidia-smi -q", "nvidia-smi"),
            ("scontrol show nodes", "scontrol show node"),
            ("scontrol show node dgx-01", "scontrol show node"),
            ('sinfo -o "%N %T"', "sinfo --format=%P"),
            ("dcgmi health --check", "dcgmi health -c"),
            ("dmesg | grep -i xid", "dmesg"),
            ("dmesg  |  grep -i xid", "dmesg | grep -i xid"),
        ],
    )
    def test_matches(self, executed, expected):
        assert matches_expected(executed, expected)

    @pytest.mark.parametrize(
        "executed,expected",
        [
            ("nvidia-smi", "dcgmi"),
            ("nvidia-smi -q", "nvidia-smi -q -i 0"),
            ("nvidia-smi -i 1", "nvidia-smi -i 0"),
            ("scontrol show", "scontrol show node"),
            ("dmesg", "dmesg | grep -i xid"),
            ("dmesg | grep xid", "dmesg | grep -i xid"),
        ],
    )
    def test_mismatches(self, executed, expected):
        assert not matches_expected(executed, expected)


class TestValidateCommandExecuted:
    def test_any_candidate(self):
        assert validate_command_executed("nvidia-smi -L", ["dcgmi discovery -l", "nvidia-smi -L"])

    def test_invalid_forms_never_match(self):
        assert not validate_command_executed("nvidia-smi -i -1", ["nvidia-smi"])
        assert not validate_command_executed("   ", ["nvidia-smi"])

    def test_matched_expected_keeps_order(self):
        expected = ["dcgmi diag -r 1", "dcgmi health -c", "dcgmi"]
        assert matched_expected("dcgmi health -c", expected) == ["dcgmi health -c", "dcgmi"]
        assert matched_expected("sinfo help", ["sinfo"]) == []
