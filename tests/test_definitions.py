"""Tests for the command definition registry."""

import pytest

from clustersim.definitions.registry import CommandDefinitionRegistry, load_consistency_groups
from clustersim.errors import DefinitionError

SHELL_BUILTINS = {"cd", "ssh", "sudo", "history"}


class TestLookup:
    def test_get_and_has(self, registry):
        definition = registry.get("nvidia-smi")
        assert definition.category == "gpu_monitoring"
        assert definition.description == "NVIDIA System Management Interface"
        assert registry.has("dcgmi")
        assert not registry.has("frob")
        assert registry.get("frob") is None

    def test_names_sorted(self, registry):
        names = registry.names()
        assert names == sorted(names)
        assert {"nvidia-smi", "sinfo", "ibstat", "systemctl"} <= set(names)

    def test_by_category(self, registry):
        categories = registry.by_category()
        assert "nvidia-smi" in categories["gpu_monitoring"]
        assert list(categories) == sorted(categories)
        assert sum(len(v) for v in categories.values()) == len(registry.names())

    def test_find_option_and_subcommand(self, registry):
        definition = registry.get("nvidia-smi")
        assert definition.find_option("--list-gpus").flags == ["-L", "--list-gpus"]
        assert definition.find_option("-L") is definition.find_option("list-gpus")
        assert definition.find_option("--frob") is None
        assert definition.find_subcommand("nvlink").usage.startswith("nvidia-smi nvlink")
        assert definition.find_subcommand("frob") is None


class TestRequiresRoot:
    def test_flags(self, registry):
        assert registry.requires_root("nvidia-smi", ["r"])
        assert registry.requires_root("nvidia-smi", ["--gpu-reset"])
        assert not registry.requires_root("nvidia-smi", ["L"])

    def test_first_subcommand(self, registry):
        assert registry.requires_root("systemctl", [], ["stop", "docker"])
        assert not registry.requires_root("systemctl", [], ["status", "docker"])
        assert not registry.requires_root("systemctl", [], ["docker", "stop"])

    def test_unknown_command(self, registry):
        assert not registry.requires_root("frob", ["r"], ["stop"])


class TestHelpText:
    def test_format_help(self, registry):
        text = registry.format_help("nvidia-smi")
        assert text.startswith("nvidia-smi - NVIDIA System Management Interface\n")
        assert "Usage: nvidia-smi [OPTION1 [ARG1]]" in text
        assert "Subcommands:" in text
        assert "-i, --id ID" in text
        assert "  nvidia-smi --gpu-reset -i 0" in text
        assert text.endswith("\n")

    def test_format_help_unknown(self, registry):
        assert registry.format_help("frob") is None

    def test_explain_flag(self, registry):
        text = registry.explain("nvidia-smi -r")
        assert "  -r, --gpu-reset: Trigger reset of the GPU" in text
        assert "  (requires root privileges)" in text
        assert "See also: dcgmi, nvsm" in text

    def test_explain_subcommand(self, registry):
        text = registry.explain("nvidia-smi nvlink")
        assert "  nvlink: Display NVLink status and error counters" in text
        assert "  usage: nvidia-smi nvlink -s | -e [-i ID]" in text
        assert "Examples:" not in text

    def test_explain_bare_command_lists_examples(self, registry):
        text = registry.explain("nvidia-smi")
        assert "Examples:" in text
        assert "  nvidia-smi -L  # List GPUs with their UUIDs" in text

    def test_explain_unknown(self, registry):
        assert registry.explain("frob -x") is None
        assert "-Z: not a recognized option of nvidia-smi" in registry.explain("nvidia-smi -Z")

    def test_examples_tagged_with_tool(self, registry):
        examples = registry.examples()
        assert {"tool": "nvidia-smi", "command": "nvidia-smi -L", "description": "List GPUs with their UUIDs"} in examples
        assert all(e["tool"] in registry.names() for e in examples)


class TestLoadErrors:
    def test_missing_directory(self, tmp_path):
        registry = CommandDefinitionRegistry(str(tmp_path / "missing"))
        with pytest.raises(DefinitionError, match="not found"):
            registry.names()

    def test_malformed_yaml(self, tmp_path):
        (tmp_path / "bad.yaml").write_text("- name: [unclosed\n")
        with pytest.raises(DefinitionError, match="Could not parse"):
            CommandDefinitionRegistry(str(tmp_path)).get("anything")

    def test_not_a_list(self, tmp_path):
        (tmp_path / "tool.yaml").write_text("name: tool\n")
        with pytest.raises(DefinitionError, match="expected a list"):
            CommandDefinitionRegistry(str(tmp_path)).names()

    def test_entry_without_name(self, tmp_path):
        (tmp_path / "tool.yaml").write_text("- category: shell\n")
        with pytest.raises(DefinitionError, match="needs a 'name'"):
            CommandDefinitionRegistry(str(tmp_path)).names()

    def test_malformed_option(self, tmp_path):
        (tmp_path / "tool.yaml").write_text("- name: tool\n  options:\n    - description: no flags\n")
        with pytest.raises(DefinitionError, match="malformed definition for 'tool'"):
            CommandDefinitionRegistry(str(tmp_path)).names()

    def test_other_files_ignored(self, tmp_path):
        (tmp_path / "README.txt").write_text("not yaml: [")
        (tmp_path / "tool.yml").write_text("- name: tool\n  category: shell\n")
        registry = CommandDefinitionRegistry(str(tmp_path))
        assert registry.names() == ["tool"]
        assert registry.by_category() == {"shell": ["tool"]}


class TestConsistencyGroups:
    def test_groups(self):
        groups = load_consistency_groups()["groups"]
        assert "nvidia-smi" in [probe["tool"] for probe in groups["gpu_temperature"]["probes"]]
        assert all(group["probes"] for group in groups.values())

    def test_missing_file(self, tmp_path):
        with pytest.raises(DefinitionError, match="Could not load consistency groups"):
            load_consistency_groups(str(tmp_path / "missing.yaml"))


def test_every_definition_is_runnable(registry, router):
    unrouted = [name for name in registry.names() if not router.has(name) and name not in SHELL_BUILTINS]
    assert unrouted == []
