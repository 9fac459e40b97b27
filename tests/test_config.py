"""Tests for configuration loading."""

import json

import pytest

from clustersim.configs import DEFAULT_CONFIG, Config, ConfigManager
from clustersim.errors import ConfigError


class TestConfig:
    def test_dotted_get(self):
        config = Config(DEFAULT_CONFIG)
        assert config.get("cluster.node_count") == 8
        assert config.get("shell.user") == "root"
        assert config.get("cluster.missing", "x") == "x"
        assert config.get("cluster.node_count.deeper", 3) == 3

    def test_base_is_deep_copied(self):
        config = Config(DEFAULT_CONFIG)
        config.config["cluster"]["node_count"] = 2
        assert DEFAULT_CONFIG["cluster"]["node_count"] == 8

    def test_update_merges_sections(self):
        config = Config(DEFAULT_CONFIG)
        config.update({"cluster": {"node_count": 4}, "extra": 1})
        assert config.get("cluster.node_count") == 4
        assert config.get("cluster.system_type") == "DGX-A100"
        assert config.get("extra") == 1


class TestConfigManager:
    """Tests for file-backed configuration."""

    def test_default_without_file(self):
        assert ConfigManager.load_or_default().get("cluster.system_type") == "DGX-A100"

    def test_yaml_overrides(self, tmp_path):
        path = tmp_path / "cluster.yaml"
        path.write_text("cluster:\n  node_count: 2\nshell:\n  user: alice\n", encoding="utf-8")
        config = ConfigManager.load_or_default(str(path))
        assert config.get("cluster.node_count") == 2
        assert config.get("shell.user") == "alice"
        assert config.get("shell.current_node") == "dgx-00"

    def test_json_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "cluster.json"
        ConfigManager.save_json(Config({"cluster": {"node_count": 3}}), str(path))
        assert json.loads(path.read_text(encoding="utf-8")) == {"cluster": {"node_count": 3}}
        assert ConfigManager.load_or_default(str(path)).get("cluster.node_count") == 3

    def test_save_yaml(self, tmp_path):
        path = tmp_path / "out.yaml"
        ConfigManager.save_yaml(Config({"metrics": {"seed": 7}}), str(path))
        assert ConfigManager.load_yaml(str(path)).get("metrics.seed") == 7

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigManager.load_or_default(str(tmp_path / "missing.yaml"))

    def test_unsupported_extension(self, tmp_path):
        path = tmp_path / "cluster.toml"
        path.write_text("x = 1\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Unsupported"):
            ConfigManager.load_or_default(str(path))

    def test_unparsable(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError, match="Could not parse"):
            ConfigManager.load_or_default(str(path))

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            ConfigManager.load_or_default(str(path))
