"""Tests for configuration loading."""

import pytest

from flowcore.core.config import ConfigError, FlowConfig, load_config


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "config.yaml")
        assert config == FlowConfig()
        assert config.engine.max_steps == 1000
        assert config.tasks.stuck_threshold == 5

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path) == FlowConfig()

    def test_partial_override(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("tasks:\n  stuck_threshold: 2\n  max_subtasks: 3\n")
        config = load_config(path)
        assert config.tasks.stuck_threshold == 2
        assert config.tasks.max_subtasks == 3
        assert config.tasks.max_parallel_subtasks == 4

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("engine: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_out_of_range_value(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("engine:\n  max_steps: 0\n")
        with pytest.raises(ConfigError, match="Invalid config"):
            load_config(path)
