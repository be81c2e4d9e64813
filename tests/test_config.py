"""Tests for config.yaml loading and validation."""

import pytest
import yaml

from parallel_runner.core.config import (
    DEFAULT_CONFIG_YAML,
    ConfigError,
    RunnerConfig,
    config_path,
    load_config,
    write_default_config,
)
from parallel_runner.core.models import CleanupMode


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path)
        assert config == RunnerConfig()
        assert config.winner_policy == "first_finisher"
        assert config.cleanup_mode == CleanupMode.KEEP_BRANCHES

    def test_default_file_matches_model_defaults(self, tmp_path):
        write_default_config(tmp_path)
        assert load_config(tmp_path) == RunnerConfig()
        assert yaml.safe_load(DEFAULT_CONFIG_YAML)["agent_command"] == ""

    def test_values_are_read(self, tmp_path):
        path = config_path(tmp_path)
        path.parent.mkdir()
        path.write_text(
            "agent_count: 4\n"
            "agent_command: ./run-agent.sh\n"
            "agent_timeout: 90\n"
            "winner_policy: manual\n"
            "cleanup_mode: delete_branches\n"
            "cleanup_retry:\n"
            "  max_attempts: 5\n"
        )
        config = load_config(tmp_path)
        assert config.agent_count == 4
        assert config.agent_command == "./run-agent.sh"
        assert config.agent_timeout == 90
        assert config.winner_policy == "manual"
        assert config.cleanup_mode == CleanupMode.DELETE_BRANCHES
        assert config.cleanup_retry.to_policy().max_attempts == 5

    def test_empty_file_gives_defaults(self, tmp_path):
        path = config_path(tmp_path)
        path.parent.mkdir()
        path.write_text("")
        assert load_config(tmp_path) == RunnerConfig()

    @pytest.mark.parametrize(
        "content,match",
        [
            ("agent_count: [unclosed", "Invalid YAML"),
            ("- a\n- b\n", "must contain a mapping"),
            ("agent_count: 0\n", "agent_count"),
            ("winner_policy: fastest\n", "winner_policy"),
            ("agent_cuont: 3\n", "agent_cuont"),
        ],
    )
    def test_invalid_files(self, tmp_path, content, match):
        path = config_path(tmp_path)
        path.parent.mkdir()
        path.write_text(content)
        with pytest.raises(ConfigError, match=match):
            load_config(tmp_path)


class TestWriteDefaultConfig:
    def test_existing_file_not_overwritten(self, tmp_path):
        path = config_path(tmp_path)
        path.parent.mkdir()
        path.write_text("agent_count: 7\n")
        write_default_config(tmp_path)
        assert load_config(tmp_path).agent_count == 7
