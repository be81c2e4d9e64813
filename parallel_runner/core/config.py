"""Runner configuration loaded from ``.parallel-runner/config.yaml``."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from parallel_runner.core.models import CleanupMode
from parallel_runner.core.utils import RetryPolicy

CONFIG_DIR = ".parallel-runner"
CONFIG_FILENAME = "config.yaml"

DEFAULT_CONFIG_YAML = """# parallel-runner configuration for this repository

# Agents started per session when none are named explicitly
agent_count: 2

# Shell command each agent runs inside its worktree. It sees
# PARALLEL_RUNNER_TASK, PARALLEL_RUNNER_BRANCH, PARALLEL_RUNNER_WORKTREE
# and PARALLEL_RUNNER_AGENT_ID in its environment.
agent_command: ""

# Seconds before a silent agent is marked as errored (null = no limit)
agent_timeout: null

# first_finisher: first finished agent wins (ties: smallest agent id)
# manual: wait for `parallel-runner choose`
winner_policy: first_finisher

# keep_branches: remove losing worktrees, keep their branches
# delete_branches: remove losing worktrees and branches
cleanup_mode: keep_branches

# Git settings
git_timeout: 30
worktrees_dir: .parallel-worktrees

# Backoff for failed worktree cleanup
cleanup_retry:
  max_attempts: 3
  initial_delay: 0.5
  backoff_multiplier: 2.0
  max_delay: 10.0
"""


class ConfigError(Exception):
    """Configuration file is unreadable or holds invalid values."""

    pass


class CleanupRetryConfig(BaseModel):
    """Backoff settings for worktree cleanup."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=0.5, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=10.0, ge=0)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            backoff_multiplier=self.backoff_multiplier,
            max_delay=self.max_delay,
        )


class RunnerConfig(BaseModel):
    """Validated contents of config.yaml."""

    model_config = ConfigDict(extra="forbid")

    agent_count: int = Field(default=2, ge=1)
    agent_command: str = ""
    agent_timeout: float | None = Field(default=None, gt=0)
    winner_policy: Literal["first_finisher", "manual"] = "first_finisher"
    cleanup_mode: CleanupMode = CleanupMode.KEEP_BRANCHES
    git_timeout: float = Field(default=30, gt=0)
    worktrees_dir: str = Field(default=".parallel-worktrees", min_length=1)
    cleanup_retry: CleanupRetryConfig = Field(default_factory=CleanupRetryConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RunnerConfig":
        try:
            return cls(**(data or {}))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigError(f"Invalid configuration: {problems}") from e


def config_path(repo_path: Path) -> Path:
    return repo_path / CONFIG_DIR / CONFIG_FILENAME


def load_config(repo_path: Path) -> RunnerConfig:
    """Load the repository's configuration, falling back to defaults.

    Raises:
        ConfigError: file is not valid YAML, not a mapping, or fails validation.
    """
    path = config_path(repo_path)
    if not path.exists():
        return RunnerConfig()

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return RunnerConfig.from_dict(data)


def write_default_config(repo_path: Path) -> Path:
    """Create config.yaml with commented defaults unless it already exists."""
    path = config_path(repo_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.write_text(DEFAULT_CONFIG_YAML)
    return path
