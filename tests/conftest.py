# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the parallel-runner test suite.

This module provides:
- A real git repository to provision worktrees in
- A session store backed by a temporary SQLite database
- ScriptedAgent / ScriptedLauncher, deterministic stand-ins for agent
  processes that finish, fail, crash on start or hang on command
- An orchestrator factory with zero-delay cleanup retries
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from parallel_runner.core.config import CleanupRetryConfig, RunnerConfig
from parallel_runner.core.models import AgentReport, AgentStatus, AgentWorktree, TaskSession
from parallel_runner.core.orchestrator import TaskSessionOrchestrator
from parallel_runner.core.runner import AgentFailure, ReportCallback
from parallel_runner.core.state import SessionStore
from parallel_runner.core.utils import RetryPolicy
from parallel_runner.core.worktree import WorktreeManager

# =============================================================================
# Repository Fixtures
# =============================================================================


def git(repo: Path, *args: str) -> str:
    """Run git in ``repo`` and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=repo, check=True, capture_output=True, text=True
    )
    return result.stdout.strip()


@pytest.fixture
def repo_with_git(tmp_path: Path) -> Path:
    """Create a git repository with one commit.

    WARNING: Runs actual git commands. Tests using it are marked ``git``.

    Returns:
        Path to the repository root.
    """
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    (repo / "README.md").write_text("# Test Project\n")
    (repo / "src" / "main.py").write_text('def main():\n    return "hello"\n')

    try:
        git(repo, "init")
        git(repo, "config", "user.email", "test@example.com")
        git(repo, "config", "user.name", "Test User")
        git(repo, "add", ".")
        git(repo, "commit", "-m", "Initial commit")
    except (subprocess.CalledProcessError, FileNotFoundError):
        pytest.skip("Git not available")
    return repo


@pytest.fixture
def worktrees() -> WorktreeManager:
    """WorktreeManager that retries lock contention without sleeping long."""
    return WorktreeManager(
        retry_policy=RetryPolicy(max_attempts=3, initial_delay=0.01, max_delay=0.05)
    )


# =============================================================================
# Store Fixtures
# =============================================================================


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    """Session store in a temporary directory outside the repository."""
    return SessionStore(tmp_path / "state" / "state.db")


# =============================================================================
# Agent Doubles
# =============================================================================


class ScriptedAgent:
    """AgentProcess double driven by a script name or by the test.

    Scripts:
        finish: report ``finished`` as soon as started
        error: report ``error`` as soon as started
        crash: raise AgentFailure from start()
        hang: never report on its own; the test calls finish()/fail()
        gone: a process that already exited; is_alive() is False
    """

    def __init__(self, agent_id: str, script: str = "hang"):
        self.agent_id = agent_id
        self.script = script
        self.on_report: ReportCallback | None = None
        self.started_with: tuple[str, str, str] | None = None
        self.cancelled = False

    def start(
        self,
        worktree_path: str,
        branch_name: str,
        task_description: str,
        on_report: ReportCallback,
    ) -> None:
        self.started_with = (worktree_path, branch_name, task_description)
        self.on_report = on_report
        if self.script == "crash":
            raise AgentFailure(self.agent_id, "crashed on start")
        if self.script == "finish":
            self.finish()
        elif self.script == "error":
            self.fail("scripted failure")

    def finish(self) -> None:
        assert self.on_report is not None, "agent was never started"
        self.on_report(AgentReport(agent_id=self.agent_id, status=AgentStatus.FINISHED))

    def fail(self, detail: str = "boom") -> None:
        assert self.on_report is not None, "agent was never started"
        self.on_report(
            AgentReport(agent_id=self.agent_id, status=AgentStatus.ERROR, detail=detail)
        )

    def cancel(self) -> None:
        self.cancelled = True

    def is_alive(self) -> bool:
        return self.script != "gone" and not self.cancelled


class ScriptedLauncher:
    """AgentLauncher double handing out ScriptedAgents."""

    def __init__(
        self,
        scripts: dict[str, str] | None = None,
        default: str = "hang",
        reattachable: bool = False,
        reattach_script: str = "hang",
    ):
        self.scripts = scripts or {}
        self.default = default
        self.reattachable = reattachable
        self.reattach_script = reattach_script
        self.agents: dict[str, ScriptedAgent] = {}
        self.launch_order: list[str] = []

    def launch(self, agent: AgentWorktree, session: TaskSession) -> ScriptedAgent:
        process = ScriptedAgent(agent.agent_id, self.scripts.get(agent.agent_id, self.default))
        self.agents[agent.agent_id] = process
        self.launch_order.append(agent.agent_id)
        return process

    def reattach(self, agent: AgentWorktree, session: TaskSession) -> ScriptedAgent | None:
        if not self.reattachable:
            return None
        process = ScriptedAgent(agent.agent_id, self.reattach_script)
        self.agents[agent.agent_id] = process
        return process


# =============================================================================
# Orchestrator Fixtures
# =============================================================================


@pytest.fixture
def fast_config() -> RunnerConfig:
    """Config with immediate cleanup retries."""
    return RunnerConfig(
        cleanup_retry=CleanupRetryConfig(max_attempts=2, initial_delay=0, max_delay=0)
    )


@pytest.fixture
def make_orchestrator(
    store: SessionStore, worktrees: WorktreeManager, fast_config: RunnerConfig
) -> Generator[Callable[..., TaskSessionOrchestrator], None, None]:
    """Factory for orchestrators sharing the test store; all are shut down after the test."""
    created: list[TaskSessionOrchestrator] = []

    def factory(**kwargs) -> TaskSessionOrchestrator:
        kwargs.setdefault("worktrees", worktrees)
        kwargs.setdefault("config", fast_config)
        orchestrator = TaskSessionOrchestrator(store, **kwargs)
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.shutdown()


@pytest.fixture
def git_cmd() -> Callable[..., str]:
    """``git_cmd(repo, *args)`` runs git and returns stdout."""
    return git


@pytest.fixture
def make_launcher() -> Callable[..., ScriptedLauncher]:
    """Factory for ScriptedLauncher (``scripts``, ``default`` and the reattach options)."""
    return ScriptedLauncher


@pytest.fixture
def make_agent() -> Callable[..., ScriptedAgent]:
    """Factory for ScriptedAgent (``agent_id``, ``script``)."""
    return ScriptedAgent


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "git: marks tests requiring git")
