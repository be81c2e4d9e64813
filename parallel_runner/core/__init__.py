"""Core modules for parallel-runner."""

from parallel_runner.core.models import (
    AgentStatus,
    AgentWorktree,
    CleanupMode,
    TaskSession,
    TaskSessionState,
)
from parallel_runner.core.orchestrator import SessionClosedError, TaskSessionOrchestrator
from parallel_runner.core.state import EventType, SessionEvent, SessionNotFound, SessionStore
from parallel_runner.core.worktree import VCSError, WorktreeManager

__all__ = [
    "AgentStatus",
    "AgentWorktree",
    "CleanupMode",
    "EventType",
    "SessionClosedError",
    "SessionEvent",
    "SessionNotFound",
    "SessionStore",
    "TaskSession",
    "TaskSessionOrchestrator",
    "TaskSessionState",
    "VCSError",
    "WorktreeManager",
]
