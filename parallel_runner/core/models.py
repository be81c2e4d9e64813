"""Data models for task sessions and agent worktrees.

Uses Pydantic so that the persisted shape (field names) is the same one
the API returns and the store writes.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


class InvalidTransition(Exception):
    """A state change that the agent or session state machine forbids."""

    def __init__(self, kind: str, current: str, target: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Invalid {kind} transition: {current} -> {target}")


class AgentNotFound(Exception):
    """Agent id is not part of the session."""

    pass


class TaskSessionState(str, Enum):
    """Lifecycle state of a task session."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ABORTED = "aborted"


class AgentStatus(str, Enum):
    """Execution status of one agent attempt."""

    RUNNING = "running"
    FINISHED = "finished"
    WINNER = "winner"
    DISCARDED = "discarded"
    ERROR = "error"


class CleanupMode(str, Enum):
    """What happens to non-winning branches once their worktree is removed."""

    KEEP_BRANCHES = "keep_branches"
    DELETE_BRANCHES = "delete_branches"


AGENT_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.RUNNING: frozenset(
        {AgentStatus.FINISHED, AgentStatus.ERROR, AgentStatus.DISCARDED}
    ),
    AgentStatus.FINISHED: frozenset({AgentStatus.WINNER, AgentStatus.DISCARDED}),
    AgentStatus.WINNER: frozenset(),
    AgentStatus.DISCARDED: frozenset(),
    AgentStatus.ERROR: frozenset(),
}

SESSION_TRANSITIONS: dict[TaskSessionState, frozenset[TaskSessionState]] = {
    TaskSessionState.ACTIVE: frozenset(
        {TaskSessionState.COMPLETED, TaskSessionState.ABORTED}
    ),
    TaskSessionState.COMPLETED: frozenset(),
    TaskSessionState.ABORTED: frozenset(),
}

# Statuses an agent can still move out of
LIVE_AGENT_STATUSES = frozenset({AgentStatus.RUNNING, AgentStatus.FINISHED})


class AgentDescriptor(BaseModel):
    """Caller-supplied identity for one agent of a new session."""

    agent_id: str = Field(..., min_length=1)
    panel_id: str | None = None


class AgentReport(BaseModel):
    """Status report posted by (or on behalf of) an external agent process."""

    agent_id: str
    status: AgentStatus
    detail: str | None = None


class AgentWorktree(BaseModel):
    """One agent's isolated checkout, branch and execution status."""

    model_config = ConfigDict(extra="ignore")

    agent_id: str
    panel_id: str | None = None
    branch_name: str
    worktree_path: str
    status: AgentStatus = AgentStatus.RUNNING
    detail: str | None = None
    cleanup_pending: bool = False
    cleaned_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return not AGENT_TRANSITIONS[self.status]

    @property
    def is_cleaned(self) -> bool:
        return self.cleaned_at is not None

    def can_transition(self, target: AgentStatus) -> bool:
        return target in AGENT_TRANSITIONS[self.status]

    def transition(self, target: AgentStatus, detail: str | None = None) -> None:
        """Move to ``target`` or raise InvalidTransition."""
        if not self.can_transition(target):
            raise InvalidTransition("agent", self.status.value, target.value)
        self.status = target
        if detail is not None:
            self.detail = detail


class TaskSession(BaseModel):
    """One task's execution attempt across several concurrent agents."""

    model_config = ConfigDict(extra="ignore")

    id: str
    repo_id: str
    base_branch: str
    base_commit: str
    created_at: datetime = Field(default_factory=utc_now)
    state: TaskSessionState = TaskSessionState.ACTIVE
    agents: list[AgentWorktree] = Field(default_factory=list)
    task_description: str = ""
    cleanup_mode: CleanupMode = CleanupMode.KEEP_BRANCHES
    ended_at: datetime | None = None
    outcome: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state != TaskSessionState.ACTIVE

    @property
    def awaiting_choice(self) -> bool:
        """Active, nothing running, and at least one finished agent to pick."""
        return (
            not self.is_terminal
            and not self.agents_with_status(AgentStatus.RUNNING)
            and bool(self.agents_with_status(AgentStatus.FINISHED))
        )

    @property
    def winner(self) -> AgentWorktree | None:
        for agent in self.agents:
            if agent.status == AgentStatus.WINNER:
                return agent
        return None

    def get_agent(self, agent_id: str) -> AgentWorktree:
        for agent in self.agents:
            if agent.agent_id == agent_id:
                return agent
        raise AgentNotFound(f"Agent '{agent_id}' not found in session {self.id}")

    def agents_with_status(self, *statuses: AgentStatus) -> list[AgentWorktree]:
        return [agent for agent in self.agents if agent.status in statuses]

    def transition(self, target: TaskSessionState, outcome: str | None = None) -> None:
        """Move the session forward, stamping ``ended_at`` on terminal states."""
        if target not in SESSION_TRANSITIONS[self.state]:
            raise InvalidTransition("session", self.state.value, target.value)
        self.state = target
        self.ended_at = utc_now()
        if outcome is not None:
            self.outcome = outcome
