"""Tests for session and agent models and their state machines."""

import pytest

from parallel_runner.core.models import (
    AGENT_TRANSITIONS,
    AgentDescriptor,
    AgentNotFound,
    AgentStatus,
    AgentWorktree,
    InvalidTransition,
    TaskSession,
    TaskSessionState,
)


def _agent(agent_id: str, status: AgentStatus = AgentStatus.RUNNING) -> AgentWorktree:
    return AgentWorktree(
        agent_id=agent_id,
        branch_name=f"parallel/task-1/{agent_id}",
        worktree_path=f"/repo/.parallel-worktrees/task-1/{agent_id}",
        status=status,
    )


def _session(*agents: AgentWorktree) -> TaskSession:
    return TaskSession(
        id="task-1",
        repo_id="/repo",
        base_branch="main",
        base_commit="a" * 40,
        agents=list(agents),
    )


class TestAgentTransitions:
    """Agent state machine."""

    @pytest.mark.parametrize(
        "target", [AgentStatus.FINISHED, AgentStatus.ERROR, AgentStatus.DISCARDED]
    )
    def test_running_moves_forward(self, target):
        agent = _agent("a")
        agent.transition(target)
        assert agent.status == target

    def test_finished_can_win_or_be_discarded(self):
        assert AGENT_TRANSITIONS[AgentStatus.FINISHED] == {
            AgentStatus.WINNER,
            AgentStatus.DISCARDED,
        }

    def test_running_cannot_jump_to_winner(self):
        agent = _agent("a")
        with pytest.raises(InvalidTransition) as exc_info:
            agent.transition(AgentStatus.WINNER)
        assert exc_info.value.current == "running"
        assert exc_info.value.target == "winner"
        assert agent.status == AgentStatus.RUNNING

    @pytest.mark.parametrize(
        "terminal", [AgentStatus.WINNER, AgentStatus.DISCARDED, AgentStatus.ERROR]
    )
    def test_terminal_statuses_never_move(self, terminal):
        agent = _agent("a", terminal)
        assert agent.is_terminal
        for target in AgentStatus:
            assert not agent.can_transition(target)

    def test_transition_records_detail(self):
        agent = _agent("a")
        agent.transition(AgentStatus.ERROR, "exited with code 2")
        assert agent.detail == "exited with code 2"


class TestSessionTransitions:
    """Session state machine and helpers."""

    def test_active_to_completed_stamps_end(self):
        session = _session(_agent("a"))
        session.transition(TaskSessionState.COMPLETED, outcome="winner: a")
        assert session.is_terminal
        assert session.ended_at is not None
        assert session.outcome == "winner: a"

    def test_state_only_moves_forward(self):
        session = _session(_agent("a"))
        session.transition(TaskSessionState.ABORTED)
        with pytest.raises(InvalidTransition):
            session.transition(TaskSessionState.COMPLETED)
        with pytest.raises(InvalidTransition):
            session.transition(TaskSessionState.ACTIVE)

    def test_get_agent_unknown_raises(self):
        session = _session(_agent("a"))
        with pytest.raises(AgentNotFound):
            session.get_agent("b")

    def test_winner_and_status_filter(self):
        session = _session(
            _agent("a", AgentStatus.WINNER),
            _agent("b", AgentStatus.DISCARDED),
            _agent("c", AgentStatus.ERROR),
        )
        assert session.winner.agent_id == "a"
        assert [a.agent_id for a in session.agents_with_status(AgentStatus.DISCARDED)] == ["b"]

    def test_awaiting_choice(self):
        session = _session(_agent("a", AgentStatus.FINISHED), _agent("b", AgentStatus.ERROR))
        assert session.awaiting_choice
        session.agents.append(_agent("c"))
        assert not session.awaiting_choice


class TestSerialization:
    """Field names and forward compatibility."""

    def test_dump_uses_attribute_names(self):
        data = _session(_agent("a")).model_dump(mode="json")
        assert set(data) >= {"id", "repo_id", "base_branch", "base_commit", "created_at", "state"}
        assert data["state"] == "active"
        assert data["agents"][0]["status"] == "running"
        assert data["agents"][0]["cleanup_pending"] is False

    def test_unknown_fields_ignored(self):
        data = _session(_agent("a")).model_dump(mode="json")
        data["future_field"] = 1
        data["agents"][0]["another"] = "x"
        loaded = TaskSession.model_validate(data)
        assert loaded.agents[0].agent_id == "a"

    def test_descriptor_requires_agent_id(self):
        with pytest.raises(ValueError):
            AgentDescriptor(agent_id="")
