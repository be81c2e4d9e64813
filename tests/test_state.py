"""Tests for the SQLite session store and audit log."""

import sqlite3
import threading

import pytest

from parallel_runner.core.models import (
    AgentStatus,
    AgentWorktree,
    CleanupMode,
    TaskSession,
    TaskSessionState,
    utc_now,
)
from parallel_runner.core.state import (
    EventType,
    SessionEvent,
    SessionNotFound,
    SessionStore,
    StoreLockedError,
)


def _session(session_id: str = "task-1", repo_id: str = "/repo", agents: int = 2) -> TaskSession:
    return TaskSession(
        id=session_id,
        repo_id=repo_id,
        base_branch="main",
        base_commit="c" * 40,
        task_description="add a feature",
        cleanup_mode=CleanupMode.DELETE_BRANCHES,
        agents=[
            AgentWorktree(
                agent_id=f"agent-{i}",
                panel_id=f"panel-{i}" if i % 2 else None,
                branch_name=f"parallel/{session_id}/agent-{i}",
                worktree_path=f"{repo_id}/.parallel-worktrees/{session_id}/agent-{i}",
            )
            for i in range(1, agents + 1)
        ],
    )


class TestSessionPersistence:
    """save/load/list/delete."""

    def test_save_then_load_is_deep_equal(self, store):
        session = _session()
        store.save(session)
        assert store.load(session.id) == session

    def test_roundtrip_after_terminal_state(self, store):
        session = _session()
        session.agents[0].transition(AgentStatus.FINISHED)
        session.agents[0].transition(AgentStatus.WINNER)
        session.agents[1].transition(AgentStatus.DISCARDED, "lost")
        session.agents[1].cleanup_pending = True
        session.agents[0].cleaned_at = utc_now()
        session.transition(TaskSessionState.COMPLETED, outcome="winner: agent-1")
        store.save(session)
        assert store.load(session.id) == session

    def test_save_replaces_agents(self, store):
        session = _session(agents=3)
        store.save(session)
        session.agents = session.agents[:1]
        store.save(session)
        assert [a.agent_id for a in store.load(session.id).agents] == ["agent-1"]

    def test_agent_order_preserved(self, store):
        session = _session(agents=3)
        session.agents.reverse()
        store.save(session)
        assert [a.agent_id for a in store.load(session.id).agents] == [
            "agent-3",
            "agent-2",
            "agent-1",
        ]

    def test_load_missing_raises(self, store):
        with pytest.raises(SessionNotFound):
            store.load("task-missing")

    def test_list_filters(self, store):
        first = _session("task-1")
        second = _session("task-2", repo_id="/other")
        second.transition(TaskSessionState.ABORTED)
        store.save(first)
        store.save(second)

        assert [s.id for s in store.list()] == ["task-1", "task-2"]
        assert [s.id for s in store.list(state=TaskSessionState.ABORTED)] == ["task-2"]
        assert [s.id for s in store.list(repo_id="/repo")] == ["task-1"]
        assert store.list(state=TaskSessionState.COMPLETED) == []

    def test_save_with_events_is_atomic(self, store, mocker):
        session = _session()
        store.save(
            session,
            [SessionEvent(session_id=session.id, event_type=EventType.SESSION_CREATED)],
        )
        assert [e.event_type for e in store.get_events(session.id)] == [
            EventType.SESSION_CREATED
        ]

        aborted = session.model_copy(deep=True)
        aborted.transition(TaskSessionState.ABORTED, outcome="aborted by operator")
        mocker.patch.object(
            store, "_insert_event", side_effect=sqlite3.OperationalError("disk I/O error")
        )
        with pytest.raises(sqlite3.OperationalError):
            store.save(
                aborted,
                [SessionEvent(session_id=session.id, event_type=EventType.SESSION_ABORTED)],
            )

        mocker.stopall()
        assert store.load(session.id).state == TaskSessionState.ACTIVE
        assert len(store.get_events(session.id)) == 1

    def test_delete_removes_session_and_events(self, store):
        session = _session()
        store.save(session)
        store.append_event(
            SessionEvent(session_id=session.id, event_type=EventType.SESSION_CREATED)
        )
        store.delete(session.id)
        assert not store.exists(session.id)
        assert store.get_events(session.id) == []

    def test_concurrent_saves_never_mix_agents(self, store):
        """Readers see either the old or the new agents collection, never a mix."""
        session = _session(agents=4)
        store.save(session)
        errors = []

        def writer(status: AgentStatus):
            for _ in range(20):
                copy = session.model_copy(deep=True)
                for agent in copy.agents:
                    agent.status = status
                store.save(copy)

        def reader():
            for _ in range(40):
                statuses = {a.status for a in store.load(session.id).agents}
                if len(statuses) != 1:
                    errors.append(statuses)

        threads = [
            threading.Thread(target=writer, args=(AgentStatus.FINISHED,)),
            threading.Thread(target=writer, args=(AgentStatus.ERROR,)),
            threading.Thread(target=reader),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert len(store.load(session.id).agents) == 4


class TestAuditLog:
    """Event append and query."""

    def test_events_in_append_order(self, store):
        store.append_event(
            SessionEvent(session_id="task-1", event_type=EventType.SESSION_CREATED)
        )
        store.append_event(
            SessionEvent(
                session_id="task-1",
                event_type=EventType.AGENT_STATUS_CHANGED,
                agent_id="agent-1",
                status="finished",
                payload={"previous": "running"},
            )
        )
        store.append_event(
            SessionEvent(session_id="task-2", event_type=EventType.SESSION_CREATED)
        )

        events = store.get_events("task-1")
        assert [e.event_type for e in events] == [
            EventType.SESSION_CREATED,
            EventType.AGENT_STATUS_CHANGED,
        ]
        assert events[1].payload == {"previous": "running"}
        assert events[1].agent_id == "agent-1"

    def test_filter_by_type(self, store):
        for event_type in (EventType.SESSION_CREATED, EventType.CLEANUP_FAILED):
            store.append_event(SessionEvent(session_id="task-1", event_type=event_type))
        events = store.get_events("task-1", [EventType.CLEANUP_FAILED])
        assert [e.event_type for e in events] == [EventType.CLEANUP_FAILED]


class TestOwnership:
    """Inter-process ownership lock."""

    def test_second_owner_is_refused(self, tmp_path):
        first = SessionStore(tmp_path / "state.db")
        second = SessionStore(tmp_path / "state.db")
        with first.ownership():
            with pytest.raises(StoreLockedError):
                with second.ownership(timeout=0.1):
                    pass
        with second.ownership():
            pass
