"""SQLite persistence for task sessions, agent worktrees and the audit log.

Sessions and agents are stored as rows whose column names match the model
field names. A session and its agents are always written together in one
``BEGIN IMMEDIATE`` transaction, so a reader never observes a session with a
half-replaced agents collection. The events table is an append-only audit
trail of lifecycle transitions.
"""

import json
import logging
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from filelock import FileLock
from filelock import Timeout as FileLockTimeout
from pydantic import BaseModel, Field

from parallel_runner.core.models import (
    AgentWorktree,
    TaskSession,
    TaskSessionState,
    utc_now,
)

logger = logging.getLogger(__name__)


class SessionNotFound(Exception):
    """No session with the requested id exists in the store."""

    pass


class StoreLockedError(Exception):
    """Another process owns the session store."""

    pass


class EventType(str, Enum):
    """Types of events in the audit log."""

    SESSION_CREATED = "session_created"
    AGENT_STATUS_CHANGED = "agent_status_changed"
    WINNER_SELECTED = "winner_selected"
    SESSION_COMPLETED = "session_completed"
    SESSION_ABORTED = "session_aborted"
    CLEANUP_SUCCEEDED = "cleanup_succeeded"
    CLEANUP_FAILED = "cleanup_failed"
    SESSION_RECOVERED = "session_recovered"


class SessionEvent(BaseModel):
    """Immutable entry in the audit log."""

    id: int | None = None
    session_id: str
    event_type: EventType
    agent_id: str | None = None
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SessionStore:
    """Durable record of every TaskSession and its agents."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        repo_id TEXT NOT NULL,
        base_branch TEXT NOT NULL,
        base_commit TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        state TEXT NOT NULL,
        task_description TEXT DEFAULT '',
        cleanup_mode TEXT NOT NULL,
        ended_at TIMESTAMP,
        outcome TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS agents (
        session_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        agent_id TEXT NOT NULL,
        panel_id TEXT,
        branch_name TEXT NOT NULL,
        worktree_path TEXT NOT NULL,
        status TEXT NOT NULL,
        detail TEXT,
        cleanup_pending INTEGER NOT NULL DEFAULT 0,
        cleaned_at TIMESTAMP,
        PRIMARY KEY (session_id, agent_id),
        FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        agent_id TEXT,
        status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_state ON sessions(state);
    CREATE INDEX IF NOT EXISTS idx_sessions_repo ON sessions(repo_id);
    CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id);
    """

    BUSY_TIMEOUT = 30.0

    def __init__(self, db_path: str | Path = ".parallel-runner/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Create the schema and switch the database to WAL mode."""
        conn = sqlite3.connect(self.db_path, timeout=self.BUSY_TIMEOUT)
        try:
            # journal_mode cannot change inside a transaction
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def _connect(self, immediate: bool = False) -> Generator[sqlite3.Connection, None, None]:
        """Open a connection running one explicit transaction.

        ``immediate`` takes the write lock up front so that concurrent
        writers queue on the busy timeout instead of failing mid-transaction.
        """
        conn = sqlite3.connect(self.db_path, timeout=self.BUSY_TIMEOUT, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {int(self.BUSY_TIMEOUT * 1000)}")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after {self.BUSY_TIMEOUT:.0f}s timeout. "
                    f"Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def ownership(self, timeout: float = 0) -> Generator[None, None, None]:
        """Hold the inter-process lock that grants the right to mutate sessions.

        Raises:
            StoreLockedError: another process holds the lock after ``timeout``.
        """
        lock_path = self.db_path.with_name(self.db_path.name + ".lock")
        lock = FileLock(str(lock_path), timeout=timeout)
        try:
            lock.acquire()
        except FileLockTimeout:
            raise StoreLockedError(
                f"Session store {self.db_path} is in use by another process"
            )
        try:
            yield
        finally:
            lock.release()

    # --- Sessions ---

    def save(self, session: TaskSession, events: Iterable[SessionEvent] = ()) -> None:
        """Upsert the session, replace its agents and append ``events`` atomically."""
        with self._connect(immediate=True) as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, repo_id, base_branch, base_commit, created_at,
                                      state, task_description, cleanup_mode, ended_at,
                                      outcome, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    state = excluded.state,
                    task_description = excluded.task_description,
                    cleanup_mode = excluded.cleanup_mode,
                    ended_at = excluded.ended_at,
                    outcome = excluded.outcome,
                    updated_at = excluded.updated_at
                """,
                (
                    session.id,
                    session.repo_id,
                    session.base_branch,
                    session.base_commit,
                    session.created_at.isoformat(),
                    session.state.value,
                    session.task_description,
                    session.cleanup_mode.value,
                    _dt(session.ended_at),
                    session.outcome,
                    utc_now().isoformat(),
                ),
            )
            conn.execute("DELETE FROM agents WHERE session_id = ?", (session.id,))
            conn.executemany(
                """
                INSERT INTO agents (session_id, position, agent_id, panel_id, branch_name,
                                    worktree_path, status, detail, cleanup_pending, cleaned_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        session.id,
                        position,
                        agent.agent_id,
                        agent.panel_id,
                        agent.branch_name,
                        agent.worktree_path,
                        agent.status.value,
                        agent.detail,
                        int(agent.cleanup_pending),
                        _dt(agent.cleaned_at),
                    )
                    for position, agent in enumerate(session.agents)
                ],
            )
            for event in events:
                self._insert_event(conn, event)

    def load(self, session_id: str) -> TaskSession:
        """Load a session with its agents.

        Raises:
            SessionNotFound: no such session.
        """
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if row is None:
                raise SessionNotFound(f"Session not found: {session_id}")
            return self._row_to_session(conn, row)

    def exists(self, session_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
            return row is not None

    def delete(self, session_id: str) -> None:
        """Remove a session, its agents and its audit trail."""
        with self._connect(immediate=True) as conn:
            conn.execute("DELETE FROM agents WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM events WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

    def _row_to_session(self, conn: sqlite3.Connection, row: sqlite3.Row) -> TaskSession:
        agent_rows = conn.execute(
            "SELECT * FROM agents WHERE session_id = ? ORDER BY position",
            (row["id"],),
        ).fetchall()
        return TaskSession(
            id=row["id"],
            repo_id=row["repo_id"],
            base_branch=row["base_branch"],
            base_commit=row["base_commit"],
            created_at=datetime.fromisoformat(row["created_at"]),
            state=row["state"],
            task_description=row["task_description"] or "",
            cleanup_mode=row["cleanup_mode"],
            ended_at=_parse_dt(row["ended_at"]),
            outcome=row["outcome"],
            agents=[self._row_to_agent(agent_row) for agent_row in agent_rows],
        )

    def _row_to_agent(self, row: sqlite3.Row) -> AgentWorktree:
        return AgentWorktree(
            agent_id=row["agent_id"],
            panel_id=row["panel_id"],
            branch_name=row["branch_name"],
            worktree_path=row["worktree_path"],
            status=row["status"],
            detail=row["detail"],
            cleanup_pending=bool(row["cleanup_pending"]),
            cleaned_at=_parse_dt(row["cleaned_at"]),
        )

    # --- Audit log ---

    def append_event(self, event: SessionEvent) -> int:
        """Append an event to the audit log and return its id."""
        with self._connect() as conn:
            return self._insert_event(conn, event)

    def _insert_event(self, conn: sqlite3.Connection, event: SessionEvent) -> int:
        cursor = conn.execute(
            """
            INSERT INTO events (session_id, event_type, agent_id, status, payload, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.session_id,
                event.event_type.value,
                event.agent_id,
                event.status,
                json.dumps(event.payload, default=str),
                event.timestamp.isoformat(),
            ),
        )
        return cursor.lastrowid  # type: ignore

    def get_events(
        self, session_id: str, event_types: list[EventType] | None = None
    ) -> list[SessionEvent]:
        """Get events for a session in append order, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE session_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [session_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE session_id = ? ORDER BY id",
                    (session_id,),
                ).fetchall()
            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> SessionEvent:
        return SessionEvent(
            id=row["id"],
            session_id=row["session_id"],
            event_type=EventType(row["event_type"]),
            agent_id=row["agent_id"],
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )

    def list(
        self,
        state: TaskSessionState | None = None,
        repo_id: str | None = None,
    ) -> list[TaskSession]:
        """List sessions ordered by creation time, optionally filtered."""
        query = "SELECT * FROM sessions WHERE 1 = 1"
        params: list[Any] = []
        if state is not None:
            query += " AND state = ?"
            params.append(TaskSessionState(state).value)
        if repo_id is not None:
            query += " AND repo_id = ?"
            params.append(repo_id)
        query += " ORDER BY created_at, id"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_session(conn, row) for row in rows]
