"""Task session orchestration.

The orchestrator is the single writer of session state. It provisions one
worktree per agent, starts a runner per agent, applies agent reports,
selects the winner, and drives cleanup of everything that lost.

Concurrency model:
- One ``RLock`` per session. Reports land in a per-session inbox and are
  drained as a batch under the lock, so reports that arrive together are
  evaluated together and the winner check plus the discard fan-out happen
  atomically.
- Every change is made on a copy of the session and becomes the in-memory
  state only after the store accepted it.
- Cleanup of losers is registered under the session lock in the same step
  that records the decision. The cleanup job stops the agent's runner before
  touching its worktree.
- Git work (provisioning, cleanup) never runs under a session lock. The lock
  is only taken to claim an agent for cleanup and to record the result.
- The registry lock guards the session dict only.
"""

import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field

from parallel_runner.core.config import RunnerConfig
from parallel_runner.core.models import (
    LIVE_AGENT_STATUSES,
    AgentDescriptor,
    AgentReport,
    AgentStatus,
    AgentWorktree,
    CleanupMode,
    InvalidTransition,
    TaskSession,
    TaskSessionState,
    utc_now,
)
from parallel_runner.core.policy import WinnerPolicy, get_policy
from parallel_runner.core.runner import AgentLauncher, AgentProcess, AgentRunner
from parallel_runner.core.state import EventType, SessionEvent, SessionStore
from parallel_runner.core.utils import call_with_retry, unique_slugs
from parallel_runner.core.worktree import VCSError, WorktreeManager

logger = logging.getLogger(__name__)

ALL_AGENTS_FAILED = "all agents failed"
ABORTED_BY_OPERATOR = "aborted by operator"
RECOVERED_AFTER_RESTART = "recovered after restart"

# Statuses agents may report about themselves
_REPORTABLE = frozenset({AgentStatus.RUNNING, AgentStatus.FINISHED, AgentStatus.ERROR})


class SessionClosedError(Exception):
    """The request needs an active session but the session is terminal."""

    pass


@dataclass
class _SessionHandle:
    """In-memory companion of a session: lock, inbox, runners, cleanup claims."""

    session: TaskSession
    lock: threading.RLock = field(default_factory=threading.RLock)
    inbox: deque[AgentReport] = field(default_factory=deque)
    inbox_lock: threading.Lock = field(default_factory=threading.Lock)
    runners: dict[str, AgentRunner] = field(default_factory=dict)
    cleanup_claims: set[str] = field(default_factory=set)
    cleanup_futures: list[Future] = field(default_factory=list)
    changed: threading.Condition = field(init=False)

    def __post_init__(self) -> None:
        self.changed = threading.Condition(self.lock)


class TaskSessionOrchestrator:
    """Owns task sessions from creation to cleanup."""

    def __init__(
        self,
        store: SessionStore,
        worktrees: WorktreeManager | None = None,
        launcher: AgentLauncher | None = None,
        policy: WinnerPolicy | None = None,
        config: RunnerConfig | None = None,
        max_workers: int = 8,
    ):
        self.config = config or RunnerConfig()
        self.store = store
        self.worktrees = worktrees or WorktreeManager(
            worktrees_dir=self.config.worktrees_dir,
            git_timeout=self.config.git_timeout,
        )
        self.launcher = launcher
        self.policy = policy or get_policy(self.config.winner_policy)
        self.cleanup_retry = self.config.cleanup_retry.to_policy()

        self._sessions: dict[str, _SessionHandle] = {}
        self._registry_lock = threading.Lock()
        self._provision_pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="provision"
        )
        self._cleanup_pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="cleanup"
        )
        self._closed = False

    # --- registry ---

    def _handle(self, session_id: str) -> _SessionHandle:
        with self._registry_lock:
            handle = self._sessions.get(session_id)
            if handle is None:
                # Raises SessionNotFound
                handle = _SessionHandle(session=self.store.load(session_id))
                self._sessions[session_id] = handle
            return handle

    def _register(self, session: TaskSession) -> _SessionHandle:
        with self._registry_lock:
            handle = _SessionHandle(session=session)
            self._sessions[session.id] = handle
            return handle

    # --- persistence helpers (caller holds the session lock) ---

    def _commit(
        self,
        handle: _SessionHandle,
        session: TaskSession,
        events: list[SessionEvent],
        cleanup: Iterable[str] = (),
    ) -> None:
        """Persist ``session`` with ``events`` and make it the in-memory state.

        If the store raises, the in-memory session is left as it was.
        Cleanup for ``cleanup`` is registered before waiters are woken.
        """
        self.store.save(session, events)
        handle.session = session
        self._schedule_cleanup(handle, cleanup)
        handle.changed.notify_all()

    def _event(
        self,
        session: TaskSession,
        event_type: EventType,
        agent: AgentWorktree | None = None,
        **payload,
    ) -> SessionEvent:
        return SessionEvent(
            session_id=session.id,
            event_type=event_type,
            agent_id=agent.agent_id if agent else None,
            status=agent.status.value if agent else session.state.value,
            payload=payload,
        )

    # --- create ---

    def create_session(
        self,
        repo_id: str,
        base_branch: str | None = None,
        agent_count: int | None = None,
        *,
        task_description: str = "",
        agents: list[AgentDescriptor] | None = None,
        cleanup_mode: CleanupMode | None = None,
    ) -> TaskSession:
        """Provision a worktree per agent, persist the session, start the agents.

        Args:
            repo_id: Path of the repository (any directory inside it).
            base_branch: Starting branch; defaults to the current branch.
            agent_count: Number of ``agent-N`` agents when ``agents`` is None.
            task_description: Passed to every agent.
            agents: Explicit agent ids and panel handles.
            cleanup_mode: Overrides the configured cleanup mode.

        Raises:
            ValueError: no agents requested, or duplicate agent ids.
            VCSError: repository or base branch unusable, or provisioning
                failed (already-created worktrees are rolled back).
        """
        if self._closed:
            raise RuntimeError("Orchestrator has been shut down")

        if agents is not None:
            if not agents:
                raise ValueError("At least one agent must be requested")
            descriptors = [AgentDescriptor.model_validate(a) for a in agents]
        else:
            count = self.config.agent_count if agent_count is None else agent_count
            if count < 1:
                raise ValueError(f"agent_count must be at least 1, got {count}")
            descriptors = [AgentDescriptor(agent_id=f"agent-{i}") for i in range(1, count + 1)]

        agent_ids = [d.agent_id for d in descriptors]
        duplicates = sorted({a for a in agent_ids if agent_ids.count(a) > 1})
        if duplicates:
            raise ValueError(f"Duplicate agent ids: {duplicates}")

        repo = self.worktrees.resolve_repo(repo_id)
        base_branch = base_branch or self.worktrees.current_branch(repo)
        base_commit = self.worktrees.resolve_commit(repo, base_branch)

        session_id = f"task-{uuid.uuid4().hex}"
        session = TaskSession(
            id=session_id,
            repo_id=repo,
            base_branch=base_branch,
            base_commit=base_commit,
            task_description=task_description,
            cleanup_mode=cleanup_mode or self.config.cleanup_mode,
            agents=[
                AgentWorktree(
                    agent_id=descriptor.agent_id,
                    panel_id=descriptor.panel_id,
                    branch_name=f"parallel/{session_id}/{slug}",
                    worktree_path=str(self.worktrees.worktree_path_for(repo, session_id, slug)),
                )
                for descriptor, slug in zip(descriptors, unique_slugs(agent_ids), strict=True)
            ],
        )

        self._provision(session)

        created = self._event(
            session,
            EventType.SESSION_CREATED,
            base_branch=base_branch,
            base_commit=base_commit,
            agents=agent_ids,
        )
        try:
            self.store.save(session, [created])
        except Exception:
            self._rollback(session, session.agents)
            raise
        handle = self._register(session)
        logger.info(
            f"Created session {session_id} with {len(agent_ids)} agents "
            f"on {base_branch}@{base_commit[:8]}"
        )

        self._start_runners(handle, session.agents)
        return self.get_session(session_id)

    def _provision(self, session: TaskSession) -> None:
        """Create all worktrees concurrently; on any failure undo the ones created."""
        futures: dict[Future, AgentWorktree] = {
            self._provision_pool.submit(
                self.worktrees.create,
                session.repo_id,
                session.base_commit,
                agent.branch_name,
                agent.worktree_path,
            ): agent
            for agent in session.agents
        }

        created: list[AgentWorktree] = []
        failures: list[tuple[AgentWorktree, Exception]] = []
        for future in as_completed(futures):
            agent = futures[future]
            try:
                future.result()
                created.append(agent)
            except Exception as e:
                failures.append((agent, e))

        if not failures:
            return

        for agent, error in failures:
            logger.warning(f"Provisioning worktree for agent '{agent.agent_id}' failed: {error}")
        self._rollback(session, created)

        error = failures[0][1]
        if isinstance(error, VCSError):
            raise error
        raise VCSError(f"Provisioning failed for agent '{failures[0][0].agent_id}': {error}")

    def _rollback(self, session: TaskSession, agents: Iterable[AgentWorktree]) -> None:
        for agent in agents:
            try:
                self.worktrees.remove(
                    session.repo_id,
                    agent.worktree_path,
                    agent.branch_name,
                    keep_branch=False,
                    force=True,
                )
            except VCSError as e:
                logger.error(f"Rollback of worktree {agent.worktree_path} failed: {e}")

    # --- runners ---

    def _start_runners(
        self,
        handle: _SessionHandle,
        agents: Iterable[AgentWorktree],
        processes: dict[str, AgentProcess] | None = None,
    ) -> None:
        processes = processes or {}
        launcher = self.launcher
        if launcher is None and not processes:
            return

        session_id = handle.session.id
        for agent in agents:
            with handle.lock:
                session = handle.session
                if session.is_terminal:
                    return
                current = session.get_agent(agent.agent_id)
                if current.status != AgentStatus.RUNNING or current.agent_id in handle.runners:
                    continue
                snapshot = session.model_copy(deep=True)

            process = processes.get(agent.agent_id)
            if process is None:
                if launcher is None:
                    continue
                try:
                    process = launcher.launch(current.model_copy(), snapshot)
                except Exception as e:
                    logger.warning(f"Launching agent '{agent.agent_id}' failed: {e}")
                    self.report(
                        session_id,
                        AgentReport(
                            agent_id=agent.agent_id, status=AgentStatus.ERROR, detail=str(e)
                        ),
                    )
                    continue

            runner = AgentRunner(
                agent.agent_id,
                process,
                on_report=lambda report, sid=session_id: self._on_runner_report(sid, report),
                timeout=self.config.agent_timeout,
            )
            with handle.lock:
                if handle.session.is_terminal:
                    return
                handle.runners[agent.agent_id] = runner
            runner.start(current.worktree_path, current.branch_name, snapshot.task_description)

    def _on_runner_report(self, session_id: str, report: AgentReport) -> None:
        try:
            self.report(session_id, report)
        except Exception:
            logger.exception(
                f"Failed to apply report {report.status.value} from agent "
                f"'{report.agent_id}' in session {session_id}"
            )

    # --- reports and winner selection ---

    def report(self, session_id: str, *reports: AgentReport) -> TaskSession:
        """Deliver agent status reports.

        Reports passed in one call are applied as one batch. Reports for a
        terminal session or a terminal agent are dropped. If the batch
        cannot be persisted it stays queued and is applied by the next
        report or choice.

        Raises:
            SessionNotFound: unknown session.
            AgentNotFound: a report names an agent outside the session.
            ValueError: a report claims ``winner`` or ``discarded``.
        """
        handle = self._handle(session_id)
        for report in reports:
            if report.status not in _REPORTABLE:
                raise ValueError(f"Agents cannot report status '{report.status.value}'")
            handle.session.get_agent(report.agent_id)

        with handle.inbox_lock:
            handle.inbox.extend(reports)

        with handle.lock:
            self._drain(handle)
            return handle.session.model_copy(deep=True)

    def _drain(self, handle: _SessionHandle) -> None:
        """Apply every queued report, then evaluate the session once."""
        with handle.inbox_lock:
            batch = list(handle.inbox)
            handle.inbox.clear()
        if not batch:
            return

        session = handle.session.model_copy(deep=True)
        events: list[SessionEvent] = []
        for report in batch:
            event = self._apply_report(session, report)
            if event is not None:
                events.append(event)
        if not events:
            return

        cleanup = self._evaluate(session, events)
        try:
            self._commit(handle, session, events, cleanup)
        except Exception:
            # Repeated reports are no-ops, so the batch can be applied again
            with handle.inbox_lock:
                handle.inbox.extendleft(reversed(batch))
            raise

    def _apply_report(self, session: TaskSession, report: AgentReport) -> SessionEvent | None:
        if session.is_terminal:
            logger.debug(
                f"Dropping {report.status.value} from '{report.agent_id}': "
                f"session {session.id} is {session.state.value}"
            )
            return None
        agent = session.get_agent(report.agent_id)
        if agent.status == report.status:
            return None
        if not agent.can_transition(report.status):
            logger.debug(
                f"Dropping {report.status.value} from '{agent.agent_id}': "
                f"agent is {agent.status.value}"
            )
            return None

        previous = agent.status
        agent.transition(report.status, report.detail)
        if report.status == AgentStatus.ERROR:
            logger.warning(
                f"Agent '{agent.agent_id}' in session {session.id} failed: {report.detail}"
            )
        else:
            logger.info(f"Agent '{agent.agent_id}' in session {session.id} {report.status.value}")
        return self._event(
            session,
            EventType.AGENT_STATUS_CHANGED,
            agent,
            previous=previous.value,
            detail=report.detail,
        )

    def _evaluate(self, session: TaskSession, events: list[SessionEvent]) -> list[str]:
        """Decide the session if the policy allows; return agents to clean up."""
        if session.is_terminal:
            return []
        winner = self.policy.select(session)
        if winner is not None:
            return self._promote(session, winner, events)
        if not session.agents_with_status(*LIVE_AGENT_STATUSES):
            logger.warning(f"Session {session.id}: all agents failed, aborting")
            return self._abort(session, ALL_AGENTS_FAILED, events)
        return []

    def _promote(
        self, session: TaskSession, winner: AgentWorktree, events: list[SessionEvent]
    ) -> list[str]:
        winner.transition(AgentStatus.WINNER)
        events.append(self._event(session, EventType.WINNER_SELECTED, winner))
        for agent in session.agents:
            if agent is not winner and agent.status in LIVE_AGENT_STATUSES:
                agent.transition(AgentStatus.DISCARDED)
                events.append(self._event(session, EventType.AGENT_STATUS_CHANGED, agent))
        session.transition(TaskSessionState.COMPLETED, outcome=f"winner: {winner.agent_id}")
        events.append(
            self._event(session, EventType.SESSION_COMPLETED, winner=winner.agent_id)
        )
        logger.info(f"Session {session.id} completed, winner '{winner.agent_id}'")
        return [agent.agent_id for agent in session.agents if agent is not winner]

    def _abort(self, session: TaskSession, outcome: str, events: list[SessionEvent]) -> list[str]:
        for agent in session.agents:
            if agent.status in LIVE_AGENT_STATUSES:
                agent.transition(AgentStatus.DISCARDED)
                events.append(self._event(session, EventType.AGENT_STATUS_CHANGED, agent))
        session.transition(TaskSessionState.ABORTED, outcome=outcome)
        events.append(self._event(session, EventType.SESSION_ABORTED, outcome=outcome))
        logger.info(f"Session {session.id} aborted: {outcome}")
        return [agent.agent_id for agent in session.agents]

    # --- caller operations ---

    def get_session(self, session_id: str) -> TaskSession:
        """Return a snapshot of the session.

        Raises:
            SessionNotFound: unknown session.
        """
        with self._registry_lock:
            handle = self._sessions.get(session_id)
        if handle is None:
            return self.store.load(session_id)
        with handle.lock:
            return handle.session.model_copy(deep=True)

    def list_sessions(
        self,
        state: TaskSessionState | None = None,
        repo_id: str | None = None,
    ) -> list[TaskSession]:
        return self.store.list(state=state, repo_id=repo_id)

    def get_events(self, session_id: str) -> list[SessionEvent]:
        self.get_session(session_id)
        return self.store.get_events(session_id)

    def abort_session(self, session_id: str) -> TaskSession:
        """Abort the session and clean up every agent.

        Idempotent for an already aborted session.

        Raises:
            SessionNotFound: unknown session.
            SessionClosedError: the session already completed.
        """
        handle = self._handle(session_id)
        with handle.lock:
            session = handle.session
            if session.state == TaskSessionState.COMPLETED:
                raise SessionClosedError(f"Session {session_id} already completed")
            if session.state == TaskSessionState.ACTIVE:
                session = session.model_copy(deep=True)
                events: list[SessionEvent] = []
                cleanup = self._abort(session, ABORTED_BY_OPERATOR, events)
                self._commit(handle, session, events, cleanup)
            return session.model_copy(deep=True)

    def choose_winner(self, session_id: str, agent_id: str) -> TaskSession:
        """Promote a finished agent chosen by an operator.

        Raises:
            SessionNotFound: unknown session.
            AgentNotFound: agent not in the session.
            SessionClosedError: the session is no longer active.
            InvalidTransition: the agent is not ``finished``.
        """
        handle = self._handle(session_id)
        with handle.lock:
            # Pending reports may already have decided the session
            self._drain(handle)
            if handle.session.is_terminal:
                raise SessionClosedError(
                    f"Session {session_id} is {handle.session.state.value}"
                )
            session = handle.session.model_copy(deep=True)
            agent = session.get_agent(agent_id)
            if agent.status != AgentStatus.FINISHED:
                raise InvalidTransition("agent", agent.status.value, AgentStatus.WINNER.value)
            events: list[SessionEvent] = []
            cleanup = self._promote(session, agent, events)
            self._commit(handle, session, events, cleanup)
            return session.model_copy(deep=True)

    def wait(self, session_id: str, timeout: float | None = None) -> TaskSession:
        """Block until the session is terminal or waits for an operator choice."""
        handle = self._handle(session_id)
        deadline = None if timeout is None else time.monotonic() + timeout
        with handle.changed:
            while not (handle.session.is_terminal or handle.session.awaiting_choice):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                handle.changed.wait(remaining)
            return handle.session.model_copy(deep=True)

    def wait_for_cleanup(self, session_id: str, timeout: float | None = None) -> bool:
        """Block until scheduled cleanup of the session finished. True if it did."""
        handle = self._handle(session_id)
        with handle.lock:
            futures = list(handle.cleanup_futures)
        _, pending = wait_futures(futures, timeout=timeout)
        return not pending

    # --- cleanup ---

    def _schedule_cleanup(self, handle: _SessionHandle, agent_ids: Iterable[str]) -> list[Future]:
        """Claim and submit cleanup jobs; agents that cannot be submitted are flagged."""
        scheduled: list[Future] = []
        refused: list[str] = []
        with handle.lock:
            session = handle.session
            keep_branch = session.cleanup_mode == CleanupMode.KEEP_BRANCHES
            for agent_id in agent_ids:
                agent = session.get_agent(agent_id)
                if agent.is_cleaned or agent_id in handle.cleanup_claims:
                    continue
                try:
                    future = self._cleanup_pool.submit(
                        self._cleanup_agent,
                        handle,
                        agent_id,
                        agent.worktree_path,
                        agent.branch_name,
                        keep_branch,
                    )
                except RuntimeError as e:
                    # Pool already shut down
                    logger.error(
                        f"Cannot schedule cleanup of agent '{agent_id}' "
                        f"in session {session.id}: {e}"
                    )
                    refused.append(agent_id)
                    continue
                handle.cleanup_claims.add(agent_id)
                handle.cleanup_futures.append(future)
                scheduled.append(future)

            if refused:
                flagged = handle.session.model_copy(deep=True)
                events: list[SessionEvent] = []
                for agent_id in refused:
                    agent = flagged.get_agent(agent_id)
                    agent.cleanup_pending = True
                    events.append(
                        self._event(
                            flagged, EventType.CLEANUP_FAILED, agent, error="cleanup not scheduled"
                        )
                    )
                self.store.save(flagged, events)
                handle.session = flagged
        return scheduled

    def _cleanup_agent(
        self,
        handle: _SessionHandle,
        agent_id: str,
        worktree_path: str,
        branch_name: str,
        keep_branch: bool,
    ) -> bool:
        repo_id = handle.session.repo_id
        error: Exception | None = None
        try:
            with handle.lock:
                runner = handle.runners.get(agent_id)
            if runner is not None:
                # Stop the agent before its worktree disappears
                runner.cancel()
            call_with_retry(
                lambda: self.worktrees.remove(
                    repo_id, worktree_path, branch_name, keep_branch=keep_branch, force=True
                ),
                self.cleanup_retry,
                lambda e: isinstance(e, (VCSError, OSError)),
                description=f"Cleanup of agent '{agent_id}'",
            )
        except (VCSError, OSError) as e:
            error = e
        except Exception as e:
            logger.exception(f"Unexpected error cleaning up agent '{agent_id}'")
            error = e

        with handle.lock:
            handle.cleanup_claims.discard(agent_id)
            session = handle.session.model_copy(deep=True)
            agent = session.get_agent(agent_id)
            if error is None:
                agent.cleaned_at = utc_now()
                agent.cleanup_pending = False
                event = self._event(
                    session, EventType.CLEANUP_SUCCEEDED, agent, keep_branch=keep_branch
                )
            else:
                agent.cleanup_pending = True
                logger.error(
                    f"Cleanup of agent '{agent_id}' in session {session.id} failed "
                    f"after {self.cleanup_retry.max_attempts} attempts: {error}"
                )
                event = self._event(session, EventType.CLEANUP_FAILED, agent, error=str(error))
            self._commit(handle, session, [event])
        return error is None

    def retry_cleanup(self, session_id: str, timeout: float | None = None) -> TaskSession:
        """Re-run cleanup for agents flagged ``cleanup_pending`` and wait for it."""
        handle = self._handle(session_id)
        with handle.lock:
            targets = [a.agent_id for a in handle.session.agents if a.cleanup_pending]
        if targets:
            logger.info(f"Retrying cleanup of {targets} in session {session_id}")
            wait_futures(self._schedule_cleanup(handle, targets), timeout=timeout)
        return self.get_session(session_id)

    def purge_session(self, session_id: str) -> None:
        """Remove the winner's worktree (keeping its branch) and forget the session.

        Raises:
            SessionNotFound: unknown session.
            ValueError: the session is active or cleanup is still pending.
            VCSError: removing the winner's worktree failed.
        """
        handle = self._handle(session_id)
        with handle.lock:
            session = handle.session
            if not session.is_terminal:
                raise ValueError(f"Session {session_id} is still active")
            unfinished = [
                a.agent_id
                for a in session.agents
                if a.status != AgentStatus.WINNER
                and (not a.is_cleaned or a.agent_id in handle.cleanup_claims)
            ]
            if unfinished:
                raise ValueError(
                    f"Session {session_id} has cleanup pending for {unfinished}; "
                    f"run cleanup first"
                )
            winner = session.winner
            repo_id = session.repo_id

        if winner is not None and not winner.is_cleaned:
            self.worktrees.remove(
                repo_id, winner.worktree_path, winner.branch_name, keep_branch=True, force=True
            )
        self.store.delete(session_id)
        with self._registry_lock:
            self._sessions.pop(session_id, None)
        logger.info(f"Purged session {session_id}")

    # --- recovery ---

    def recover(self, repo_id: str | None = None) -> list[TaskSession]:
        """Bring persisted sessions back to a consistent state after a restart.

        Active sessions whose running agents cannot all be reattached are
        aborted; active sessions with only terminal agents are re-evaluated.
        Terminal sessions get outstanding cleanup rescheduled, and stale
        worktree directories are pruned once per repository.
        """
        recovered: list[TaskSession] = []
        repos: set[str] = set()

        for stored in self.store.list(repo_id=repo_id):
            repos.add(stored.repo_id)
            with self._registry_lock:
                if stored.id in self._sessions:
                    continue
            handle = self._register(stored)

            if stored.is_terminal:
                outstanding = [
                    a.agent_id
                    for a in stored.agents
                    if a.status != AgentStatus.WINNER and not a.is_cleaned
                ]
                if outstanding:
                    logger.info(f"Rescheduling cleanup of {outstanding} in session {stored.id}")
                    self._schedule_cleanup(handle, outstanding)
                continue

            recovered.append(self._recover_active(handle))

        for repo in sorted(repos):
            self._prune_repo(repo)
        return recovered

    def _recover_active(self, handle: _SessionHandle) -> TaskSession:
        running = handle.session.agents_with_status(AgentStatus.RUNNING)
        processes: dict[str, AgentProcess] = {}
        if self.launcher is not None:
            for agent in running:
                process = self.launcher.reattach(
                    agent.model_copy(), handle.session.model_copy(deep=True)
                )
                if process is None or not process.is_alive():
                    break
                processes[agent.agent_id] = process

        with handle.lock:
            session = handle.session.model_copy(deep=True)
            events = [self._event(session, EventType.SESSION_RECOVERED, running=len(running))]
            cleanup: list[str] = []
            if running and len(processes) < len(running):
                logger.warning(
                    f"Session {session.id}: {len(running) - len(processes)} running agents "
                    f"could not be reattached, aborting"
                )
                cleanup = self._abort(session, RECOVERED_AFTER_RESTART, events)
            elif not running:
                cleanup = self._evaluate(session, events)
            self._commit(handle, session, events, cleanup)

        if session.is_terminal:
            for process in processes.values():
                process.cancel()
        elif processes:
            self._start_runners(handle, running, processes)
        logger.info(f"Recovered session {session.id} as {session.state.value}")
        return self.get_session(session.id)

    def _prune_repo(self, repo_id: str) -> None:
        keep = {
            agent.worktree_path
            for session in self.store.list(repo_id=repo_id)
            for agent in session.agents
            if not agent.is_cleaned
        }
        try:
            self.worktrees.prune_stale(repo_id, keep=keep)
        except VCSError as e:
            logger.warning(f"Pruning stale worktrees in {repo_id} failed: {e}")

    # --- lifecycle ---

    def shutdown(self, wait: bool = True) -> None:
        """Cancel every runner and stop the worker pools.

        With ``wait`` the call returns once every scheduled cleanup finished.
        Cleanup requested after the pools stopped is flagged ``cleanup_pending``.
        """
        self._closed = True
        with self._registry_lock:
            handles = list(self._sessions.values())
        for handle in handles:
            with handle.lock:
                runners = list(handle.runners.values())
            for runner in runners:
                runner.cancel()
        self._provision_pool.shutdown(wait=wait)
        self._cleanup_pool.shutdown(wait=wait)
