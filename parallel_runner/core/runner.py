"""Supervision of external agent processes.

An agent is an opaque worker bound to one worktree. It reports status
transitions through a callback; the ``AgentRunner`` wrapping it forwards
those reports to the orchestrator, enforces the optional timeout, and stops
forwarding after the first terminal report.
"""

import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable
from typing import Protocol

from parallel_runner.core.models import AgentReport, AgentStatus, AgentWorktree, TaskSession
from parallel_runner.core.utils import truncate_output

logger = logging.getLogger(__name__)

ReportCallback = Callable[[AgentReport], None]

# Statuses an agent process reports about itself
_RUNNER_TERMINAL = frozenset({AgentStatus.FINISHED, AgentStatus.ERROR})


class AgentFailure(Exception):
    """An agent could not be started or failed outside its own reporting."""

    def __init__(self, agent_id: str, reason: str):
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Agent '{agent_id}' failed: {reason}")


class AgentProcess(Protocol):
    """Protocol for an external agent attached to one worktree."""

    def start(
        self,
        worktree_path: str,
        branch_name: str,
        task_description: str,
        on_report: ReportCallback,
    ) -> None:
        """Begin work without blocking; report transitions via ``on_report``.

        Raises:
            AgentFailure: the agent could not be started.
        """
        ...

    def cancel(self) -> None:
        """Stop the agent. Safe to call more than once."""
        ...

    def is_alive(self) -> bool:
        ...


class AgentLauncher(Protocol):
    """Protocol for creating agent processes for a session's agents."""

    def launch(self, agent: AgentWorktree, session: TaskSession) -> AgentProcess:
        ...

    def reattach(self, agent: AgentWorktree, session: TaskSession) -> AgentProcess | None:
        """Reconnect to an agent that was running before a restart.

        Returns None when the agent cannot be reattached.
        """
        ...


class SubprocessAgent:
    """Run a shell command inside the worktree as the agent.

    Exit code 0 reports ``finished``; any other exit code reports ``error``
    with the tail of stderr as detail.
    """

    CANCEL_GRACE_SECONDS = 5.0

    def __init__(self, agent_id: str, command: str, env: dict[str, str] | None = None):
        self.agent_id = agent_id
        self.command = command
        self.env = env or {}
        self._proc: subprocess.Popen | None = None
        self._waiter: threading.Thread | None = None
        self._cancelled = threading.Event()

    def start(
        self,
        worktree_path: str,
        branch_name: str,
        task_description: str,
        on_report: ReportCallback,
    ) -> None:
        env = os.environ.copy()
        env.update(self.env)
        env.update(
            {
                "PARALLEL_RUNNER_TASK": task_description,
                "PARALLEL_RUNNER_BRANCH": branch_name,
                "PARALLEL_RUNNER_WORKTREE": str(worktree_path),
                "PARALLEL_RUNNER_AGENT_ID": self.agent_id,
            }
        )
        try:
            self._proc = subprocess.Popen(
                self.command,
                shell=True,
                cwd=worktree_path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise AgentFailure(self.agent_id, f"could not start '{self.command}': {e}")

        self._waiter = threading.Thread(
            target=self._wait,
            args=(self._proc, on_report),
            name=f"agent-{self.agent_id}",
            daemon=True,
        )
        self._waiter.start()

    def _wait(self, proc: subprocess.Popen, on_report: ReportCallback) -> None:
        _, stderr = proc.communicate()
        if self._cancelled.is_set():
            return
        returncode = proc.returncode
        if returncode == 0:
            on_report(AgentReport(agent_id=self.agent_id, status=AgentStatus.FINISHED))
        else:
            detail = f"exited with code {returncode}"
            if stderr and stderr.strip():
                detail += f": {truncate_output(stderr.strip(), 500)}"
            on_report(
                AgentReport(agent_id=self.agent_id, status=AgentStatus.ERROR, detail=detail)
            )

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass  # already exited

    def cancel(self) -> None:
        self._cancelled.set()
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.CANCEL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(
                f"Agent '{self.agent_id}' ignored SIGTERM for "
                f"{self.CANCEL_GRACE_SECONDS}s, killing"
            )
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None


class SubprocessAgentLauncher:
    """Launch every agent as ``command`` run in its worktree."""

    def __init__(self, command: str, env: dict[str, str] | None = None):
        if not command or not command.strip():
            raise ValueError("Agent command must not be empty")
        self.command = command
        self.env = env

    def launch(self, agent: AgentWorktree, session: TaskSession) -> AgentProcess:
        return SubprocessAgent(agent.agent_id, self.command, self.env)

    def reattach(self, agent: AgentWorktree, session: TaskSession) -> AgentProcess | None:
        # Children of a dead process cannot be adopted
        return None


class AgentRunner:
    """Supervise one agent process and forward its reports.

    Reports are forwarded in the order the process delivers them. The first
    ``finished`` or ``error`` report (from the process, a start failure or
    the timeout watchdog) is the last one forwarded.
    """

    def __init__(
        self,
        agent_id: str,
        process: AgentProcess,
        on_report: ReportCallback,
        timeout: float | None = None,
    ):
        self.agent_id = agent_id
        self.process = process
        self.timeout = timeout
        self._on_report = on_report
        self._lock = threading.Lock()
        self._terminal = False
        self._cancelled = False
        self._timer: threading.Timer | None = None

    def start(self, worktree_path: str, branch_name: str, task_description: str) -> None:
        """Start the process and the timeout watchdog. Never raises."""
        if self._cancelled:
            return
        if self.timeout:
            self._timer = threading.Timer(self.timeout, self._on_timeout)
            self._timer.daemon = True
            self._timer.start()
        try:
            self.process.start(worktree_path, branch_name, task_description, self.forward)
        except AgentFailure as e:
            logger.warning(f"Agent '{self.agent_id}' failed to start: {e.reason}")
            self.forward(
                AgentReport(agent_id=self.agent_id, status=AgentStatus.ERROR, detail=e.reason)
            )
        except Exception as e:
            logger.warning(f"Agent '{self.agent_id}' crashed on start: {e}")
            self.forward(
                AgentReport(agent_id=self.agent_id, status=AgentStatus.ERROR, detail=str(e))
            )
            return
        if self._cancelled:
            # cancel() raced with start()
            self._cancel_process()

    def forward(self, report: AgentReport) -> None:
        """Pass a report on unless the runner already reported a terminal status."""
        if report.agent_id != self.agent_id:
            report = report.model_copy(update={"agent_id": self.agent_id})
        with self._lock:
            if self._terminal or self._cancelled:
                logger.debug(
                    f"Dropping report {report.status.value} from agent '{self.agent_id}' "
                    f"after it stopped"
                )
                return
            if report.status in _RUNNER_TERMINAL:
                self._terminal = True
                if self._timer is not None:
                    self._timer.cancel()
        # Delivered outside the runner lock; the receiver takes its own locks
        self._on_report(report)

    def _on_timeout(self) -> None:
        self.forward(
            AgentReport(
                agent_id=self.agent_id,
                status=AgentStatus.ERROR,
                detail=f"timed out after {self.timeout:g}s",
            )
        )
        self._cancel_process()

    def _cancel_process(self) -> None:
        try:
            self.process.cancel()
        except Exception as e:
            logger.warning(f"Cancelling agent '{self.agent_id}' failed: {e}")

    def cancel(self) -> None:
        """Stop the watchdog and the process; later reports are dropped."""
        with self._lock:
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()
        self._cancel_process()
