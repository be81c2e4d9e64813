"""CLI entry point for parallel-runner.

Commands:
- parallel-runner init: Create config and state database for this repository
- parallel-runner create: Run several agents on a task and keep the winner
- parallel-runner status: Show one session and its agents
- parallel-runner list: List sessions of this repository
- parallel-runner abort: Abort an active session
- parallel-runner choose: Pick the winner of a session waiting for an operator
- parallel-runner cleanup: Retry failed worktree cleanup
- parallel-runner recover: Reconcile sessions left behind by a crashed process
- parallel-runner purge: Forget a finished session
- parallel-runner serve: Start the HTTP API
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from parallel_runner import __version__
from parallel_runner.core.config import (
    CONFIG_DIR,
    ConfigError,
    RunnerConfig,
    config_path,
    load_config,
    write_default_config,
)
from parallel_runner.core.models import (
    AgentDescriptor,
    AgentNotFound,
    AgentStatus,
    CleanupMode,
    InvalidTransition,
    TaskSession,
    TaskSessionState,
)
from parallel_runner.core.orchestrator import SessionClosedError, TaskSessionOrchestrator
from parallel_runner.core.runner import SubprocessAgentLauncher
from parallel_runner.core.state import SessionNotFound, SessionStore, StoreLockedError
from parallel_runner.core.worktree import VCSError, WorktreeManager

console = Console()

# Errors reported to the user as a one-line message
USER_ERRORS = (
    AgentNotFound,
    ConfigError,
    InvalidTransition,
    SessionClosedError,
    SessionNotFound,
    StoreLockedError,
    VCSError,
    ValueError,
)

STATUS_STYLES = {
    AgentStatus.RUNNING: "cyan",
    AgentStatus.FINISHED: "blue",
    AgentStatus.WINNER: "bold green",
    AgentStatus.DISCARDED: "dim",
    AgentStatus.ERROR: "red",
    TaskSessionState.ACTIVE: "cyan",
    TaskSessionState.COMPLETED: "green",
    TaskSessionState.ABORTED: "yellow",
}


def get_repo_path() -> Path:
    """Get the top level of the repository containing the current directory."""
    return Path(WorktreeManager().resolve_repo(Path.cwd()))


def _db_path(repo_path: Path) -> Path:
    return repo_path / CONFIG_DIR / "state.db"


def _open_store(repo_path: Path) -> SessionStore | None:
    db_path = _db_path(repo_path)
    if not db_path.exists():
        console.print(
            "[yellow]No parallel-runner database found. Run 'parallel-runner init' first.[/yellow]"
        )
        return None
    return SessionStore(db_path)


def _build_orchestrator(
    repo_path: Path, store: SessionStore, config: RunnerConfig | None = None
) -> TaskSessionOrchestrator:
    config = config or load_config(repo_path)
    launcher = SubprocessAgentLauncher(config.agent_command) if config.agent_command else None
    return TaskSessionOrchestrator(store, launcher=launcher, config=config)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/red] {error}")
    sys.exit(1)


def _styled(value: AgentStatus | TaskSessionState) -> str:
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value.value}[/{style}]"


def _render_session(session: TaskSession) -> None:
    lines = [
        f"[bold]State:[/bold] {_styled(session.state)}",
        f"[bold]Base:[/bold] {session.base_branch} @ {session.base_commit[:12]}",
        f"[bold]Cleanup:[/bold] {session.cleanup_mode.value}",
        f"[bold]Created:[/bold] {session.created_at:%Y-%m-%d %H:%M:%S} UTC",
    ]
    if session.task_description:
        lines.insert(0, f"[bold]Task:[/bold] {session.task_description}")
    if session.outcome:
        lines.append(f"[bold]Outcome:[/bold] {session.outcome}")
    console.print(Panel("\n".join(lines), title=session.id))

    table = Table(title="Agents")
    table.add_column("Agent", style="cyan")
    table.add_column("Status")
    table.add_column("Branch", style="green")
    table.add_column("Worktree")
    table.add_column("Notes", style="dim")
    for agent in session.agents:
        notes = []
        if agent.detail:
            notes.append(agent.detail)
        if agent.cleanup_pending:
            notes.append("[red]cleanup pending[/red]")
        elif agent.is_cleaned:
            notes.append("cleaned")
        table.add_row(
            agent.agent_id,
            _styled(agent.status),
            agent.branch_name,
            agent.worktree_path,
            "; ".join(notes),
        )
    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity",
)
def main(log_level: str) -> None:
    """parallel-runner - run several coding agents on one task.

    Every agent gets its own git worktree and branch. The first to finish
    (or the one you choose) wins; the rest are cleaned up.
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@main.command()
def init() -> None:
    """Initialize this repository for parallel-runner."""
    try:
        repo_path = get_repo_path()
    except VCSError as e:
        _fail(e)
        return

    if config_path(repo_path).exists():
        console.print("[yellow]Repository already initialized[/yellow]")
        return

    path = write_default_config(repo_path)
    SessionStore(_db_path(repo_path))
    console.print(
        Panel(
            "[green]Repository initialized![/green]\n\n"
            f"Created: {path.parent}\n"
            "- config.yaml: agent command, agent count, winner policy, cleanup mode\n"
            "- state.db: session database\n\n"
            "Set agent_command in config.yaml before running 'parallel-runner create'.",
            title="parallel-runner Initialized",
        )
    )


def _supervise(orchestrator: TaskSessionOrchestrator, session_id: str) -> TaskSession:
    """Wait for the session to end, prompting when an operator choice is needed."""
    try:
        while True:
            session = orchestrator.wait(session_id, timeout=0.5)
            if session.is_terminal:
                return session
            if session.awaiting_choice:
                finished = [a.agent_id for a in session.agents_with_status(AgentStatus.FINISHED)]
                _render_session(session)
                choice = click.prompt(
                    "Choose the winning agent", type=click.Choice(finished)
                )
                return orchestrator.choose_winner(session_id, choice)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted, aborting session...[/yellow]")
        return orchestrator.abort_session(session_id)


@main.command()
@click.argument("task")
@click.option("--agents", "-n", "agent_count", type=int, help="Number of agents (default: config)")
@click.option("--agent", "-a", "agent_ids", multiple=True, help="Explicit agent id (repeatable)")
@click.option("--base", "-b", "base_branch", help="Base branch (default: current branch)")
@click.option(
    "--cleanup",
    type=click.Choice([m.value for m in CleanupMode]),
    help="What to do with losing branches (default: config)",
)
def create(
    task: str,
    agent_count: int | None,
    agent_ids: tuple[str, ...],
    base_branch: str | None,
    cleanup: str | None,
) -> None:
    """Run agents on TASK in parallel worktrees and keep the winner.

    Example:
        parallel-runner create "Add retry to the HTTP client" -n 3
    """
    try:
        repo_path = get_repo_path()
        config = load_config(repo_path)
    except USER_ERRORS as e:
        _fail(e)
        return

    if not config.agent_command:
        _fail(ValueError(f"agent_command is not set in {config_path(repo_path)}"))
        return

    store = SessionStore(_db_path(repo_path))
    try:
        with store.ownership():
            orchestrator = _build_orchestrator(repo_path, store, config)
            try:
                session = orchestrator.create_session(
                    str(repo_path),
                    base_branch,
                    agent_count,
                    task_description=task,
                    agents=[AgentDescriptor(agent_id=a) for a in agent_ids] or None,
                    cleanup_mode=CleanupMode(cleanup) if cleanup else None,
                )
                console.print(
                    f"[bold]Started session[/bold] {session.id} "
                    f"with {len(session.agents)} agents on {session.base_branch}"
                )
                session = _supervise(orchestrator, session.id)
                orchestrator.wait_for_cleanup(session.id)
                _render_session(orchestrator.get_session(session.id))
            finally:
                orchestrator.shutdown()
    except USER_ERRORS as e:
        _fail(e)
        return

    if session.state != TaskSessionState.COMPLETED:
        sys.exit(1)


@main.command()
@click.argument("session_id")
@click.option("--events", is_flag=True, help="Also show the audit log")
def status(session_id: str, events: bool) -> None:
    """Show a session and its agents."""
    try:
        store = _open_store(get_repo_path())
        if store is None:
            return
        session = store.load(session_id)
    except USER_ERRORS as e:
        _fail(e)
        return

    _render_session(session)
    if events:
        table = Table(title="Events")
        table.add_column("Time", style="dim")
        table.add_column("Event", style="cyan")
        table.add_column("Agent")
        table.add_column("Status")
        for event in store.get_events(session_id):
            table.add_row(
                f"{event.timestamp:%H:%M:%S}",
                event.event_type.value,
                event.agent_id or "",
                event.status or "",
            )
        console.print(table)


@main.command("list")
@click.option(
    "--state",
    type=click.Choice([s.value for s in TaskSessionState]),
    help="Only sessions in this state",
)
def list_sessions(state: str | None) -> None:
    """List sessions of this repository."""
    try:
        repo_path = get_repo_path()
        store = _open_store(repo_path)
        if store is None:
            return
        sessions = store.list(
            state=TaskSessionState(state) if state else None, repo_id=str(repo_path)
        )
    except USER_ERRORS as e:
        _fail(e)
        return

    if not sessions:
        console.print("[dim]No sessions[/dim]")
        return

    table = Table(title="Task Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("State")
    table.add_column("Agents", justify="right")
    table.add_column("Winner", style="green")
    table.add_column("Created", style="dim")
    table.add_column("Task")
    for session in sessions:
        winner = session.winner
        table.add_row(
            session.id,
            _styled(session.state),
            str(len(session.agents)),
            winner.agent_id if winner else "",
            f"{session.created_at:%Y-%m-%d %H:%M}",
            session.task_description[:40],
        )
    console.print(table)


def _mutate(
    session_id: str, action: Callable[[TaskSessionOrchestrator], TaskSession]
) -> TaskSession:
    """Run one orchestrator mutation while owning the store."""
    repo_path = get_repo_path()
    store = SessionStore(_db_path(repo_path))
    with store.ownership():
        orchestrator = _build_orchestrator(repo_path, store)
        try:
            session = action(orchestrator)
            orchestrator.wait_for_cleanup(session_id)
            return orchestrator.get_session(session.id)
        finally:
            orchestrator.shutdown()


@main.command()
@click.argument("session_id")
def abort(session_id: str) -> None:
    """Abort an active session and clean up all its worktrees."""
    try:
        session = _mutate(session_id, lambda o: o.abort_session(session_id))
    except USER_ERRORS as e:
        _fail(e)
        return
    _render_session(session)


@main.command()
@click.argument("session_id")
@click.argument("agent_id")
def choose(session_id: str, agent_id: str) -> None:
    """Promote AGENT_ID as the winner of SESSION_ID."""
    try:
        session = _mutate(session_id, lambda o: o.choose_winner(session_id, agent_id))
    except USER_ERRORS as e:
        _fail(e)
        return
    _render_session(session)


@main.command()
@click.argument("session_id")
def cleanup(session_id: str) -> None:
    """Retry worktree cleanup that previously failed."""
    try:
        session = _mutate(session_id, lambda o: o.retry_cleanup(session_id))
    except USER_ERRORS as e:
        _fail(e)
        return

    pending = [a.agent_id for a in session.agents if a.cleanup_pending]
    if pending:
        console.print(f"[red]Cleanup still pending for:[/red] {', '.join(pending)}")
        sys.exit(1)
    console.print("[green]Cleanup complete[/green]")


@main.command()
def recover() -> None:
    """Reconcile sessions left active by a process that died."""
    try:
        repo_path = get_repo_path()
        store = SessionStore(_db_path(repo_path))
        with store.ownership():
            orchestrator = _build_orchestrator(repo_path, store)
            try:
                recovered = orchestrator.recover(str(repo_path))
                for session in store.list(repo_id=str(repo_path)):
                    orchestrator.wait_for_cleanup(session.id)
            finally:
                orchestrator.shutdown()
    except USER_ERRORS as e:
        _fail(e)
        return

    if not recovered:
        console.print("[dim]No active sessions to recover[/dim]")
        return
    for session in recovered:
        console.print(f"{session.id}: {_styled(session.state)} {session.outcome or ''}")


@main.command()
@click.argument("session_id")
def purge(session_id: str) -> None:
    """Remove the winner's worktree (branch kept) and forget the session."""
    try:
        repo_path = get_repo_path()
        store = SessionStore(_db_path(repo_path))
        with store.ownership():
            orchestrator = _build_orchestrator(repo_path, store)
            try:
                orchestrator.purge_session(session_id)
            finally:
                orchestrator.shutdown()
    except USER_ERRORS as e:
        _fail(e)
        return
    console.print(f"[green]Purged[/green] {session_id}")


@main.command()
@click.option("--host", default="127.0.0.1", help="Interface to bind")
@click.option("--port", default=8000, type=int, help="Port to listen on")
def serve(host: str, port: int) -> None:
    """Start the HTTP API for this repository."""
    try:
        import uvicorn
    except ImportError:
        _fail(RuntimeError("Install server extras: pip install 'parallel-runner[server]'"))
        return

    from parallel_runner.api.server import create_app

    try:
        repo_path = get_repo_path()
        store = SessionStore(_db_path(repo_path))
        with store.ownership():
            orchestrator = _build_orchestrator(repo_path, store)
            orchestrator.recover(str(repo_path))
            console.print(f"[bold]Serving[/bold] {repo_path} on http://{host}:{port}")
            uvicorn.run(create_app(orchestrator), host=host, port=port)
    except USER_ERRORS as e:
        _fail(e)


if __name__ == "__main__":
    main()
