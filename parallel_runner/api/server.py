"""FastAPI surface of the task session orchestrator.

Endpoints:
- POST /api/sessions: create a session
- GET  /api/sessions: list sessions (``state`` and ``repo_id`` filters)
- GET  /api/sessions/{id}: get one session
- POST /api/sessions/{id}/abort: abort a session
- POST /api/sessions/{id}/reports: deliver agent status reports
- POST /api/sessions/{id}/winner: operator winner choice
- GET  /api/sessions/{id}/events: audit log

Orchestrator calls block on git and SQLite, so handlers run them in the
threadpool.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from parallel_runner import __version__
from parallel_runner.core.models import (
    AgentDescriptor,
    AgentNotFound,
    AgentReport,
    CleanupMode,
    InvalidTransition,
    TaskSessionState,
)
from parallel_runner.core.orchestrator import SessionClosedError, TaskSessionOrchestrator
from parallel_runner.core.state import SessionNotFound
from parallel_runner.core.worktree import VCSError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ========== API Models ==========


class SessionCreateRequest(BaseModel):
    """Request to create a new task session"""

    repo_path: str
    base_branch: str | None = None
    agent_count: int | None = None
    task_description: str = ""
    agents: list[AgentDescriptor] | None = None
    cleanup_mode: CleanupMode | None = None


class ReportRequest(BaseModel):
    """One or more agent reports, applied as a single batch"""

    reports: list[AgentReport] = Field(..., min_length=1)


class WinnerRequest(BaseModel):
    """Operator choice of the winning agent"""

    agent_id: str


async def _call(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run an orchestrator call in the threadpool, mapping errors to HTTP codes."""
    try:
        return await run_in_threadpool(fn, *args, **kwargs)
    except (SessionNotFound, AgentNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (SessionClosedError, InvalidTransition) as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except VCSError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def create_app(orchestrator: TaskSessionOrchestrator) -> FastAPI:
    """Build the API bound to ``orchestrator``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        orchestrator.shutdown()

    app = FastAPI(
        title="parallel-runner API",
        description="Run several coding agents on one task and keep the winner",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.post("/api/sessions", status_code=201)
    async def create_session(request: SessionCreateRequest) -> dict[str, Any]:
        """Provision worktrees and start a session."""
        session = await _call(
            orchestrator.create_session,
            request.repo_path,
            request.base_branch,
            request.agent_count,
            task_description=request.task_description,
            agents=request.agents,
            cleanup_mode=request.cleanup_mode,
        )
        return session.model_dump(mode="json")

    @app.get("/api/sessions")
    async def list_sessions(
        state: TaskSessionState | None = None,
        repo_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """List sessions ordered by creation time."""
        sessions = await _call(orchestrator.list_sessions, state=state, repo_id=repo_id)
        return [session.model_dump(mode="json") for session in sessions]

    @app.get("/api/sessions/{session_id}")
    async def get_session(session_id: str) -> dict[str, Any]:
        session = await _call(orchestrator.get_session, session_id)
        return session.model_dump(mode="json")

    @app.post("/api/sessions/{session_id}/abort")
    async def abort_session(session_id: str) -> dict[str, Any]:
        """Abort a session; repeating the call is harmless."""
        session = await _call(orchestrator.abort_session, session_id)
        return session.model_dump(mode="json")

    @app.post("/api/sessions/{session_id}/reports")
    async def post_reports(session_id: str, request: ReportRequest) -> dict[str, Any]:
        """Deliver status reports from external agents."""
        session = await _call(orchestrator.report, session_id, *request.reports)
        return session.model_dump(mode="json")

    @app.post("/api/sessions/{session_id}/winner")
    async def choose_winner(session_id: str, request: WinnerRequest) -> dict[str, Any]:
        session = await _call(orchestrator.choose_winner, session_id, request.agent_id)
        return session.model_dump(mode="json")

    @app.get("/api/sessions/{session_id}/events")
    async def get_events(session_id: str) -> list[dict[str, Any]]:
        events = await _call(orchestrator.get_events, session_id)
        return [event.model_dump(mode="json") for event in events]

    return app
