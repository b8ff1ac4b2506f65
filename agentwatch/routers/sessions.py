"""API router for tracked sessions."""
from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, HTTPException, Query, Request

from agentwatch import config
from agentwatch.discovery import discover_active_sessions, project_label
from agentwatch.models import (
    CreateSessionRequest,
    DiscoveredSessionInfo,
    FocusSessionRequest,
    SessionSummary,
)
from agentwatch.session_registry import DuplicateSessionError, SessionNotFoundError

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _get_registry(request: Request):
    registry = getattr(request.app.state, "session_registry", None)
    if not registry:
        raise HTTPException(status_code=503, detail="Session registry not initialized")
    return registry


@sessions_router.get("", response_model=list[SessionSummary])
def list_sessions(request: Request):
    """List every tracked session with its current activity."""
    registry = _get_registry(request)
    return [s.summary(focused=s.id == registry.focused_id) for s in registry.list_sessions()]


@sessions_router.get("/discover", response_model=list[DiscoveredSessionInfo])
def discover_sessions(
    request: Request,
    max_age: int = Query(config.DISCOVERY_MAX_AGE_SECONDS, ge=1, alias="maxAge"),
):
    """Recently written transcripts across all projects, tracked or not."""
    registry = _get_registry(request)
    tracked = {s.log_path for s in registry.list_sessions()}
    return [
        DiscoveredSessionInfo(
            sessionKey=log.session_key,
            logPath=str(log.path),
            projectDir=str(log.project_dir),
            projectLabel=project_label(log.project_dir),
            isSubagent=log.is_subagent,
            lastModified=log.modified_at,
            size=log.size,
            tracked=str(log.path) in tracked,
        )
        for log in discover_active_sessions(registry.projects_root, max_age_seconds=max_age)
    ]


@sessions_router.put("/focus")
def focus_session(request: Request, body: FocusSessionRequest):
    """Set (or clear, with a null id) the session that receives log resets."""
    registry = _get_registry(request)
    try:
        registry.focus_session(body.id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail=f"Session {body.id} not found")
    return {"focusedId": registry.focused_id}


@sessions_router.post("/resync")
def resync(request: Request):
    """Re-broadcast the full state of every session to connected clients."""
    registry = _get_registry(request)
    registry.send_full_state()
    return {"sessions": len(registry.list_sessions())}


@sessions_router.get("/{session_id}", response_model=SessionSummary)
def get_session(request: Request, session_id: int):
    registry = _get_registry(request)
    session = registry.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.summary(focused=session.id == registry.focused_id)


@sessions_router.post("", response_model=SessionSummary, status_code=201)
def create_session(request: Request, body: CreateSessionRequest):
    """Start tracking a transcript from its first byte."""
    registry = _get_registry(request)
    log_path = Path(body.logPath).expanduser()
    if log_path.suffix != ".jsonl":
        raise HTTPException(status_code=400, detail="logPath must point to a .jsonl transcript")
    try:
        session = registry.create_session(body.sessionKey, log_path, body.projectDir, pid=body.pid)
    except DuplicateSessionError:
        raise HTTPException(status_code=409, detail=f"{log_path} is already tracked")
    return session.summary(focused=False)


@sessions_router.delete("/{session_id}")
def close_session(request: Request, session_id: int):
    registry = _get_registry(request)
    if not registry.remove_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "closed", "id": session_id}
