"""
Admin API Router

Session management and runtime configuration for the dashboard:
- GET    /api/sessions          resident sessions (no sizes)
- GET    /api/sessions/sizes    recursive sizes, computed on request
- GET    /api/sessions/stats    counts against the soft cap
- DELETE /api/sessions/{key}    manual removal
- GET    /api/config            current AppConfig
- PUT    /api/config            partial update, validated and persisted
- POST   /api/jobs              queue an admin job
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from .config import ConfigStore
from .errors import ConfigValidationError, InvalidTicketKeyError, SessionBusyError, SessionNotFoundError
from .models import AdminJob, ticket_key_for
from .orchestrator import SessionOrchestrator
from .worker import JobWorker

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logger = logging.getLogger("api")

# -----------------------------------------------------------------------------
# Router Setup
# -----------------------------------------------------------------------------
router = APIRouter(prefix="/api", tags=["Sessions"])


class ConfigUpdateRequest(BaseModel):
    """Fields left out (or null) keep their current value. Bounds are checked by ConfigStore."""
    bot_name: Optional[str] = Field(default=None)
    claude_model: Optional[str] = Field(default=None)
    max_sessions: Optional[int] = Field(default=None)
    prune_threshold_days: Optional[int] = Field(default=None)
    prune_interval_days: Optional[int] = Field(default=None)


def _get_orchestrator(request: Request) -> SessionOrchestrator:
    return request.app.state.orchestrator


def _get_config_store(request: Request) -> ConfigStore:
    return request.app.state.config_store


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------
@router.get("/sessions")
async def list_sessions(request: Request) -> Dict[str, Any]:
    sessions = _get_orchestrator(request).list_sessions()
    return {
        "sessions": [s.to_dict() for s in sessions],
        "count": len(sessions),
    }


@router.get("/sessions/sizes")
def get_session_sizes(request: Request) -> Dict[str, Any]:
    # Sync handler: runs in the threadpool so the tree walk stays off the event loop.
    sizes = _get_orchestrator(request).get_session_sizes()
    return {
        "sessions": [s.to_dict() for s in sizes],
        "total_size_bytes": sum(s.size_bytes + s.workspace_size_bytes for s in sizes),
    }


@router.get("/sessions/stats")
async def get_session_stats(request: Request) -> Dict[str, Any]:
    return _get_orchestrator(request).stats()


@router.delete("/sessions/{key}")
async def delete_session(key: str, request: Request) -> Dict[str, Any]:
    try:
        _get_orchestrator(request).delete_session(key)
    except InvalidTicketKeyError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=e.message)
    return {"deleted": key}


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
@router.get("/config")
async def get_config(request: Request) -> Dict[str, Any]:
    return _get_config_store(request).get().model_dump()


@router.put("/config")
async def update_config(body: ConfigUpdateRequest, request: Request) -> Dict[str, Any]:
    try:
        updated = _get_config_store(request).update(**body.model_dump(exclude_none=True))
    except ConfigValidationError as e:
        raise HTTPException(status_code=400, detail={"message": e.message, "errors": e.errors})
    return updated.model_dump()


# -----------------------------------------------------------------------------
# Admin Jobs
# -----------------------------------------------------------------------------
class AdminJobRequest(BaseModel):
    instruction: str = Field(..., min_length=1)
    triggered_by: str = Field(default="admin")
    jira_issue_key: Optional[str] = None
    jira_board_id: Optional[str] = None
    github_owner: Optional[str] = None
    github_repo: Optional[str] = None
    github_branch: Optional[str] = None
    github_pr_number: Optional[int] = None
    github_issue_number: Optional[int] = None


@router.post("/jobs", status_code=202)
async def submit_admin_job(body: AdminJobRequest, request: Request) -> Dict[str, Any]:
    job = AdminJob(**body.model_dump())
    try:
        key = ticket_key_for(job)
    except InvalidTicketKeyError as e:
        raise HTTPException(status_code=400, detail=e.message)
    worker: JobWorker = request.app.state.worker
    worker.submit(job)
    return {"queued": True, "ticket_key": key, "pending": worker.pending}
