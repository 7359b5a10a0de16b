"""
FastAPI routes for the script-to-video pipeline.

Project Endpoints:
  POST /projects                  — Create project (pay PROJECT_COST credits)
  GET  /projects                  — List user's projects
  GET  /projects/{id}             — Get project
  GET  /projects/{id}/scenes      — List scenes in order
  POST /projects/{id}/analyze     — Analyze the script into scenes
  POST /projects/{id}/generate    — Start every pending scene

Scene Endpoints:
  POST /scenes/{id}/generate      — Start one scene
  POST /scenes/{id}/status        — Single-shot status check (poll every 5s)
  POST /scenes/{id}/retry         — Retry a failed scene

The caller's account id arrives in X-User-Id, set by the authenticated
front end and trusted once the worker secret checks out.
"""

import logging

from fastapi import APIRouter, Header, HTTPException

from ..errors import (
    CREDENTIAL_ERRORS,
    InsufficientCredits,
    InvalidTransition,
    NotFound,
    PipelineError,
)
from .models import (
    AnalysisOutcome,
    PollOutcome,
    Project,
    ProjectCreateRequest,
    Scene,
    TaskHandle,
)
from .project_service import get_service

logger = logging.getLogger(__name__)


def _http_error(e: Exception, action: str) -> HTTPException:
    """Map a service failure onto an HTTP status, keeping the deepest message."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, InsufficientCredits):
        return HTTPException(status_code=402, detail=str(e))
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, InvalidTransition):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, CREDENTIAL_ERRORS):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, PipelineError):
        return HTTPException(status_code=502, detail=str(e))
    logger.error(f"{action} failed: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=str(e))


# ═════════════════════════════════════════════════════════════════════════════
# Project Router
# ═════════════════════════════════════════════════════════════════════════════

project_router = APIRouter(prefix="/projects", tags=["projects"])


@project_router.post("", response_model=Project)
async def create_project(request: ProjectCreateRequest, x_user_id: str = Header(...)):
    """
    Pay PROJECT_COST credits → create a draft project.

    Errors:
      - 402: Insufficient credits
    """
    try:
        return await get_service().create_project(x_user_id, request)
    except Exception as e:
        raise _http_error(e, "Project create")


@project_router.get("", response_model=list[Project])
async def list_projects(x_user_id: str = Header(...)):
    """List all projects for a user, newest first."""
    try:
        return get_service().list_projects(x_user_id)
    except Exception as e:
        raise _http_error(e, "List projects")


@project_router.get("/{project_id}", response_model=Project)
async def get_project(project_id: str, x_user_id: str = Header(...)):
    try:
        return get_service().get_project(project_id, x_user_id)
    except Exception as e:
        raise _http_error(e, "Get project")


@project_router.get("/{project_id}/scenes", response_model=list[Scene])
async def list_scenes(project_id: str, x_user_id: str = Header(...)):
    try:
        return get_service().list_scenes(project_id, x_user_id)
    except Exception as e:
        raise _http_error(e, "List scenes")


@project_router.post("/{project_id}/analyze", response_model=AnalysisOutcome)
async def analyze_project(project_id: str, x_user_id: str = Header(...)):
    """
    Analyze the script into 10-second scenes.

    Errors:
      - 409: Project is not draft / failed-before-analysis
      - 503: No usable AtlasCloud key
      - 502: Unparseable or empty analysis, or the result could not be saved
    """
    try:
        return await get_service().analyze_project(project_id, x_user_id)
    except Exception as e:
        raise _http_error(e, "Analyze")


@project_router.post("/{project_id}/generate")
async def generate_all(project_id: str, x_user_id: str = Header(...)):
    """Start every pending scene. Per-scene failures are listed in the response."""
    try:
        results = await get_service().generate_all(project_id, x_user_id)
        return {"project_id": project_id, "scenes": results}
    except Exception as e:
        raise _http_error(e, "Generate all")


# ═════════════════════════════════════════════════════════════════════════════
# Scene Router
# ═════════════════════════════════════════════════════════════════════════════

scene_router = APIRouter(prefix="/scenes", tags=["scenes"])


@scene_router.post("/{scene_id}/generate", response_model=TaskHandle)
async def generate_scene(scene_id: str, x_user_id: str = Header(...)):
    try:
        return await get_service().generate_scene(scene_id, x_user_id)
    except Exception as e:
        raise _http_error(e, "Generate scene")


@scene_router.post("/{scene_id}/status", response_model=PollOutcome)
async def check_scene(scene_id: str, x_user_id: str = Header(...)):
    """
    Single-shot render check. Clients re-invoke this every 5 seconds for
    scenes in `generating`.
    """
    try:
        return await get_service().check_scene(scene_id, x_user_id)
    except Exception as e:
        raise _http_error(e, "Check scene")


@scene_router.post("/{scene_id}/retry", response_model=TaskHandle)
async def retry_scene(scene_id: str, x_user_id: str = Header(...)):
    try:
        return await get_service().retry_scene(scene_id, x_user_id)
    except Exception as e:
        raise _http_error(e, "Retry scene")
