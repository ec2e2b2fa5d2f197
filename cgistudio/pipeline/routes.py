"""
FastAPI routes for CGI projects.

  POST   /projects                 — Create project (1 credit image, 5 video) and start the run
  GET    /projects?user_id=        — List user's projects
  GET    /projects/{id}?user_id=   — Poll status / results
  POST   /projects/{id}/resume     — Resume a failed or orphaned run
  POST   /projects/{id}/cancel     — Cancel the active run
  DELETE /projects/{id}?user_id=   — Delete (cancels first)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..errors import RunConflictError
from .models import ProjectCreateRequest, ProjectResponse
from .orchestrator import ProjectPipeline
from .project_store import ProjectStore
from . import project_service

logger = logging.getLogger(__name__)

project_router = APIRouter(prefix="/projects", tags=["projects"])


def get_store(request: Request) -> ProjectStore:
    return request.app.state.store


def get_pipeline(request: Request) -> ProjectPipeline:
    return request.app.state.pipeline


@project_router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    body: ProjectCreateRequest,
    store: ProjectStore = Depends(get_store),
    pipeline: ProjectPipeline = Depends(get_pipeline),
):
    """Create a project, deduct credits and start generation in the background."""
    try:
        return await project_service.create_project(store, pipeline, body)
    except ValueError as e:
        raise HTTPException(status_code=402, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RunConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Project creation failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@project_router.get("", response_model=list[ProjectResponse])
async def list_projects(
    user_id: str = Query(...),
    store: ProjectStore = Depends(get_store),
):
    try:
        return await project_service.list_projects(store, user_id)
    except Exception as e:
        logger.error(f"List projects failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@project_router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    user_id: str = Query(...),
    store: ProjectStore = Depends(get_store),
):
    """Status, progress and outputs. This is how callers learn a run failed."""
    try:
        return await project_service.get_project(store, project_id, user_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except Exception as e:
        logger.error(f"Get project failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@project_router.post("/{project_id}/resume", response_model=ProjectResponse)
async def resume_project(
    project_id: str,
    user_id: str = Query(...),
    store: ProjectStore = Depends(get_store),
    pipeline: ProjectPipeline = Depends(get_pipeline),
):
    try:
        return await project_service.resume_project(store, pipeline, project_id, user_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except RunConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Resume failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@project_router.post("/{project_id}/cancel")
async def cancel_project(
    project_id: str,
    user_id: str = Query(...),
    store: ProjectStore = Depends(get_store),
    pipeline: ProjectPipeline = Depends(get_pipeline),
):
    try:
        cancelled = await project_service.cancel_project(store, pipeline, project_id, user_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    if not cancelled:
        raise HTTPException(status_code=409, detail="No active run for this project")
    return {"status": "cancelling", "project_id": project_id}


@project_router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: str,
    user_id: str = Query(...),
    store: ProjectStore = Depends(get_store),
    pipeline: ProjectPipeline = Depends(get_pipeline),
):
    try:
        await project_service.delete_project(store, pipeline, project_id, user_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
