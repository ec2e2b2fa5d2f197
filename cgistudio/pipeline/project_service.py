"""
Project lifecycle service.

  - Create (credit gate: image = 1 credit, video = 5), then start the run
  - Get / list (owner only)
  - Resume a failed or orphaned run
  - Cancel a running run
  - Delete (cancels first)

Credits are deducted at creation and are not refunded if the run fails.
"""

import asyncio
import logging
from uuid import uuid4

from .. import metrics
from .models import CREDIT_COST, Project, ProjectCreateRequest, ProjectResponse, ProjectStatus
from .orchestrator import ProjectPipeline
from .project_store import ProjectStore

logger = logging.getLogger(__name__)


async def _owned_project(store: ProjectStore, project_id: str, user_id: str) -> Project:
    project = await store.get_project(project_id)
    if project is None:
        raise LookupError("Project not found")
    if project.user_id != user_id:
        raise PermissionError("Not your project")
    return project


# ═════════════════════════════════════════════════════════════════════════════
# A. Create Project (credit gate)
# ═════════════════════════════════════════════════════════════════════════════

async def create_project(
    store: ProjectStore,
    pipeline: ProjectPipeline,
    request: ProjectCreateRequest,
) -> ProjectResponse:
    """
    POST /projects

    1. Check the user can afford the content type
    2. Create the project in `pending` with credits_used fixed
    3. Deduct credits
    4. Start the run (returns immediately; the run is a background task)
    """
    user = await store.get_user(request.user_id)
    if user is None:
        raise LookupError("User not found")

    cost = CREDIT_COST[request.content_type]
    if user.credits < cost:
        raise ValueError(
            f"Insufficient credits. A {request.content_type.value} project needs {cost} credit(s), "
            f"you have {user.credits}."
        )

    project = Project(
        id=str(uuid4()),
        user_id=request.user_id,
        title=request.title or (request.description[:60] if request.description else "Untitled project"),
        description=request.description,
        product_image_url=request.product_image_url,
        scene_image_url=request.scene_image_url,
        scene_video_url=request.scene_video_url,
        content_type=request.content_type,
        video_duration_seconds=request.video_duration_seconds,
        include_audio=request.include_audio,
        resolution=request.resolution,
        quality=request.quality,
        status=ProjectStatus.PENDING,
        credits_used=cost,
    )
    project = await store.create_project(project)
    await store.update_user_credits(user.id, user.credits - cost)
    metrics.inc_counter("projects.created")
    logger.info(f"[{project.id}] Created {project.content_type.value} project for {user.id} ({cost} credits)")

    await pipeline.start(project.id)

    current = await store.get_project(project.id) or project
    return ProjectResponse.from_project(current)


# ═════════════════════════════════════════════════════════════════════════════
# B. Read
# ═════════════════════════════════════════════════════════════════════════════

async def get_project(store: ProjectStore, project_id: str, user_id: str) -> ProjectResponse:
    return ProjectResponse.from_project(await _owned_project(store, project_id, user_id))


async def list_projects(store: ProjectStore, user_id: str) -> list[ProjectResponse]:
    return [ProjectResponse.from_project(p) for p in await store.list_user_projects(user_id)]


# ═════════════════════════════════════════════════════════════════════════════
# C. Run control
# ═════════════════════════════════════════════════════════════════════════════

async def resume_project(
    store: ProjectStore,
    pipeline: ProjectPipeline,
    project_id: str,
    user_id: str,
) -> ProjectResponse:
    await _owned_project(store, project_id, user_id)
    await pipeline.resume(project_id)
    return ProjectResponse.from_project(await store.get_project(project_id))


async def cancel_project(
    store: ProjectStore,
    pipeline: ProjectPipeline,
    project_id: str,
    user_id: str,
) -> bool:
    await _owned_project(store, project_id, user_id)
    return pipeline.cancel(project_id)


async def delete_project(
    store: ProjectStore,
    pipeline: ProjectPipeline,
    project_id: str,
    user_id: str,
) -> None:
    await _owned_project(store, project_id, user_id)
    task = pipeline.registry.get(project_id)
    if pipeline.cancel(project_id) and task is not None:
        # let the run record its cancellation before the row goes away
        await asyncio.gather(task, return_exceptions=True)
    await store.delete_project(project_id)
    logger.info(f"[{project_id}] Deleted")
