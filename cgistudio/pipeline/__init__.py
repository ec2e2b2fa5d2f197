"""
CGI generation pipeline

  Prompt enhancement (Gemini) → Image composition (Gemini image)
  → [Video direction (Gemini) → Kling video → Kling sound]   (video projects)

Projects are persisted state machines; each run is a cancellable asyncio
task that records its metered cost once, when it ends.
"""

from .orchestrator import ProjectPipeline, RunRegistry
from .routes import project_router
from .models import ContentType, ProjectStatus

__all__ = [
    "ProjectPipeline",
    "RunRegistry",
    "project_router",
    "ContentType",
    "ProjectStatus",
]
