"""
Pydantic models and enums for the CGI generation pipeline.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, model_validator


# ── Project Status ───────────────────────────────────────────────────────────

class ProjectStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    ENHANCING_PROMPT = "enhancing_prompt"
    GENERATING_IMAGE = "generating_image"
    GENERATING_VIDEO = "generating_video"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {ProjectStatus.COMPLETED, ProjectStatus.FAILED}
ACTIVE_STATUSES = {
    ProjectStatus.PROCESSING,
    ProjectStatus.ENHANCING_PROMPT,
    ProjectStatus.GENERATING_IMAGE,
    ProjectStatus.GENERATING_VIDEO,
}


class ContentType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


# Credits charged per project at creation time
CREDIT_COST = {
    ContentType.IMAGE: 1,
    ContentType.VIDEO: 5,
}

ALLOWED_VIDEO_DURATIONS = (5, 10)


# ── Stored records ───────────────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    user_id: str
    title: str = ""
    description: str = ""

    product_image_url: str
    scene_image_url: Optional[str] = None
    scene_video_url: Optional[str] = None
    content_type: ContentType = ContentType.IMAGE
    video_duration_seconds: int = 5
    include_audio: bool = False

    status: ProjectStatus = ProjectStatus.PENDING
    progress: int = 0
    enhanced_prompt: Optional[str] = None
    error_message: Optional[str] = None

    output_image_url: Optional[str] = None
    output_video_url: Optional[str] = None

    credits_used: int = 0
    actual_cost: int = 0  # millicents

    kling_video_task_id: Optional[str] = None
    kling_sound_task_id: Optional[str] = None
    run_id: Optional[str] = None

    resolution: str = "1024x1024"
    quality: str = "high"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def scene_ref(self) -> str:
        return self.scene_image_url or self.scene_video_url or ""

    @property
    def is_video(self) -> bool:
        return self.content_type == ContentType.VIDEO


class User(BaseModel):
    id: str
    email: Optional[str] = None
    credits: int = 0


# ── API Request Models ───────────────────────────────────────────────────────

class ProjectCreateRequest(BaseModel):
    """Create a project and start its generation run."""
    user_id: str
    title: str = ""
    description: str = Field("", description="Free-text direction, any language")
    product_image_url: str
    scene_image_url: Optional[str] = None
    scene_video_url: Optional[str] = None
    content_type: ContentType = ContentType.IMAGE
    video_duration_seconds: int = 5
    include_audio: bool = False
    resolution: str = "1024x1024"
    quality: str = "high"

    @model_validator(mode="after")
    def _check_inputs(self):
        if bool(self.scene_image_url) == bool(self.scene_video_url):
            raise ValueError("Provide exactly one of scene_image_url or scene_video_url")
        if self.video_duration_seconds not in ALLOWED_VIDEO_DURATIONS:
            raise ValueError(f"video_duration_seconds must be one of {ALLOWED_VIDEO_DURATIONS}")
        return self


class ProjectResponse(BaseModel):
    id: str
    status: ProjectStatus
    progress: int = 0
    content_type: ContentType
    enhanced_prompt: Optional[str] = None
    output_image_url: Optional[str] = None
    output_video_url: Optional[str] = None
    error_message: Optional[str] = None
    credits_used: int = 0
    actual_cost: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_project(cls, project: Project) -> "ProjectResponse":
        return cls(**project.model_dump(include=set(cls.model_fields)))


# ── Stage payloads ───────────────────────────────────────────────────────────

class MediaPayload(BaseModel):
    """Raw bytes of a resolved media reference."""
    data: bytes
    mime_type: str

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")


class ComposedImage(BaseModel):
    image_bytes: bytes
    mime_type: str = "image/png"


class VideoResult(BaseModel):
    video_url: str
    task_id: str


class VideoDirection(BaseModel):
    """Video-specific prompt derived from the composed image."""
    prompt: str
    audio_prompt: Optional[str] = None
    camera_movements: str = ""
    cinematic_direction: str = ""
    from_fallback: bool = False
