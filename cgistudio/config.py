"""
Service configuration.

Built once at process start and handed to every adapter, the storage layer
and the pipeline. Nothing in the package reads credentials from the
environment on its own.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _env(*names: str, default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


class Settings(BaseModel):
    # ── Credentials ──────────────────────────────────────────────────────────
    gemini_api_key: str = Field(default_factory=lambda: _env("GEMINI_API_KEY", "GOOGLE_API_KEY"))
    piapi_api_key: str = Field(default_factory=lambda: _env("PIAPI_API_KEY", "KLING_API_KEY"))
    supabase_url: str = Field(default_factory=lambda: _env("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"))
    supabase_service_role_key: str = Field(default_factory=lambda: _env("SUPABASE_SERVICE_ROLE_KEY"))

    # ── Artifact storage (Cloudflare R2) ─────────────────────────────────────
    r2_account_id: str = Field(default_factory=lambda: _env("R2_ACCOUNT_ID"))
    r2_access_key_id: str = Field(default_factory=lambda: _env("R2_ACCESS_KEY_ID"))
    r2_secret_access_key: str = Field(default_factory=lambda: _env("R2_SECRET_ACCESS_KEY"))
    r2_bucket_name: str = Field(default_factory=lambda: _env("R2_BUCKET_NAME", default="assets"))
    r2_public_url: str = Field(default_factory=lambda: _env("R2_PUBLIC_URL"))

    # Local uploads (product/scene images posted by the dashboard)
    upload_dir: str = Field(default_factory=lambda: _env("UPLOAD_DIR", "PRIVATE_OBJECT_DIR", default="/tmp/uploads"))
    # Absolute origin of this service, so locally stored artifacts get URLs
    # the video provider can fetch (e.g. https://studio.example.com)
    public_base_url: str = Field(default_factory=lambda: _env("PUBLIC_BASE_URL"))

    # ── Providers ────────────────────────────────────────────────────────────
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_text_model: str = Field(default_factory=lambda: _env("GEMINI_TEXT_MODEL", default="gemini-2.0-flash"))
    gemini_image_model: str = Field(
        default_factory=lambda: _env("GEMINI_IMAGE_MODEL", default="gemini-2.5-flash-image-preview")
    )
    piapi_api_base: str = "https://api.piapi.ai/api/v1"

    # ── Polling ──────────────────────────────────────────────────────────────
    video_poll_interval: float = Field(default_factory=lambda: _env_float("VIDEO_POLL_INTERVAL", 10.0))
    video_max_poll_attempts: int = Field(default_factory=lambda: _env_int("VIDEO_MAX_POLL_ATTEMPTS", 60))
    audio_poll_interval: float = Field(default_factory=lambda: _env_float("AUDIO_POLL_INTERVAL", 10.0))
    audio_max_poll_attempts: int = Field(default_factory=lambda: _env_int("AUDIO_MAX_POLL_ATTEMPTS", 30))
    max_consecutive_transient: int = Field(default_factory=lambda: _env_int("MAX_CONSECUTIVE_TRANSIENT", 10))

    http_timeout: float = 60.0
    port: int = Field(default_factory=lambda: _env_int("PORT", 8080))

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)

    @property
    def r2_configured(self) -> bool:
        return bool(self.r2_account_id and self.r2_access_key_id and self.r2_secret_access_key)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Load `.env` (if present) and build the settings object."""
    load_dotenv(env_file)
    return Settings()
