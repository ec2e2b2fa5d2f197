"""
Media references in, artifacts out.

MediaResolver turns whatever the dashboard stored as an image reference
into bytes + MIME type:
  data:image/png;base64,...           inline
  https://cdn.example.com/a.jpg       fetched
  /api/files/uploads/a.jpg            read from UPLOAD_DIR
  a.jpg                               read from UPLOAD_DIR

Artifact stores keep generated images under:
  projects/{project_id}/{filename}
"""

import os
import base64
import asyncio
import logging
import mimetypes
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

from ..config import Settings
from ..errors import ConfigurationError, MediaResolutionError
from .models import MediaPayload

logger = logging.getLogger(__name__)

UPLOADS_URL_PREFIX = "/api/files/uploads/"


# ── Helpers ──────────────────────────────────────────────────────────────────

def is_remote(ref: str) -> bool:
    return ref.startswith("http://") or ref.startswith("https://")


def artifact_key(project_id: str, filename: str) -> str:
    return f"projects/{project_id}/{filename}"


def sniff_mime(data: bytes, fallback: str = "application/octet-stream") -> str:
    """Identify image bytes with Pillow when the name or headers don't say."""
    try:
        with Image.open(BytesIO(data)) as img:
            return Image.MIME.get(img.format or "", fallback)
    except (UnidentifiedImageError, OSError):
        return fallback


def _parse_data_url(ref: str) -> MediaPayload:
    try:
        header, payload = ref.split(",", 1)
        mime = header.split(":", 1)[1].split(";")[0] or "application/octet-stream"
        if ";base64" in header:
            data = base64.b64decode(payload)
        else:
            data = payload.encode()
    except (ValueError, IndexError) as e:
        raise MediaResolutionError(f"Malformed data URL: {ref[:60]}...") from e
    return MediaPayload(data=data, mime_type=mime)


# ── Resolver ─────────────────────────────────────────────────────────────────

class MediaResolver:
    def __init__(self, upload_dir: str, http: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self.upload_dir = upload_dir
        self._http = http or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._owns_http = http is None

    async def aclose(self):
        if self._owns_http:
            await self._http.aclose()

    async def resolve(self, ref: str) -> MediaPayload:
        """Resolve a media reference to bytes + MIME type."""
        if not ref:
            raise MediaResolutionError("Empty media reference")

        if ref.startswith("data:"):
            return _parse_data_url(ref)
        if is_remote(ref):
            return await self._fetch(ref)
        return self._read_upload(ref)

    async def _fetch(self, url: str) -> MediaPayload:
        try:
            resp = await self._http.get(url)
        except httpx.HTTPError as e:
            raise MediaResolutionError(f"Could not fetch {url}: {e}") from e
        if resp.status_code != 200:
            raise MediaResolutionError(f"Fetching {url} returned HTTP {resp.status_code}")

        content_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        if not content_type or content_type == "application/octet-stream":
            content_type = mimetypes.guess_type(url.split("?")[0])[0] or sniff_mime(resp.content)
        logger.debug(f"Fetched {url[:80]} ({len(resp.content)} bytes, {content_type})")
        return MediaPayload(data=resp.content, mime_type=content_type)

    def _read_upload(self, ref: str) -> MediaPayload:
        name = ref.split(UPLOADS_URL_PREFIX, 1)[-1] if UPLOADS_URL_PREFIX in ref else ref
        # never leave the upload directory
        name = os.path.basename(name.split("?")[0])
        path = os.path.join(self.upload_dir, name)

        if not name or not os.path.isfile(path):
            raise MediaResolutionError(f"Uploaded file not found: {ref}")

        with open(path, "rb") as f:
            data = f.read()
        mime = mimetypes.guess_type(name)[0] or sniff_mime(data, fallback="image/jpeg")
        return MediaPayload(data=data, mime_type=mime)


# ── Artifact stores ──────────────────────────────────────────────────────────

class ArtifactStore(ABC):
    @abstractmethod
    async def upload(self, project_id: str, filename: str, data: bytes, content_type: str = "image/png") -> str:
        """Store a generated artifact and return its URL."""


class R2ArtifactStore(ArtifactStore):
    """Cloudflare R2 through the S3 API."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._client = None

    def _s3(self):
        if self._client is None:
            if not self._settings.r2_configured:
                raise ConfigurationError("R2 credentials")
            import boto3
            from botocore.config import Config as BotoConfig

            self._client = boto3.client(
                "s3",
                endpoint_url=f"https://{self._settings.r2_account_id}.r2.cloudflarestorage.com",
                aws_access_key_id=self._settings.r2_access_key_id,
                aws_secret_access_key=self._settings.r2_secret_access_key,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._client

    async def upload(self, project_id: str, filename: str, data: bytes, content_type: str = "image/png") -> str:
        key = artifact_key(project_id, filename)
        try:
            # boto3 blocks, keep it off the event loop
            await asyncio.to_thread(
                self._s3().put_object,
                Bucket=self._settings.r2_bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            logger.error(f"R2 upload failed for key={key}: {e}")
            raise

        public_url = f"{self._settings.r2_public_url.rstrip('/')}/{key}"
        logger.info(f"Uploaded to R2: {public_url}")
        return public_url


class LocalArtifactStore(ArtifactStore):
    """Writes into UPLOAD_DIR so MediaResolver and the file route can serve it back."""

    def __init__(self, upload_dir: str, public_base_url: str = ""):
        self.upload_dir = upload_dir
        self.public_base_url = public_base_url.rstrip("/")

    async def upload(self, project_id: str, filename: str, data: bytes, content_type: str = "image/png") -> str:
        os.makedirs(self.upload_dir, exist_ok=True)
        name = f"{project_id}-{filename}"
        with open(os.path.join(self.upload_dir, name), "wb") as f:
            f.write(data)
        url = f"{self.public_base_url}{UPLOADS_URL_PREFIX}{name}"
        logger.info(f"Stored artifact locally: {url}")
        return url


def build_artifact_store(settings: Settings) -> ArtifactStore:
    if settings.r2_configured:
        return R2ArtifactStore(settings)
    logger.warning("R2 not configured — storing generated artifacts in UPLOAD_DIR")
    return LocalArtifactStore(settings.upload_dir, settings.public_base_url)
