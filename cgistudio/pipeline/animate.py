"""
Stage 3b — Image-to-video with Kling via PiAPI.

Animates the composed image (by public URL) into a 5 or 10 second clip:
  POST /task   {"model": "kling", "task_type": "video_generation", ...}
  GET  /task/{task_id}   until completed

The task id is handed to `on_task_created` before polling starts so the
run can checkpoint it; `resume()` picks an existing task back up without
resubmitting (and without charging again).
"""

import math
import logging
from typing import Any, Awaitable, Callable, Optional

from ..errors import ConfigurationError, MediaResolutionError, TaskFailedError, VideoGenerationFailed, VideoUrlMissing
from ..longpoll import LongPollClient
from .ledger import CostLedger
from .models import VideoResult
from .storage import is_remote

logger = logging.getLogger(__name__)

STAGE = "video_generation"

# ── Config ───────────────────────────────────────────────────────────────────

POLL_INTERVAL = 10       # seconds
MAX_POLL_ATTEMPTS = 60   # 10 minutes max
MAX_CONSECUTIVE_TRANSIENT = 10

DEFAULT_NEGATIVE_PROMPT = "blurry, distorted product, warped text, flickering, low quality"

TaskCallback = Callable[[str], Awaitable[Any]]


# ── Result decoding ──────────────────────────────────────────────────────────

def _dig(obj: Any, *path):
    for key in path:
        if isinstance(key, int):
            if not isinstance(obj, list) or len(obj) <= key:
                return None
        elif not isinstance(obj, dict):
            return None
        obj = obj[key] if isinstance(key, int) else obj.get(key)
    return obj


# Known locations of the finished video, most specific first
VIDEO_URL_LAYOUTS: tuple = (
    ("output.video_url", ("output", "video_url")),
    ("output.works[0].video.resource_without_watermark", ("output", "works", 0, "video", "resource_without_watermark")),
    ("output.works[0].video.resource", ("output", "works", 0, "video", "resource")),
    ("output.video", ("output", "video")),
    ("video_url", ("video_url",)),
    ("videoUrl", ("videoUrl",)),
    ("works[0].resource.resource", ("works", 0, "resource", "resource")),
)


def extract_video_url(record: dict, layouts: tuple = VIDEO_URL_LAYOUTS) -> Optional[str]:
    for name, path in layouts:
        value = _dig(record, *path)
        if isinstance(value, str) and value:
            logger.debug(f"Video URL found at {name}")
            return value
    return None


def billing_units(duration_seconds: int) -> int:
    """Video is billed per started 5-second block."""
    return max(1, math.ceil(duration_seconds / 5))


class VideoGenerator:
    def __init__(
        self,
        client: Optional[LongPollClient],
        poll_interval: float = POLL_INTERVAL,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        max_consecutive_transient: int = MAX_CONSECUTIVE_TRANSIENT,
        mode: str = "std",
        aspect_ratio: str = "16:9",
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.max_consecutive_transient = max_consecutive_transient
        self.mode = mode
        self.aspect_ratio = aspect_ratio

    def _payload(self, image_url: str, prompt: str, duration: int, negative_prompt: str) -> dict:
        return {
            "model": "kling",
            "task_type": "video_generation",
            "input": {
                "prompt": prompt,
                "image_url": image_url,
                "duration": duration,
                "aspect_ratio": self.aspect_ratio,
                "mode": self.mode,
                "cfg_scale": 0.5,
                "negative_prompt": negative_prompt,
            },
        }

    async def generate(
        self,
        source_image_ref: str,
        prompt: str,
        duration: int,
        ledger: CostLedger,
        negative_prompt: str = DEFAULT_NEGATIVE_PROMPT,
        on_task_created: Optional[TaskCallback] = None,
    ) -> VideoResult:
        """Submit an image-to-video job and poll it to completion."""
        if self.client is None:
            raise ConfigurationError("PIAPI_API_KEY", stage=STAGE)
        if not is_remote(source_image_ref):
            raise MediaResolutionError(
                f"Video source image must be a public http(s) URL, got: {source_image_ref[:80]}", stage=STAGE
            )

        with ledger.metered(STAGE, units=billing_units(duration)):
            task_id = await self.client.submit("task", self._payload(source_image_ref, prompt, duration, negative_prompt))
            logger.info(f"Kling video task created: {task_id} ({duration}s, mode={self.mode})")

            if on_task_created is not None:
                await on_task_created(task_id)

            return await self.resume(task_id)

    async def resume(self, task_id: str) -> VideoResult:
        """Poll an already-created video task. Costs nothing."""
        if self.client is None:
            raise ConfigurationError("PIAPI_API_KEY", stage=STAGE)

        try:
            record = await self.client.poll_until_done(
                task_id,
                interval=self.poll_interval,
                max_attempts=self.max_poll_attempts,
                max_consecutive_transient=self.max_consecutive_transient,
            )
        except TaskFailedError as e:
            raise VideoGenerationFailed(f"Kling reported failure: {e.reason}", stage=STAGE) from e

        video_url = extract_video_url(record)
        if not video_url:
            raise VideoUrlMissing(
                f"Video task {task_id} completed but no video URL was found: {str(record)[:300]}", stage=STAGE
            )

        logger.info(f"Kling video ready: {video_url[:80]}")
        return VideoResult(video_url=video_url, task_id=task_id)
