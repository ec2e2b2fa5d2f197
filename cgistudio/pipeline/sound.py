"""
Stage 3c — Kling sound via PiAPI.

Adds an audio track to a finished Kling video, keyed off the video's task
id rather than its bytes. Callers treat every failure here as non-fatal and
keep the silent video.
"""

import logging
from typing import Optional

from ..errors import AudioAugmentationFailed, ConfigurationError, PipelineError
from ..longpoll import LongPollClient
from .animate import TaskCallback, extract_video_url
from .ledger import CostLedger

logger = logging.getLogger(__name__)

STAGE = "audio_augmentation"

POLL_INTERVAL = 10       # seconds
MAX_POLL_ATTEMPTS = 30   # 5 minutes max
MAX_CONSECUTIVE_TRANSIENT = 5


class AudioAugmenter:
    def __init__(
        self,
        client: Optional[LongPollClient],
        poll_interval: float = POLL_INTERVAL,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        max_consecutive_transient: int = MAX_CONSECUTIVE_TRANSIENT,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.max_consecutive_transient = max_consecutive_transient

    async def add_audio(
        self,
        video_task_id: str,
        prompt: str,
        ledger: CostLedger,
        on_task_created: Optional[TaskCallback] = None,
    ) -> str:
        """Return the URL of the video with sound. Raises AudioAugmentationFailed."""
        if self.client is None:
            raise AudioAugmentationFailed(str(ConfigurationError("PIAPI_API_KEY")), stage=STAGE)

        payload = {
            "model": "kling",
            "task_type": "sound",
            "input": {
                "origin_task_id": video_task_id,
                "prompt": (
                    "Add atmospheric background music and realistic sound effects that match the scene. "
                    f"{prompt[:200]}"
                ),
                "duration": "auto",
            },
        }

        with ledger.metered(STAGE):
            try:
                sound_task_id = await self.client.submit("task", payload)
            except PipelineError as e:
                raise AudioAugmentationFailed(f"Kling sound request failed: {e}", stage=STAGE) from e

            logger.info(f"Kling sound task created: {sound_task_id} (video task {video_task_id})")
            if on_task_created is not None:
                await on_task_created(sound_task_id)

            return await self.resume(sound_task_id)

    async def resume(self, sound_task_id: str) -> str:
        """Poll an already-created sound task. Costs nothing."""
        if self.client is None:
            raise AudioAugmentationFailed(str(ConfigurationError("PIAPI_API_KEY")), stage=STAGE)

        try:
            record = await self.client.poll_until_done(
                sound_task_id,
                interval=self.poll_interval,
                max_attempts=self.max_poll_attempts,
                max_consecutive_transient=self.max_consecutive_transient,
            )
        except PipelineError as e:
            raise AudioAugmentationFailed(f"Kling sound failed: {e}", stage=STAGE) from e

        video_url = extract_video_url(record)
        if not video_url:
            raise AudioAugmentationFailed(f"Sound task {sound_task_id} completed without a video URL", stage=STAGE)

        logger.info(f"Video with audio ready: {video_url[:80]}")
        return video_url
