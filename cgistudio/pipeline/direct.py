"""
Stage 3a — Video direction.

Second look at the *composed* image: Gemini proposes camera movement, a
visual narrative and (with audio) a sound description, which become the
image-to-video prompt. On failure the image-stage prompt is reused.
"""

import re
import logging
from typing import Optional

from ..errors import MalformedResponseError
from ..gemini import GeminiClient, inline_part, response_text
from .intent import IntentExtractor, detect_language
from .ledger import CostLedger
from .models import ComposedImage, VideoDirection

logger = logging.getLogger(__name__)

STAGE = "video_prompt_analysis"

FALLBACK_AUDIO_PROMPT = (
    "Natural ambient environmental sounds matching the scene atmosphere "
    "with subtle product-related audio effects"
)

_SECTION = r'{name}:\s*"([^"]+)"'

DIRECTION_INSTRUCTIONS = """PROFESSIONAL CGI VIDEO DIRECTOR ANALYSIS

ANALYZE this completed CGI image composition and provide video production guidance.

PROJECT SPECIFICATIONS:
- Duration: {duration} seconds ({format_name} format)
- Audio Required: {audio}
- User Vision (may be in any language): {user_text}
{directives}
1. CAMERA MOVEMENT: the most cinematic, realistic movement for this scene (dolly, pan, tilt, zoom, orbit, push-in, pull-out), timed to {duration} seconds.
2. CINEMATIC DIRECTION: the visual narrative and key moments within {duration} seconds, keeping the product prominent.
{audio_section}
OUTPUT, in ENGLISH, exactly these sections:

CAMERA_MOVEMENTS:
"[precise timing, speed and trajectory]"

CINEMATIC_DIRECTION:
"[visual narrative for the {duration}-second video]"
{audio_output}"""

VIDEO_PROMPT_TEMPLATE = """PROFESSIONAL CGI VIDEO GENERATION:

CINEMATOGRAPHY:
{camera}

VISUAL NARRATIVE:
{narrative}

TIMING: {duration} seconds
FOCUS: Maintain product prominence throughout the sequence
QUALITY: Ultra-realistic CGI with seamless motion and perfect lighting continuity
STYLE: Cinematic, commercial-grade video production"""


def _section(name: str, text: str) -> Optional[str]:
    match = re.search(_SECTION.format(name=name), text)
    return match.group(1).strip() if match else None


class VideoDirector:
    def __init__(self, gemini: GeminiClient, model: str = "gemini-2.0-flash", intents: Optional[IntentExtractor] = None):
        self.gemini = gemini
        self.model = model
        self.intents = intents or IntentExtractor()

    def fallback(self, image_prompt: str, include_audio: bool) -> VideoDirection:
        return VideoDirection(
            prompt=image_prompt,
            audio_prompt=FALLBACK_AUDIO_PROMPT if include_audio else None,
            from_fallback=True,
        )

    async def direct(
        self,
        image: ComposedImage,
        image_prompt: str,
        duration: int,
        include_audio: bool,
        user_text: str,
        ledger: CostLedger,
    ) -> VideoDirection:
        """Derive the video prompt from the composed image. Never raises."""
        if not self.gemini.configured:
            logger.warning("GEMINI_API_KEY not configured — reusing image prompt for video")
            return self.fallback(image_prompt, include_audio)

        intents = self.intents.extract(user_text, video=True)
        directives = ""
        if intents.directives:
            directives = "REQUIRED ADJUSTMENTS:\n" + "\n".join(f"- {d}" for d in intents.directives) + "\n"

        instructions = DIRECTION_INSTRUCTIONS.format(
            duration=duration,
            format_name="SHORT" if duration <= 5 else "MEDIUM",
            audio="YES" if include_audio else "NO",
            user_text=user_text or "(none)",
            directives=directives,
            audio_section=(
                "3. NATURAL AUDIO DESIGN: realistic ambient and material sounds that match the scene and movement.\n"
                if include_audio else ""
            ),
            audio_output='\nAUDIO_PROMPT:\n"[natural environmental audio description]"' if include_audio else "",
        )

        try:
            with ledger.metered(STAGE):
                result = await self.gemini.generate_content(
                    self.model,
                    [inline_part(image.image_bytes, image.mime_type), {"text": instructions}],
                    config={"temperature": 0.5, "maxOutputTokens": 1024},
                )

            text = response_text(result)
            camera = _section("CAMERA_MOVEMENTS", text)
            narrative = _section("CINEMATIC_DIRECTION", text)
            if not camera and not narrative:
                raise MalformedResponseError("Direction response has no CAMERA_MOVEMENTS or CINEMATIC_DIRECTION")

            camera = camera or f"Smooth {duration}-second camera movement showcasing the product with cinematic flow"
            narrative = narrative or f"Professional {duration}-second product showcase with dynamic visual progression"
            audio = _section("AUDIO_PROMPT", text) if include_audio else None

            for value in (camera, narrative, audio or ""):
                if detect_language(value) != "en":
                    raise MalformedResponseError("Video direction is not in English")

            logger.info(f"Video direction ready: camera={camera[:60]}...")
            return VideoDirection(
                prompt=VIDEO_PROMPT_TEMPLATE.format(camera=camera, narrative=narrative, duration=duration),
                audio_prompt=(audio or FALLBACK_AUDIO_PROMPT) if include_audio else None,
                camera_movements=camera,
                cinematic_direction=narrative,
            )

        except Exception as e:
            logger.warning(f"Video direction failed, reusing image prompt: {e}")
            return self.fallback(image_prompt, include_audio)
