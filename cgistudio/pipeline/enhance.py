"""
Stage 1 — Prompt enhancement.

Gemini looks at the product and the scene and writes a command-style
composition prompt. This stage never fails a run: on any error the
deterministic fallback prompt is returned instead.
"""

import logging
from typing import Optional

from ..errors import MalformedResponseError
from ..gemini import GeminiClient, inline_part, response_text
from .intent import IntentExtractor, Intents, detect_language
from .ledger import CostLedger
from .models import ContentType
from .storage import MediaResolver

logger = logging.getLogger(__name__)

STAGE = "prompt_enhancement"

FALLBACK_PROMPT = (
    "Professional CGI integration of product into scene with realistic lighting, "
    "shadows, and natural placement. High quality, photorealistic rendering."
)

ENHANCE_INSTRUCTIONS = """You are an expert CGI artist creating precise instructions for AI image generation.

ANALYZE the two reference images:
1. PRODUCT IMAGE: Identify the exact product name, brand, label text, shape, size, materials, colors
2. SCENE {scene_kind}: Note existing objects to be replaced, lighting conditions, environment, perspective

Your task: Create DIRECT COMMANDS for the AI image generator to:
1. REMOVE/REPLACE ONLY the specific existing product in the scene
2. INSERT the exact product from the first image
3. Match lighting, shadows, and perspective perfectly
4. PRESERVE ALL architectural elements (ceiling, walls, floor) and other furniture unchanged

Generate a COMMAND-STYLE prompt, for example:
"Remove ONLY the [existing object] from the scene and replace it with the [exact product name] from the reference image. The [product] should appear ultra-realistic, [size], positioned [placement]. Match the [lighting description]. Keep ALL other elements unchanged. Render in high resolution with cinematic composition and sharp details."

User request (may be written in any language): {user_text}
{directives}
RULES:
- Follow every required adjustment exactly. A "do not" adjustment always wins over anything the request seems to ask for.
- If people are requested, include actual visible human figures, not mood or implied presence.
- {content_note}
- ALWAYS answer in ENGLISH, whatever the language of the request.
- Return ONLY the prompt text, no preamble."""


def _directives_block(intents: Intents) -> str:
    if not intents.directives:
        return ""
    lines = "\n".join(f"- {d}" for d in intents.directives)
    return f"\nREQUIRED ADJUSTMENTS (already interpreted from the request):\n{lines}\n"


def fallback_prompt(user_text: str, intents: Optional[Intents] = None) -> str:
    """English prompt built without the model.

    Directives are included; the raw request is appended only when it is
    English, so the prompt stays in one language.
    """
    parts = [FALLBACK_PROMPT]
    if intents and intents.directives:
        parts.append(". ".join(intents.directives) + ".")
    text = (user_text or "").strip()
    if text and detect_language(text) == "en":
        parts.append(text)
    return " ".join(parts)


class PromptEnhancer:
    def __init__(
        self,
        gemini: GeminiClient,
        resolver: MediaResolver,
        model: str = "gemini-2.0-flash",
        intents: Optional[IntentExtractor] = None,
    ):
        self.gemini = gemini
        self.resolver = resolver
        self.model = model
        self.intents = intents or IntentExtractor()

    async def enhance(
        self,
        product_ref: str,
        scene_ref: str,
        user_text: str,
        content_type: ContentType,
        ledger: CostLedger,
    ) -> str:
        """Return an English composition prompt. Never raises."""
        intents = self.intents.extract(user_text, video=content_type == ContentType.VIDEO)
        if intents.requested or intents.suppressed:
            logger.info(f"Intents ({intents.language}): requested={intents.requested} suppressed={intents.suppressed}")

        if not self.gemini.configured:
            logger.warning("GEMINI_API_KEY not configured — using fallback prompt")
            return fallback_prompt(user_text, intents)

        try:
            product = await self.resolver.resolve(product_ref)
            scene = await self.resolver.resolve(scene_ref)

            instructions = ENHANCE_INSTRUCTIONS.format(
                scene_kind="VIDEO" if scene.is_video else "IMAGE",
                user_text=user_text or "(none)",
                directives=_directives_block(intents),
                content_note=(
                    "The result will be animated into a short video; describe a composition that works in motion."
                    if content_type == ContentType.VIDEO
                    else "The result is a single still image."
                ),
            )
            parts = [
                inline_part(product.data, product.mime_type),
                inline_part(scene.data, scene.mime_type),
                {"text": instructions},
            ]

            with ledger.metered(STAGE):
                result = await self.gemini.generate_content(
                    self.model, parts, config={"temperature": 0.4, "maxOutputTokens": 1024}
                )

            text = response_text(result)
            if detect_language(text) != "en":
                raise MalformedResponseError("Enhanced prompt is not in English")

            logger.info(f"Enhanced prompt ({len(text)} chars): {text[:100]}...")
            return text

        except Exception as e:
            logger.warning(f"Prompt enhancement failed, using fallback: {e}")
            return fallback_prompt(user_text, intents)
