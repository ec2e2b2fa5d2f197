"""
Stage 2 — Image composition (Gemini image model).

Product + scene + enhanced prompt in, one composited image out. The model
returns the image either inline (base64 `inlineData`) or as a `fileData`
URI that has to be fetched. No fallback: failure here is fatal to the run.
"""

import base64
import logging

import httpx

from ..errors import ConfigurationError, NoImageProduced
from ..gemini import GeminiClient, inline_part, response_parts
from .ledger import CostLedger
from .models import ComposedImage
from .storage import MediaResolver

logger = logging.getLogger(__name__)

STAGE = "image_composition"

COMPOSE_INSTRUCTIONS = """GENERATE A NEW IMAGE by composing these two input images:

INPUT 1 (Product): Extract this exact product/object
INPUT 2 (Scene): Place the product into this environment

COMPOSITION INSTRUCTIONS:
{prompt}

CRITICAL IMAGE GENERATION REQUIREMENTS:
- CREATE A NEW PHOTOREALISTIC IMAGE (not a text description)
- Extract the product from image 1 and seamlessly place it in the scene from image 2
- Preserve the scene background exactly (lighting, people, buildings, textures)
- Match lighting, shadows, and perspective perfectly
- Ultra-sharp details, high resolution (1024x1024 minimum)
- Use exact product branding, colors, and shape from the first image
- Professional CGI quality with no compositing artifacts

OUTPUT: Return the generated composite image."""


class ImageComposer:
    def __init__(self, gemini: GeminiClient, resolver: MediaResolver, model: str = "gemini-2.5-flash-image-preview"):
        self.gemini = gemini
        self.resolver = resolver
        self.model = model

    async def compose(self, product_ref: str, scene_ref: str, prompt: str, ledger: CostLedger) -> ComposedImage:
        if not self.gemini.configured:
            raise ConfigurationError("GEMINI_API_KEY", stage=STAGE)

        product = await self.resolver.resolve(product_ref)
        scene = await self.resolver.resolve(scene_ref)

        parts = [
            {"text": COMPOSE_INSTRUCTIONS.format(prompt=prompt)},
            inline_part(product.data, product.mime_type),
            inline_part(scene.data, scene.mime_type),
        ]

        with ledger.metered(STAGE):
            result = await self.gemini.generate_content(
                self.model, parts, config={"responseModalities": ["TEXT", "IMAGE"]}
            )

        return await self._extract_image(result)

    async def _extract_image(self, result: dict) -> ComposedImage:
        """Scan response parts for inline image bytes or a fetchable file URI."""
        parts = response_parts(result)
        if not parts:
            raise NoImageProduced("No image generated by Gemini - no candidates in response", stage=STAGE)

        for part in parts:
            inline = part.get("inlineData") or {}
            if inline.get("data") and inline.get("mimeType", "").startswith("image/"):
                logger.info(f"Composed image received inline ({inline['mimeType']})")
                return ComposedImage(image_bytes=base64.b64decode(inline["data"]), mime_type=inline["mimeType"])

            file_data = part.get("fileData") or {}
            if file_data.get("fileUri") and file_data.get("mimeType", "").startswith("image/"):
                image = await self._fetch_file(file_data["fileUri"], file_data["mimeType"])
                if image is not None:
                    return image

        kinds = [next(iter(p), "?") for p in parts if isinstance(p, dict)]
        raise NoImageProduced(f"No image data found in Gemini response (parts: {kinds})", stage=STAGE)

    async def _fetch_file(self, uri: str, declared_mime: str):
        try:
            resp = await self.gemini.http.get(uri, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch generated image from {uri}: {e}")
            return None
        if resp.status_code != 200:
            logger.warning(f"Failed to fetch generated image from {uri}: HTTP {resp.status_code}")
            return None

        mime = resp.headers.get("Content-Type", "").split(";")[0].strip() or declared_mime
        logger.info(f"Composed image fetched from file URI ({mime}, {len(resp.content)} bytes)")
        return ComposedImage(image_bytes=resp.content, mime_type=mime)
