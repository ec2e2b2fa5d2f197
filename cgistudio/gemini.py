"""
Gemini REST client for the prompt and image stages.

- Text/vision (prompt enhancement, video direction): gemini-2.0-flash
- Image composition: gemini-2.5-flash-image-preview (returns image parts)
"""

import base64
import asyncio
import logging
from typing import Optional

import httpx

from .errors import ConfigurationError, MalformedResponseError, PipelineError
from .longpoll import Sleep, request_with_backoff

logger = logging.getLogger(__name__)


class GeminiClient:
    """Thin async wrapper over `models/{model}:generateContent`."""

    def __init__(
        self,
        api_key: str,
        api_base: str = "https://generativelanguage.googleapis.com/v1beta",
        http: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        timeout: float = 60.0,
    ):
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    async def aclose(self):
        if self._owns_http:
            await self._http.aclose()

    async def generate_content(self, model: str, parts: list, config: dict | None = None) -> dict:
        """Call Gemini generateContent REST endpoint."""
        if not self._api_key:
            raise ConfigurationError("GEMINI_API_KEY")

        body: dict = {
            "contents": [{"parts": parts}],
        }
        if config:
            body["generationConfig"] = config

        resp = await request_with_backoff(
            self._http,
            "POST",
            f"{self._api_base}/models/{model}:generateContent",
            params={"key": self._api_key},
            json=body,
            sleep=self._sleep,
        )

        if resp.status_code != 200:
            raise PipelineError(f"Gemini API error {resp.status_code}: {resp.text[:500]}")

        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"Gemini returned non-JSON body: {resp.text[:200]}") from e


def inline_part(data: bytes, mime_type: str) -> dict:
    return {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(data).decode()}}


def response_parts(result: dict) -> list:
    """All content parts of the first candidate, or [] if there are none."""
    candidates = result.get("candidates") or []
    if not candidates:
        return []
    content = candidates[0].get("content") or {}
    return content.get("parts") or []


def response_text(result: dict) -> str:
    """Concatenated text of the first candidate.

    Raises MalformedResponseError when the model returned no text at all
    (blocked prompt, empty candidate list).
    """
    text = "".join(p.get("text", "") for p in response_parts(result) if isinstance(p, dict))
    if not text.strip():
        reason = (result.get("promptFeedback") or {}).get("blockReason")
        raise MalformedResponseError(f"Gemini returned no text{f' (blocked: {reason})' if reason else ''}")
    return text.strip()

