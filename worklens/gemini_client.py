from __future__ import annotations

import io
import re
from typing import Any, List, Sequence

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from PIL import Image

from .config import GeminiSettings
from .exceptions import ConfigurationError, ProviderError, RateLimitError
from .logging_utils import get_logger

logger = get_logger("gemini")

_RETRY_HINT = re.compile(r"Please retry in\s+([0-9]+(?:\.[0-9]+)?)s")


class GeminiProvider:
    """AI provider backed by the google-generativeai SDK.

    Rate limiting is reported as :class:`RateLimitError`; waiting and retrying
    is left to the caller so every provider shares one backoff policy.
    """

    name = "gemini"

    def __init__(self, settings: GeminiSettings):
        self._settings = settings
        self._model = None
        if settings.api_key:
            genai.configure(api_key=settings.api_key)
            self._model = genai.GenerativeModel(settings.model)

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def available(self) -> bool:
        return self._model is not None

    async def generate_analysis(self, prompt: str, images: Sequence[bytes] = ()) -> str:
        if self._model is None:
            raise ConfigurationError("GEMINI_API_KEY is not configured")

        generation_config = {
            "max_output_tokens": self._settings.max_tokens,
            "temperature": self._settings.temperature,
        }
        parts: List[Any] = [prompt, *(_load_image(data) for data in images if data)]
        logger.debug("Calling %s with %s images", self._settings.model, len(parts) - 1)

        try:
            response = await self._model.generate_content_async(parts, generation_config=generation_config)
        except google_exceptions.ResourceExhausted as exc:
            raise RateLimitError(f"Gemini rate limit: {exc}", retry_after=_retry_hint(exc)) from exc
        except google_exceptions.GoogleAPIError as exc:
            if _is_rate_limited(exc):
                raise RateLimitError(f"Gemini rate limit: {exc}", retry_after=_retry_hint(exc)) from exc
            raise ProviderError(f"Gemini request failed: {exc}") from exc

        try:
            text = response.text
        except ValueError as exc:
            # Raised by the SDK when the candidate was blocked or empty.
            raise ProviderError(f"Gemini returned no text: {exc}") from exc
        return text or ""


def _load_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def _is_rate_limited(exc: Exception) -> bool:
    message = str(exc)
    return "429" in message or "Quota exceeded" in message or "rate limit" in message.lower()


def _retry_hint(exc: Exception) -> float | None:
    match = _RETRY_HINT.search(str(exc))
    if match:
        return float(match.group(1))
    return None
