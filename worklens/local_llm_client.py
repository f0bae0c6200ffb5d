from __future__ import annotations

import base64
from typing import Any, Sequence

from .config import LocalLLMSettings
from .exceptions import ProviderError, RateLimitError
from .http_client import ResilientHttpClient
from .logging_utils import get_logger
from .models import ApiResponse

logger = get_logger("local_llm")

SYSTEM_PROMPT = "You are WorkLens, a careful work-session analyst. Answer with a single JSON object only."


class LocalLLMProvider:
    """Provider for an OpenAI-compatible HTTP API (e.g., LM Studio).

    Expected base URL: http://localhost:1234/v1
    Endpoint used:     POST {base_url}/chat/completions
    """

    name = "local"

    def __init__(self, settings: LocalLLMSettings, http: ResilientHttpClient):
        self._settings = settings
        self._http = http
        self._model: str | None = None

    @property
    def model(self) -> str:
        return self._model or self._settings.model

    @property
    def available(self) -> bool:
        return bool(self._settings.base_url)

    async def generate_analysis(self, prompt: str, images: Sequence[bytes] = ()) -> str:
        model = await self._resolve_model()
        content: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for data in images:
            if data:
                content.append({"type": "image_url", "image_url": {"url": _as_data_url(data)}})

        payload: dict[str, Any] = {
            "model": model,
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
            "stream": False,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
        }

        url = f"{self._settings.base_url}/chat/completions"
        response = await self._http.execute("POST", url, {**payload, "response_format": {"type": "json_object"}}, self._headers())
        if response.status in {400, 422}:
            # Server rejected response_format; retry once without it.
            logger.debug("Local LLM rejected response_format (HTTP %s); retrying without", response.status)
            response = await self._http.execute("POST", url, payload, self._headers())

        self._raise_for_failure(response)
        return _message_text(response.data)

    async def _resolve_model(self) -> str:
        if self._model is not None:
            return self._model

        configured = (self._settings.model or "").strip()
        if configured and configured.lower() not in {"local-model", "auto"}:
            self._model = configured
            return configured

        response = await self._http.execute("GET", f"{self._settings.base_url}/models", headers=self._headers())
        models = response.data.get("data") if response.success and isinstance(response.data, dict) else None
        if isinstance(models, list) and models and isinstance(models[0], dict) and models[0].get("id"):
            self._model = str(models[0]["id"])
            logger.info("Auto-selected LOCAL_LLM_MODEL=%s", self._model)
        else:
            logger.warning("Local LLM models discovery failed; using %s", configured or "local-model")
            self._model = configured or "local-model"
        return self._model

    def _headers(self) -> dict[str, str]:
        if self._settings.api_key:
            return {"Authorization": f"Bearer {self._settings.api_key}"}
        return {}

    @staticmethod
    def _raise_for_failure(response: ApiResponse) -> None:
        if response.success:
            return
        error = response.error
        message = error.message if error else "unknown error"
        if response.status == 429:
            raise RateLimitError(f"Local LLM rate limit: {message}")
        raise ProviderError(
            f"Local LLM request failed: {message}",
            {"code": error.code if error else None, "status": response.status},
        )


def _as_data_url(data: bytes) -> str:
    return f"data:image/png;base64,{base64.b64encode(data).decode('ascii')}"


def _message_text(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    text = (((data.get("choices") or [{}])[0]).get("message") or {}).get("content")
    if isinstance(text, list):
        # Some servers return structured content; join the text chunks.
        parts = [str(item.get("text") or "") for item in text if isinstance(item, dict) and item.get("type") == "text"]
        text = "\n".join(part for part in parts if part)
    return text if isinstance(text, str) else ""
