from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .models import DEFAULT_BATCH_SIZE, MIN_INTERVAL_MS


@dataclass(frozen=True)
class CaptureSettings:
    interval_ms: int
    quality: int
    exclude_apps: tuple[str, ...]
    include_mouse_position: bool
    privacy_mode: bool
    enable_event_triggers: bool
    batch_size: int
    upload_threshold: int
    upload_max_attempts: Optional[int]


@dataclass(frozen=True)
class HttpSettings:
    timeout_seconds: float = 30.0
    max_retries: int = 2
    retry_base_seconds: float = 1.0


@dataclass(frozen=True)
class StorageSettings:
    object_store_url: str | None
    backend_url: str | None
    backend_token: str | None
    local_root: Path
    analysis_db_path: Path | None
    group_size: int = 3
    group_delay_seconds: float = 0.1


@dataclass(frozen=True)
class GeminiSettings:
    api_key: str | None
    model: str
    max_tokens: int
    temperature: float


@dataclass(frozen=True)
class LocalLLMSettings:
    base_url: str
    model: str
    api_key: str | None
    max_tokens: int
    temperature: float


@dataclass(frozen=True)
class AnalyzerSettings:
    backend: str
    rate_limit_max_attempts: int = 3
    rate_limit_base_seconds: float = 2.0
    user_role: str = "Developer"
    user_team: str = "Engineering"
    user_work_style: str = "Focused"


@dataclass(frozen=True)
class LoggingSettings:
    directory: Path
    level: str = "INFO"


@dataclass(frozen=True)
class OutputSettings:
    report_dir: Path


@dataclass(frozen=True)
class AppSettings:
    capture: CaptureSettings
    http: HttpSettings
    storage: StorageSettings
    analyzer: AnalyzerSettings
    gemini: GeminiSettings
    local_llm: LocalLLMSettings
    logging: LoggingSettings
    output: OutputSettings


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    dotenv_path = Path(__file__).resolve().parents[1] / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False, encoding="utf-8-sig")

    capture = CaptureSettings(
        interval_ms=max(MIN_INTERVAL_MS, int(os.getenv("CAPTURE_INTERVAL_MS", "5000"))),
        quality=min(100, max(0, int(os.getenv("CAPTURE_QUALITY", "80")))),
        exclude_apps=tuple(_as_list(os.getenv("CAPTURE_EXCLUDE_APPS"))),
        include_mouse_position=_as_bool(os.getenv("CAPTURE_INCLUDE_MOUSE"), default=True),
        privacy_mode=_as_bool(os.getenv("CAPTURE_PRIVACY_MODE"), default=False),
        enable_event_triggers=_as_bool(os.getenv("CAPTURE_EVENT_TRIGGERS"), default=True),
        batch_size=max(1, int(os.getenv("ANALYSIS_BATCH_SIZE", str(DEFAULT_BATCH_SIZE)))),
        upload_threshold=max(1, int(os.getenv("UPLOAD_THRESHOLD", "1"))),
        upload_max_attempts=_as_optional_int(os.getenv("UPLOAD_MAX_ATTEMPTS")),
    )

    http = HttpSettings(
        timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
        max_retries=int(os.getenv("HTTP_MAX_RETRIES", "2")),
        retry_base_seconds=float(os.getenv("HTTP_RETRY_BASE_SECONDS", "1.0")),
    )

    analysis_db = os.getenv("ANALYSIS_DB_PATH")
    storage = StorageSettings(
        object_store_url=_strip_url(os.getenv("OBJECT_STORE_URL")),
        backend_url=_strip_url(os.getenv("BACKEND_URL")),
        backend_token=os.getenv("BACKEND_TOKEN") or None,
        local_root=Path(os.getenv("LOCAL_STORAGE_ROOT", "data/screenshots")).resolve(),
        analysis_db_path=Path(analysis_db).resolve() if analysis_db else None,
    )

    analyzer = AnalyzerSettings(
        backend=os.getenv("ANALYZER_BACKEND", "gemini").strip().lower(),
        rate_limit_max_attempts=max(1, int(os.getenv("RATE_LIMIT_MAX_ATTEMPTS", "3"))),
        rate_limit_base_seconds=float(os.getenv("RATE_LIMIT_BASE_SECONDS", "2.0")),
        user_role=os.getenv("USER_ROLE", "Developer"),
        user_team=os.getenv("USER_TEAM", "Engineering"),
        user_work_style=os.getenv("USER_WORK_STYLE", "Focused"),
    )

    # A missing key is reported by the provider when a call is attempted,
    # so capture keeps working without analysis credentials.
    gemini = GeminiSettings(
        api_key=os.getenv("GEMINI_API_KEY") or None,
        model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
        max_tokens=int(os.getenv("GEMINI_MAX_TOKENS", "2048")),
        temperature=float(os.getenv("GEMINI_TEMPERATURE", "0.3")),
    )

    local_llm = LocalLLMSettings(
        base_url=_strip_url(os.getenv("LOCAL_LLM_BASE_URL")) or "http://localhost:1234/v1",
        model=os.getenv("LOCAL_LLM_MODEL", "local-model"),
        api_key=os.getenv("LOCAL_LLM_API_KEY") or None,
        max_tokens=int(os.getenv("LOCAL_LLM_MAX_TOKENS", "2048")),
        temperature=float(os.getenv("LOCAL_LLM_TEMPERATURE", "0.3")),
    )

    logging_settings = LoggingSettings(
        directory=Path(os.getenv("LOG_DIR", "logs")).resolve(),
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )

    output_settings = OutputSettings(
        report_dir=Path(os.getenv("REPORT_OUTPUT_DIR", "reports")).resolve(),
    )

    return AppSettings(
        capture=capture,
        http=http,
        storage=storage,
        analyzer=analyzer,
        gemini=gemini,
        local_llm=local_llm,
        logging=logging_settings,
        output=output_settings,
    )


def _strip_url(raw: str | None) -> str | None:
    if not raw or not raw.strip():
        return None
    return raw.strip().rstrip("/")


def _as_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _as_optional_int(raw: str | None) -> Optional[int]:
    if raw is None or not raw.strip():
        return None
    value = int(raw)
    return value if value > 0 else None


def _as_bool(raw: str | None, default: bool | None = None) -> bool:
    if raw is None:
        if default is None:
            return False
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}
