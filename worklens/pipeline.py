from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from .analysis import AnalysisBatcher, AnalysisProvider, AnalysisRecorder
from .capture import CaptureController, PrivacyFilter, ScreenGrabber
from .config import AppSettings
from .exceptions import ConfigurationError
from .gemini_client import GeminiProvider
from .http_client import ResilientHttpClient
from .local_llm_client import LocalLLMProvider
from .logging_utils import get_logger
from .models import CaptureOptions, CaptureSession, SessionResult, TriggerKind, UserGoals
from .prompts import UserProfile
from .report import SessionReportCombiner
from .repository import LocalAnalysisArchive
from .storage import BackendRegistry, LocalArtifactStore, RemoteObjectStore, TieredStorageWriter
from .triggers import InputTriggerMonitor
from .upload_queue import UploadQueue

logger = get_logger("pipeline")


def build_http_client(settings: AppSettings, token_provider: Optional[Callable[[], str | None]] = None, **kwargs) -> ResilientHttpClient:
    return ResilientHttpClient(
        timeout_seconds=settings.http.timeout_seconds,
        max_retries=settings.http.max_retries,
        retry_base_seconds=settings.http.retry_base_seconds,
        token_provider=token_provider,
        **kwargs,
    )


def build_provider(settings: AppSettings, http: ResilientHttpClient) -> AnalysisProvider:
    backend = settings.analyzer.backend
    if backend == "gemini":
        return GeminiProvider(settings.gemini)
    if backend in {"local", "lmstudio", "openai-compatible"}:
        return LocalLLMProvider(settings.local_llm, http)
    raise ConfigurationError(f"Unknown ANALYZER_BACKEND: {backend}", {"backend": backend})


def options_from_settings(
    settings: AppSettings,
    *,
    session_goal: str | None = None,
    user_goals: UserGoals | None = None,
    **overrides: Any,
) -> CaptureOptions:
    capture = settings.capture
    values: dict[str, Any] = {
        "interval_ms": capture.interval_ms,
        "quality": capture.quality,
        "exclude_apps": list(capture.exclude_apps),
        "include_mouse_position": capture.include_mouse_position,
        "privacy_mode": capture.privacy_mode,
        "enable_event_triggers": capture.enable_event_triggers,
        "batch_size": capture.batch_size,
        "upload_threshold": capture.upload_threshold,
        "user_goals": user_goals or UserGoals(),
    }
    if session_goal:
        values["session_goal"] = session_goal
    values.update({key: value for key, value in overrides.items() if value is not None})
    return CaptureOptions(**values)


class Pipeline:
    """Owns one set of pipeline components and the single active capture session."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        provider: AnalysisProvider | None = None,
        grabber: ScreenGrabber | None = None,
        http: ResilientHttpClient | None = None,
        trigger_monitor: InputTriggerMonitor | None = None,
        privacy_filter: PrivacyFilter | None = None,
        token_provider: Optional[Callable[[], str | None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        backend_token = settings.storage.backend_token
        self.http = http or build_http_client(
            settings,
            token_provider=token_provider or (lambda: backend_token),
            sleep=sleep,
        )
        self._provider_http: ResilientHttpClient | None = None
        if provider is None:
            # Analyzer traffic never carries the backend token.
            self._provider_http = build_http_client(settings, sleep=sleep)
            provider = build_provider(settings, self._provider_http)
        self.provider = provider

        self.remote_store = RemoteObjectStore(self.http, settings.storage.object_store_url)
        self.local_store = LocalArtifactStore(settings.storage.local_root)
        self.registry = BackendRegistry(self.http, settings.storage.backend_url)
        self.writer = TieredStorageWriter(
            self.remote_store,
            self.local_store,
            self.registry,
            group_size=settings.storage.group_size,
            group_delay_seconds=settings.storage.group_delay_seconds,
            sleep=sleep,
        )
        self.upload_queue = UploadQueue(
            self.writer,
            threshold=settings.capture.upload_threshold,
            max_attempts=settings.capture.upload_max_attempts,
        )

        self.archive = LocalAnalysisArchive(settings.storage.analysis_db_path)
        self.recorder = AnalysisRecorder(self.registry, self.archive)
        analyzer = settings.analyzer
        self.batcher = AnalysisBatcher(
            provider,
            self.recorder,
            profile=UserProfile(role=analyzer.user_role, team=analyzer.user_team, work_style=analyzer.user_work_style),
            max_attempts=analyzer.rate_limit_max_attempts,
            base_delay=analyzer.rate_limit_base_seconds,
            sleep=sleep,
        )
        self.combiner = SessionReportCombiner(
            self.batcher,
            max_attempts=analyzer.rate_limit_max_attempts,
            base_delay=analyzer.rate_limit_base_seconds,
            sleep=sleep,
        )
        self.controller = CaptureController(
            grabber or ScreenGrabber(),
            self.upload_queue,
            self.batcher,
            self.combiner,
            trigger_monitor=trigger_monitor,
            privacy_filter=privacy_filter,
            sleep=sleep,
        )

    async def start_session(self, session_id: str, options: CaptureOptions | None = None) -> CaptureSession:
        if not self.provider.available:
            logger.warning("AI provider %s is not configured; captures will be stored but not analysed", self.provider.name)
        return await self.controller.start_capture(session_id, options or options_from_settings(self.settings))

    async def stop_session(self) -> Optional[SessionResult]:
        return await self.controller.stop_capture()

    async def trigger(self, kind: TriggerKind, detail: dict | None = None):
        return await self.controller.trigger(kind, detail)

    def status(self) -> dict[str, Any]:
        return {
            **self.controller.status(),
            "analyzer": self.provider.name,
            "transport": self.http.active_transport,
            "local_storage": self.local_store.stats(),
            "archived_analyses": self.archive.count(),
        }

    async def close(self) -> None:
        if self.controller.capturing:
            await self.stop_session()
        await self.http.close()
        if self._provider_http is not None:
            await self._provider_http.close()
