"""
Incremental batch analysis of a capture session.

Artifacts are analysed in contiguous, non-overlapping slices of ``batch_size``
as soon as enough of them exist; the final (possibly undersized) remainder is
submitted by :meth:`AnalysisBatcher.flush_remainder` when the session ends.
"""

from __future__ import annotations

import asyncio
import math
import sqlite3
import time
from collections import Counter
from dataclasses import replace
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Sequence

from .decoder import DecodeContext, decode_analysis
from .exceptions import RateLimitError, WorkLensError
from .logging_utils import get_logger
from .models import ApiResponse, BatchAnalysis, CapturedArtifact, CaptureSession
from .prompts import AnalysisRequest, UserProfile
from .repository import LocalAnalysisArchive
from .storage import BackendRegistry

logger = get_logger("analysis")

RATE_LIMIT_MAX_ATTEMPTS = 3
RATE_LIMIT_BASE_SECONDS = 2.0
COST_PER_THOUSAND_TOKENS = 0.00015


class AnalysisProvider(Protocol):
    name: str

    @property
    def model(self) -> str: ...

    @property
    def available(self) -> bool: ...

    async def generate_analysis(self, prompt: str, images: Sequence[bytes] = ()) -> str: ...


async def generate_with_backoff(
    provider: AnalysisProvider,
    prompt: str,
    images: Sequence[bytes] = (),
    *,
    max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
    base_delay: float = RATE_LIMIT_BASE_SECONDS,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> str:
    """Call the provider, retrying only on rate limiting with delays ``base * 2**retry``."""
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await provider.generate_analysis(prompt, images)
        except RateLimitError as exc:
            if attempt >= attempts - 1:
                raise
            delay = base_delay * (2**attempt)
            logger.warning(
                "%s rate limited (attempt %s/%s). Waiting %.1fs then retrying...",
                provider.name,
                attempt + 1,
                attempts,
                delay,
            )
            await sleep(delay)
    raise RuntimeError(f"{provider.name} generate_analysis failed unexpectedly")


def estimate_tokens(prompt: str, response: str | None) -> int:
    # Roughly four characters per token; images are not counted.
    return math.ceil((len(prompt) + len(response or "")) / 4)


def estimate_cost(tokens: int) -> float:
    return round(tokens / 1000 * COST_PER_THOUSAND_TOKENS, 6)


def trigger_breakdown(artifacts: Sequence[CapturedArtifact]) -> dict[str, int]:
    return dict(Counter(artifact.trigger_kind.value for artifact in artifacts))


def duration_seconds(artifacts: Sequence[CapturedArtifact]) -> int:
    if len(artifacts) < 2:
        return 0
    return round((artifacts[-1].captured_at - artifacts[0].captured_at).total_seconds())


def focus_score(analysis: BatchAnalysis) -> float:
    """0-10 score: share of the time breakdown not spent context switching."""
    breakdown = analysis.summary.time_breakdown
    total = sum(breakdown.values())
    if total <= 0:
        return 7.0
    switching = breakdown.get("contextSwitching", 0.0)
    return round(max(0.0, 1 - switching / total) * 10, 1)


class AnalysisRecorder:
    """Persists analyses to the backend registry, falling back to the local archive.

    ``record_*`` return True only when the backend stored the analysis. Failures
    are logged and never raised.
    """

    def __init__(self, registry: BackendRegistry, archive: LocalAnalysisArchive):
        self._registry = registry
        self._archive = archive

    @property
    def archive(self) -> LocalAnalysisArchive:
        return self._archive

    async def record_batch(self, analysis: BatchAnalysis, artifacts: Sequence[CapturedArtifact]) -> bool:
        extra = {
            "duration_seconds": duration_seconds(artifacts),
            "ai_model": analysis.model,
            "processing_time_ms": analysis.processing_ms,
            "tokens_used": analysis.tokens_estimate,
            "cost_usd": estimate_cost(analysis.tokens_estimate),
            "work_completed": analysis.summary.work_completed,
            "blockers_count": len(analysis.blockers.all()),
            "accomplishments_count": len(analysis.recognition.accomplishments),
            "alignment_score": analysis.alignment_score / 10,
            "focus_score": focus_score(analysis),
            "trigger_breakdown": trigger_breakdown(artifacts),
        }
        label = f"batch analysis #{analysis.batch_index}"
        response = await self._send(label, self._registry.store_batch_analysis(analysis, extra))
        if response is not None and response.success:
            logger.info("Batch analysis #%s stored in backend", analysis.batch_index)
            return True
        return self._fallback(label, response, "batch", analysis.batch_index, analysis, extra)

    async def record_final(self, report: BatchAnalysis, extra: dict[str, Any] | None = None) -> bool:
        label = f"final report for {report.session_id}"
        response = await self._send(label, self._registry.store_final_report(report, extra))
        if response is not None and response.success:
            logger.info("Final report for session %s stored in backend", report.session_id)
            return True
        return self._fallback(label, response, "final", 0, report, extra or {})

    async def _send(self, label: str, call: Awaitable[ApiResponse]) -> Optional[ApiResponse]:
        try:
            return await call
        except Exception:
            logger.exception("Storing %s in the backend raised", label)
            return None

    def _fallback(
        self,
        label: str,
        response: Optional[ApiResponse],
        kind: str,
        index: int,
        analysis: BatchAnalysis,
        extra: dict[str, Any],
    ) -> bool:
        if response is not None:
            logger.warning(
                "Backend refused %s (%s); archiving locally",
                label,
                response.error.message if response.error else "unknown error",
            )
        self._archive_locally(kind, index, analysis, extra)
        return False

    def _archive_locally(self, kind: str, index: int, analysis: BatchAnalysis, extra: dict[str, Any]) -> None:
        try:
            self._archive.save(analysis.session_id, kind, index, {"analysis": analysis.to_dict(), **extra})
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            logger.error("Could not archive %s analysis %s locally: %s", kind, index, exc)


class AnalysisBatcher:
    def __init__(
        self,
        provider: AnalysisProvider,
        recorder: AnalysisRecorder,
        *,
        profile: UserProfile | None = None,
        max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
        base_delay: float = RATE_LIMIT_BASE_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._provider = provider
        self._recorder = recorder
        self._profile = profile or UserProfile()
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep
        self._lock = asyncio.Lock()

        self._session: Optional[CaptureSession] = None
        self._batch_size = 0
        self._artifacts: List[CapturedArtifact] = []
        self._analyses: List[BatchAnalysis] = []
        self._counter = 0
        self._analysis_available = True
        self._last_error: Optional[str] = None

    @property
    def provider(self) -> AnalysisProvider:
        return self._provider

    @property
    def recorder(self) -> AnalysisRecorder:
        return self._recorder

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @property
    def analysis_counter(self) -> int:
        return self._counter

    @property
    def analyses(self) -> List[BatchAnalysis]:
        return list(self._analyses)

    @property
    def artifacts(self) -> List[CapturedArtifact]:
        return list(self._artifacts)

    def begin_session(self, session: CaptureSession) -> None:
        self._session = session
        self._batch_size = session.batch_size
        self._artifacts = []
        self._analyses = []
        self._counter = 0
        self._analysis_available = True
        self._last_error = None
        logger.info("Analysis batching started for %s (batch size %s)", session.session_id, self._batch_size)

    def end_session(self) -> None:
        self._session = None

    def record_artifact(self, artifact: CapturedArtifact) -> bool:
        if self._session is None or artifact.session_id != self._session.session_id:
            logger.debug("Ignoring artifact %s outside the active session", artifact.artifact_id)
            return False
        self._artifacts.append(artifact)
        return True

    async def on_artifact(self, artifact: CapturedArtifact) -> int:
        if not self.record_artifact(artifact):
            return 0
        return await self.check_for_trigger()

    async def check_for_trigger(self) -> int:
        """Analyse every full batch that is ready. Skips if another check is running."""
        if self._lock.locked():
            return 0
        async with self._lock:
            return await self._process_ready_batches()

    async def force_process(self) -> int:
        async with self._lock:
            return await self._process_ready_batches()

    async def flush_remainder(self) -> Optional[BatchAnalysis]:
        async with self._lock:
            await self._process_ready_batches()
            start = self._counter * self._batch_size
            if self._session is None or start >= len(self._artifacts):
                return None
            logger.info("Flushing remainder batch of %s artifacts", len(self._artifacts) - start)
            return await self._analyze_slice(start, len(self._artifacts))

    def status(self) -> dict[str, Any]:
        analysed = self._counter * self._batch_size
        return {
            "session_id": self._session.session_id if self._session else None,
            "batch_size": self._batch_size,
            "artifacts": len(self._artifacts),
            "pending": max(0, len(self._artifacts) - analysed),
            "batches_completed": self._counter,
            "processing": self._lock.locked(),
            "analysis_available": self._analysis_available,
            "last_error": self._last_error,
        }

    async def _process_ready_batches(self) -> int:
        produced = 0
        while self._session is not None and len(self._artifacts) >= self._counter * self._batch_size + self._batch_size:
            start = self._counter * self._batch_size
            analysis = await self._analyze_slice(start, start + self._batch_size)
            if analysis is None:
                break
            produced += 1
        return produced

    async def _analyze_slice(self, start: int, end: int) -> Optional[BatchAnalysis]:
        session = self._session
        if session is None:
            raise RuntimeError("No analysis session is active")
        batch = self._artifacts[start:end]
        batch_index = self._counter
        request = AnalysisRequest(
            session_id=session.session_id,
            session_goal=session.goal_text,
            goals=session.user_goals,
            artifacts=batch,
            batch_index=batch_index,
            profile=self._profile,
            session_start=session.started_at.isoformat(),
        )
        prompt = request.prompt()
        logger.info(
            "Analysing batch #%s (%s artifacts, %s-%s) with %s",
            batch_index,
            len(batch),
            start,
            end - 1,
            self._provider.name,
        )

        started = time.perf_counter()
        try:
            text = await generate_with_backoff(
                self._provider,
                prompt,
                request.images(),
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                sleep=self._sleep,
            )
        except WorkLensError as exc:
            self._analysis_available = False
            self._last_error = exc.message
            logger.error("Batch #%s analysis failed; will retry on the next trigger: %s", batch_index, exc)
            return None

        context = DecodeContext(
            batch_index=batch_index,
            session_id=session.session_id,
            artifact_ids=[artifact.artifact_id for artifact in batch],
            time_range_start=batch[0].captured_at,
            time_range_end=batch[-1].captured_at,
            goal_text=session.goal_text,
            has_goals=session.user_goals.has_any(),
            model=self._provider.model,
        )
        analysis = replace(
            decode_analysis(text, context),
            processing_ms=int((time.perf_counter() - started) * 1000),
            tokens_estimate=estimate_tokens(prompt, text),
        )

        self._counter += 1
        self._analyses.append(analysis)
        self._analysis_available = True
        self._last_error = None
        logger.info(
            "Batch #%s complete: alignment %.0f, %s work items",
            batch_index,
            analysis.alignment_score,
            len(analysis.summary.work_completed),
        )
        await self._recorder.record_batch(analysis, batch)
        return analysis
