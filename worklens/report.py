from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from .analysis import (
    RATE_LIMIT_BASE_SECONDS,
    RATE_LIMIT_MAX_ATTEMPTS,
    AnalysisBatcher,
    estimate_tokens,
    generate_with_backoff,
)
from .decoder import DecodeContext, decode_analysis
from .exceptions import WorkLensError
from .logging_utils import get_logger
from .models import AlignmentTrend, BatchAnalysis, FinalReport
from .prompts import build_synthesis_prompt

logger = get_logger("report")


def alignment_trend(analyses: Sequence[BatchAnalysis]) -> Optional[AlignmentTrend]:
    if len(analyses) < 2:
        return None
    scores = [analysis.alignment_score for analysis in analyses]
    change = scores[-1] - scores[0]
    if change > 0:
        direction = "improving"
    elif change < 0:
        direction = "declining"
    else:
        direction = "stable"
    return AlignmentTrend(
        direction=direction,
        score_change=change,
        scores=scores,
        peak_score=max(scores),
        lowest_score=min(scores),
    )


def common_blockers(analyses: Sequence[BatchAnalysis]) -> dict[str, int]:
    counts = Counter(blocker for analysis in analyses for blocker in analysis.blockers.all())
    return dict(counts.most_common())


def application_usage(analyses: Sequence[BatchAnalysis]) -> dict[str, int]:
    counts = Counter(app for analysis in analyses for app in analysis.applications)
    return dict(counts.most_common())


class SessionReportCombiner:
    """Turns the batch analyses of a session into one final report."""

    def __init__(
        self,
        batcher: AnalysisBatcher,
        *,
        max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
        base_delay: float = RATE_LIMIT_BASE_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._batcher = batcher
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep

    async def finalize(self) -> Optional[BatchAnalysis]:
        await self._batcher.flush_remainder()
        analyses = self._batcher.analyses
        session = self._batcher.session

        if not analyses or session is None:
            logger.info("No analyses for this session; no final report")
            return None

        if len(analyses) == 1:
            report: BatchAnalysis = analyses[0]
            logger.info("Single batch session; its analysis is the final report")
        else:
            report = await self._synthesize(session.goal_text, session.user_goals.has_any(), analyses)

        await self._batcher.recorder.record_final(report, self._final_extra(report, analyses))
        return report

    async def _synthesize(self, goal_text: str, has_goals: bool, analyses: List[BatchAnalysis]) -> BatchAnalysis:
        provider = self._batcher.provider
        prompt = build_synthesis_prompt(goal_text, analyses)
        logger.info("Synthesizing final report from %s batches", len(analyses))

        started = time.perf_counter()
        try:
            text = await generate_with_backoff(
                provider,
                prompt,
                max_attempts=self._max_attempts,
                base_delay=self._base_delay,
                sleep=self._sleep,
            )
        except WorkLensError as exc:
            logger.error("Final synthesis failed; using the last batch analysis: %s", exc)
            return analyses[-1]

        first, last = analyses[0], analyses[-1]
        context = DecodeContext(
            batch_index=len(analyses),
            session_id=first.session_id,
            artifact_ids=[artifact_id for analysis in analyses for artifact_id in analysis.artifact_ids],
            time_range_start=first.time_range_start,
            time_range_end=last.time_range_end,
            goal_text=goal_text,
            has_goals=has_goals,
            model=provider.model,
        )
        decoded = decode_analysis(text, context)
        if decoded.used_defaults:
            logger.error("Final synthesis returned no usable JSON; using the last batch analysis")
            return last

        return FinalReport(
            batch_index=decoded.batch_index,
            session_id=decoded.session_id,
            artifact_ids=decoded.artifact_ids,
            time_range_start=decoded.time_range_start,
            time_range_end=decoded.time_range_end,
            summary=decoded.summary,
            goal_alignment=decoded.goal_alignment,
            blockers=decoded.blockers,
            recognition=decoded.recognition,
            automation=decoded.automation,
            communication=decoded.communication,
            next_steps=decoded.next_steps,
            applications=decoded.applications,
            detected_urls=decoded.detected_urls,
            redacted_sensitive_data=decoded.redacted_sensitive_data,
            model=decoded.model,
            processing_ms=int((time.perf_counter() - started) * 1000),
            tokens_estimate=estimate_tokens(prompt, text),
            raw_response=text,
            batch_count=len(analyses),
            artifact_count=len(decoded.artifact_ids),
            alignment_trend=alignment_trend(analyses),
            common_blockers=common_blockers(analyses),
            application_usage=application_usage(analyses),
        )

    @staticmethod
    def _final_extra(report: BatchAnalysis, analyses: Sequence[BatchAnalysis]) -> dict[str, Any]:
        trend = alignment_trend(analyses)
        return {
            "total_batches": len(analyses),
            "total_screenshots": sum(len(analysis.artifact_ids) for analysis in analyses),
            "productivity_trend": (
                {
                    "trend_direction": trend.direction,
                    "score_change": trend.score_change,
                    "scores": trend.scores,
                    "peak_score": trend.peak_score,
                    "lowest_score": trend.lowest_score,
                }
                if trend
                else None
            ),
            "workflow_patterns": {
                "common_applications": application_usage(analyses),
                "common_blockers": common_blockers(analyses),
                "productivity_peaks": [analysis.alignment_score for analysis in analyses],
            },
            "processing_time_ms": report.processing_ms,
            "ai_combination_successful": isinstance(report, FinalReport),
        }
