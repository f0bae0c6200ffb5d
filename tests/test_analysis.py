"""Tests for incremental batch analysis."""

import asyncio

import pytest

from conftest import FakeProvider, FakeRegistry, RaisingRegistry, RecordingSleep, analysis_json, make_artifact, make_batcher
from worklens.analysis import AnalysisRecorder, estimate_cost, focus_score, generate_with_backoff, trigger_breakdown
from worklens.decoder import DecodeContext, default_analysis
from worklens.exceptions import ProviderError, RateLimitError
from worklens.models import TriggerKind, UserGoals
from worklens.repository import LocalAnalysisArchive


class TestGenerateWithBackoff:
    """Only rate limiting is retried, with doubling delays."""

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self, recording_sleep):
        provider = FakeProvider([RateLimitError("429"), RateLimitError("429"), "ok"])

        text = await generate_with_backoff(provider, "prompt", sleep=recording_sleep)

        assert text == "ok"
        assert recording_sleep.calls == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, recording_sleep):
        provider = FakeProvider([RateLimitError("429")] * 3)

        with pytest.raises(RateLimitError):
            await generate_with_backoff(provider, "prompt", sleep=recording_sleep)

        assert len(provider.calls) == 3
        assert recording_sleep.calls == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_other_provider_errors_are_not_retried(self, recording_sleep):
        provider = FakeProvider([ProviderError("bad request")])

        with pytest.raises(ProviderError):
            await generate_with_backoff(provider, "prompt", sleep=recording_sleep)

        assert len(provider.calls) == 1
        assert recording_sleep.calls == []


class TestAnalysisBatcher:
    """Tests for batching, ordering and failure deferral."""

    @pytest.mark.asyncio
    async def test_full_batches_are_analysed_in_order(self, fake_provider):
        batcher = make_batcher(fake_provider, batch_size=3)

        for index in range(7):
            await batcher.on_artifact(make_artifact(index))

        analyses = batcher.analyses
        assert [a.batch_index for a in analyses] == [0, 1]
        assert analyses[0].artifact_ids == ["shot_000", "shot_001", "shot_002"]
        assert analyses[1].artifact_ids == ["shot_003", "shot_004", "shot_005"]
        assert analyses[1].time_range_start == make_artifact(3).captured_at
        assert analyses[1].time_range_end == make_artifact(5).captured_at
        assert batcher.analysis_counter == 2
        assert batcher.status()["pending"] == 1
        assert len(fake_provider.calls[0][1]) == 3

    @pytest.mark.asyncio
    async def test_flush_remainder_analyses_the_tail(self, fake_provider):
        batcher = make_batcher(fake_provider, batch_size=3)
        for index in range(7):
            batcher.record_artifact(make_artifact(index))

        remainder = await batcher.flush_remainder()

        assert batcher.analysis_counter == 3
        assert remainder.batch_index == 2
        assert remainder.artifact_ids == ["shot_006"]
        assert await batcher.flush_remainder() is None

    @pytest.mark.asyncio
    async def test_artifacts_from_other_sessions_are_ignored(self, fake_provider):
        batcher = make_batcher(fake_provider, batch_size=1)

        produced = await batcher.on_artifact(make_artifact(0, session_id="other"))

        assert produced == 0
        assert batcher.artifacts == []
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_rate_limited_batch_is_deferred_and_retried(self):
        sleep = RecordingSleep()
        provider = FakeProvider([RateLimitError("429")] * 3)
        batcher = make_batcher(provider, sleep=sleep, batch_size=3)
        for index in range(3):
            batcher.record_artifact(make_artifact(index))

        assert await batcher.check_for_trigger() == 0
        assert sleep.calls == [2.0, 4.0]
        assert batcher.analysis_counter == 0
        status = batcher.status()
        assert status["analysis_available"] is False
        assert status["last_error"] == "429"
        assert status["pending"] == 3

        assert await batcher.force_process() == 1
        assert batcher.analyses[0].artifact_ids == ["shot_000", "shot_001", "shot_002"]
        assert batcher.status()["analysis_available"] is True

    @pytest.mark.asyncio
    async def test_failure_stops_later_batches(self):
        provider = FakeProvider([ProviderError("down")])
        batcher = make_batcher(provider, batch_size=2)
        for index in range(4):
            batcher.record_artifact(make_artifact(index))

        assert await batcher.check_for_trigger() == 0
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_check_is_skipped(self):
        gate = asyncio.Event()

        class SlowProvider(FakeProvider):
            async def generate_analysis(self, prompt, images=()):
                await gate.wait()
                return await super().generate_analysis(prompt, images)

        provider = SlowProvider()
        batcher = make_batcher(provider, batch_size=1)
        batcher.record_artifact(make_artifact(0))

        first = asyncio.create_task(batcher.check_for_trigger())
        await asyncio.sleep(0)
        assert batcher.status()["processing"]
        assert await batcher.check_for_trigger() == 0

        gate.set()
        assert await first == 1
        assert batcher.analysis_counter == 1

    @pytest.mark.asyncio
    async def test_goals_raise_default_alignment(self):
        provider = FakeProvider(["not json at all"])
        batcher = make_batcher(provider, batch_size=1, goals=UserGoals(personal_micro=["Ship it"]))

        await batcher.on_artifact(make_artifact(0))

        analysis = batcher.analyses[0]
        assert analysis.used_defaults
        assert analysis.alignment_score == 80.0


class TestAnalysisRecorder:
    """Registry first, local archive on refusal."""

    @pytest.mark.asyncio
    async def test_batch_payload_extras(self):
        registry = FakeRegistry()
        provider = FakeProvider([analysis_json(score=75)])
        batcher = make_batcher(provider, registry=registry, batch_size=2)

        await batcher.on_artifact(make_artifact(0, trigger=TriggerKind.POINTER_CLICK))
        await batcher.on_artifact(make_artifact(1))

        analysis, extra = registry.batches[0]
        assert analysis.batch_index == 0
        assert extra["duration_seconds"] == 5
        assert extra["alignment_score"] == 7.5
        assert extra["focus_score"] == 8.0
        assert extra["ai_model"] == "fake-model"
        assert extra["trigger_breakdown"] == {"pointer-click": 1, "interval": 1}
        assert extra["tokens_used"] == analysis.tokens_estimate > 0

    @pytest.mark.asyncio
    async def test_refused_batch_is_archived(self, fake_provider):
        archive = LocalAnalysisArchive()
        batcher = make_batcher(fake_provider, registry=FakeRegistry(accept=False), archive=archive, batch_size=1)

        await batcher.on_artifact(make_artifact(0))

        entries = archive.for_session("session-1", "batch")
        assert len(entries) == 1
        assert entries[0]["batch_index"] == 0
        assert entries[0]["analysis"]["summary"]["report_ready_summary"] == "Batch 1"

    @pytest.mark.asyncio
    async def test_raising_registry_is_archived_not_raised(self, fake_provider):
        archive = LocalAnalysisArchive()
        batcher = make_batcher(fake_provider, registry=RaisingRegistry(), archive=archive, batch_size=2)

        assert await batcher.on_artifact(make_artifact(0)) == 0
        assert await batcher.on_artifact(make_artifact(1)) == 1

        assert batcher.analysis_counter == 1
        entries = archive.for_session("session-1", "batch")
        assert [entry["batch_index"] for entry in entries] == [0]

    @pytest.mark.asyncio
    async def test_record_reports_whether_backend_stored(self, fake_provider):
        batcher = make_batcher(fake_provider, batch_size=1)
        await batcher.on_artifact(make_artifact(0))
        analysis = batcher.analyses[0]

        assert await AnalysisRecorder(FakeRegistry(), LocalAnalysisArchive()).record_final(analysis) is True
        assert await AnalysisRecorder(FakeRegistry(accept=False), LocalAnalysisArchive()).record_final(analysis) is False
        assert await AnalysisRecorder(RaisingRegistry(), LocalAnalysisArchive()).record_final(analysis) is False


class TestMetrics:
    def test_focus_score_defaults_without_breakdown(self):
        context = DecodeContext(0, "s", [], make_artifact(0).captured_at, make_artifact(0).captured_at)
        assert focus_score(default_analysis(context)) == 7.0

    def test_cost_estimate(self):
        assert estimate_cost(1000) == 0.00015
        assert estimate_cost(0) == 0.0

    def test_trigger_breakdown_counts_kinds(self):
        artifacts = [make_artifact(0), make_artifact(1, trigger=TriggerKind.COPY), make_artifact(2)]
        assert trigger_breakdown(artifacts) == {"interval": 2, "copy": 1}
