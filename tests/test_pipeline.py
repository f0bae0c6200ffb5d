"""Tests for wiring the pipeline from settings, with no network or display."""

import json

import pytest

from conftest import FakeGrabber, FakeProvider, FakeTriggerMonitor, GatedSleep
from worklens.config import (
    AnalyzerSettings,
    AppSettings,
    CaptureSettings,
    GeminiSettings,
    HttpSettings,
    LocalLLMSettings,
    LoggingSettings,
    OutputSettings,
    StorageSettings,
)
from worklens.exceptions import ConfigurationError
from worklens.gemini_client import GeminiProvider
from worklens.local_llm_client import LocalLLMProvider
from worklens.models import CaptureOptions, TriggerKind, UserGoals
from worklens.pipeline import Pipeline, build_http_client, build_provider, options_from_settings
from worklens.rendering import write_session_report


def make_settings(tmp_path, backend="gemini", batch_size=30, db=False):
    return AppSettings(
        capture=CaptureSettings(
            interval_ms=5000,
            quality=80,
            exclude_apps=("KeePass.exe",),
            include_mouse_position=True,
            privacy_mode=False,
            enable_event_triggers=True,
            batch_size=batch_size,
            upload_threshold=1,
            upload_max_attempts=None,
        ),
        http=HttpSettings(max_retries=0),
        storage=StorageSettings(
            object_store_url=None,
            backend_url=None,
            backend_token=None,
            local_root=tmp_path / "shots",
            analysis_db_path=tmp_path / "analyses.db" if db else None,
        ),
        analyzer=AnalyzerSettings(backend=backend),
        gemini=GeminiSettings(api_key=None, model="gemini-2.0-flash", max_tokens=256, temperature=0.3),
        local_llm=LocalLLMSettings(
            base_url="http://localhost:1234/v1", model="llava", api_key=None, max_tokens=256, temperature=0.3
        ),
        logging=LoggingSettings(directory=tmp_path / "logs"),
        output=OutputSettings(report_dir=tmp_path / "reports"),
    )


class TestBuilders:
    @pytest.mark.asyncio
    async def test_provider_selection(self, tmp_path):
        http = build_http_client(make_settings(tmp_path))

        assert isinstance(build_provider(make_settings(tmp_path), http), GeminiProvider)
        assert isinstance(build_provider(make_settings(tmp_path, backend="lmstudio"), http), LocalLLMProvider)
        with pytest.raises(ConfigurationError):
            build_provider(make_settings(tmp_path, backend="mystery"), http)
        await http.close()

    def test_options_from_settings_with_overrides(self, tmp_path):
        goals = UserGoals(team_micro=["Release 2.0"])
        options = options_from_settings(
            make_settings(tmp_path),
            session_goal="Fix the uploader",
            user_goals=goals,
            batch_size=5,
            interval_ms=None,
        )

        assert options.batch_size == 5
        assert options.interval_ms == 5000
        assert options.exclude_apps == ["KeePass.exe"]
        assert options.session_goal == "Fix the uploader"
        assert options.user_goals is goals

    def test_default_session_goal(self, tmp_path):
        assert options_from_settings(make_settings(tmp_path)).session_goal == "General Work Session"


class TestPipeline:
    """A whole session with no remote endpoints configured."""

    @pytest.mark.asyncio
    async def test_session_falls_back_to_local_storage_and_archive(self, tmp_path):
        settings = make_settings(tmp_path, batch_size=1, db=True)
        provider = FakeProvider()
        pipeline = Pipeline(
            settings,
            provider=provider,
            grabber=FakeGrabber(),
            trigger_monitor=FakeTriggerMonitor(),
            sleep=GatedSleep(),
        )

        await pipeline.start_session("s-42", options_from_settings(settings))
        await pipeline.trigger(TriggerKind.ENTER_KEY)
        result = await pipeline.stop_session()

        assert len(result.artifacts) == 2
        assert len(result.batch_analyses) == 2
        assert result.final_report is not None
        assert result.unresolved_uploads == []

        status = pipeline.status()
        assert status["capturing"] is False
        assert status["analyzer"] == "fake"
        assert status["local_storage"]["file_count"] == 2
        assert status["archived_analyses"] == 3
        assert status["upload"]["delivered"] == 2

        json_path, md_path = write_session_report(result, settings.output.report_dir)
        saved = json.loads(json_path.read_text(encoding="utf-8"))
        assert saved["session_id"] == "s-42"
        assert len(saved["artifacts"]) == 2
        assert "# Work session s-42" in md_path.read_text(encoding="utf-8")

        await pipeline.close()

    @pytest.mark.asyncio
    async def test_close_stops_running_session(self, tmp_path):
        settings = make_settings(tmp_path)
        pipeline = Pipeline(
            settings,
            provider=FakeProvider(),
            grabber=FakeGrabber(),
            trigger_monitor=FakeTriggerMonitor(),
            sleep=GatedSleep(),
        )
        await pipeline.start_session("s-1", CaptureOptions(enable_event_triggers=False))

        await pipeline.close()

        assert not pipeline.controller.capturing
