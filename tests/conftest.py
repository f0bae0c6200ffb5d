"""Shared fakes for WorkLens tests. Nothing here needs a display, network or API key."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from worklens.analysis import AnalysisBatcher, AnalysisRecorder
from worklens.capture import ScreenFrame
from worklens.models import ApiResponse, CaptureOptions, CapturedArtifact, CaptureSession, TriggerKind, UserGoals
from worklens.repository import LocalAnalysisArchive

T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


def analysis_json(summary="Implemented the upload queue", score=75, applications=None, technical=None) -> str:
    return json.dumps(
        {
            "summary": {
                "reportReadySummary": summary,
                "workCompleted": ["Wrote tests"],
                "timeBreakdown": {"coding": 40, "contextSwitching": 10},
            },
            "goalAlignment": {"alignmentScore": score},
            "blockers": {"technical": technical or [], "dependency": [], "process": []},
            "applications": applications or ["Code.exe"],
        }
    )


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns immediately."""

    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)


class GatedSleep:
    """Timer sleep that returns immediately ``free_calls`` times, then blocks until cancelled."""

    def __init__(self, free_calls=0):
        self.free_calls = free_calls
        self.calls = []
        self.exhausted = asyncio.Event()

    async def __call__(self, delay):
        self.calls.append(delay)
        if len(self.calls) > self.free_calls:
            self.exhausted.set()
            await asyncio.Event().wait()


class FakeProvider:
    name = "fake"
    model = "fake-model"
    available = True

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    async def generate_analysis(self, prompt, images=()):
        self.calls.append((prompt, list(images)))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return analysis_json(summary=f"Batch {len(self.calls)}")


class FakeGrabber:
    def __init__(self, application="Code.exe", title="worklens - Visual Studio Code"):
        self.application = application
        self.title = title
        self.grabs = 0
        self.fail = False

    def active_window(self):
        return self.title, self.application

    def grab(self, quality, include_mouse):
        if self.fail:
            raise OSError("screen not available")
        self.grabs += 1
        return ScreenFrame(image_bytes=b"\x89PNG-fake-%d" % self.grabs, mouse_position=(10, 20) if include_mouse else None)


class FakeTriggerMonitor:
    def __init__(self):
        self.started = False

    def start(self, loop):
        self.started = True

    def stop(self):
        self.started = False


def make_artifact(index=0, session_id="session-1", trigger=TriggerKind.INTERVAL, application="Code.exe", data=b"png"):
    captured_at = T0 + timedelta(seconds=5 * index)
    return CapturedArtifact(
        artifact_id=f"shot_{index:03d}",
        session_id=session_id,
        captured_at=captured_at,
        image_bytes=data,
        trigger_kind=trigger,
        active_window_title="Editor",
        active_application=application,
    )


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_grabber():
    return FakeGrabber()


@pytest.fixture
def unused_http():
    return MagicMock(name="ResilientHttpClient")


class FakeRegistry:
    """Backend registry double; ``accept=False`` makes every store call fail."""

    def __init__(self, accept=True):
        self.accept = accept
        self.batches = []
        self.finals = []

    async def store_batch_analysis(self, analysis, extra=None):
        self.batches.append((analysis, extra))
        return self._response()

    async def store_final_report(self, report, extra=None):
        self.finals.append((report, extra))
        return self._response()

    def _response(self):
        if self.accept:
            return ApiResponse.ok({"id": len(self.batches) + len(self.finals)}, status=201)
        return ApiResponse.fail("HTTP_500", "registry down", status=500)


class RaisingRegistry(FakeRegistry):
    """Registry whose calls raise instead of returning a failed envelope."""

    def __init__(self, error=None):
        super().__init__()
        self.error = error or OverflowError("connect(): port must be 0-65535")

    def _response(self):
        raise self.error


def make_batcher(provider, *, registry=None, archive=None, sleep=None, batch_size=3, goals=None, session_id="session-1"):
    """Build an AnalysisBatcher with a started session."""
    recorder = AnalysisRecorder(registry or FakeRegistry(), archive or LocalAnalysisArchive())
    batcher = AnalysisBatcher(provider, recorder, sleep=sleep or RecordingSleep())
    options = CaptureOptions(batch_size=batch_size, user_goals=goals or UserGoals())
    batcher.begin_session(CaptureSession(session_id=session_id, options=options, started_at=T0))
    return batcher
