from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

from PIL import Image

from .analysis import AnalysisBatcher
from .logging_utils import get_logger
from .models import (
    CapturedArtifact,
    CaptureOptions,
    CaptureSession,
    SessionResult,
    TriggerKind,
    new_artifact_id,
)
from .report import SessionReportCombiner
from .triggers import InputTriggerMonitor
from .upload_queue import UploadQueue
from .utils import get_active_window, process_memory_bytes

logger = get_logger("capture")

MAX_SIZE = (1280, 720)

PrivacyFilter = Callable[[bytes, Tuple[str, str]], bytes]


@dataclass(frozen=True)
class ScreenFrame:
    image_bytes: bytes
    mouse_position: Optional[Tuple[int, int]] = None


def encode_png(image: Image.Image, quality: int = 80) -> bytes:
    """Fit ``image`` into 1280x720 and encode it as PNG.

    PNG is lossless, so ``quality`` only trades encoding time for size.
    """
    frame = image.convert("RGB")
    frame.thumbnail(MAX_SIZE)
    buffer = io.BytesIO()
    compress_level = max(0, min(9, round((100 - quality) / 100 * 9)))
    frame.save(buffer, format="PNG", optimize=quality < 50, compress_level=compress_level)
    return buffer.getvalue()


class ScreenGrabber:
    """Blocking screen access; the controller runs it in a worker thread."""

    def active_window(self) -> Tuple[str, str]:
        return get_active_window()

    def grab(self, quality: int, include_mouse: bool) -> ScreenFrame:
        import pyautogui

        pyautogui.FAILSAFE = False
        screenshot = pyautogui.screenshot()
        mouse_position = None
        if include_mouse:
            point = pyautogui.position()
            mouse_position = (int(point[0]), int(point[1]))
        return ScreenFrame(image_bytes=encode_png(screenshot, quality), mouse_position=mouse_position)


class CaptureController:
    def __init__(
        self,
        grabber: ScreenGrabber,
        upload_queue: UploadQueue,
        batcher: AnalysisBatcher,
        combiner: SessionReportCombiner,
        *,
        trigger_monitor: Optional[InputTriggerMonitor] = None,
        privacy_filter: Optional[PrivacyFilter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._grabber = grabber
        self._queue = upload_queue
        self._batcher = batcher
        self._combiner = combiner
        self._monitor = trigger_monitor or InputTriggerMonitor(self.trigger)
        self._privacy_filter = privacy_filter or (lambda image_bytes, window: image_bytes)
        self._sleep = sleep
        self._clock = clock

        self._session: Optional[CaptureSession] = None
        self._artifacts: List[CapturedArtifact] = []
        self._capture_lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def capturing(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def artifacts(self) -> List[CapturedArtifact]:
        return list(self._artifacts)

    async def start_capture(self, session_id: str, options: CaptureOptions | None = None) -> CaptureSession:
        if self._session is not None:
            logger.info("Stopping session %s before starting %s", self._session.session_id, session_id)
            await self.stop_capture()

        session = CaptureSession(session_id=session_id, options=options or CaptureOptions())
        self._session = session
        self._artifacts = []
        self._batcher.begin_session(session)
        logger.info(
            "Capture started: session=%s interval=%ss batch_size=%s triggers=%s",
            session_id,
            session.options.interval_seconds,
            session.batch_size,
            session.options.enable_event_triggers,
        )

        await self._capture(TriggerKind.INTERVAL, {"reason": "session-start"})
        self._timer = asyncio.create_task(self._run_timer(session))

        if session.options.enable_event_triggers:
            try:
                self._monitor.start(asyncio.get_running_loop())
            except Exception as exc:
                # No display server or input permissions; interval capture still runs.
                logger.warning("Input triggers unavailable: %s", exc)
        return session

    async def stop_capture(self) -> Optional[SessionResult]:
        session = self._session
        if session is None:
            return None

        if self._timer is not None:
            self._timer.cancel()
        self._monitor.stop()
        # No new captures from here on; in-flight ones finish first.
        self._session = None
        if self._timer is not None:
            await asyncio.gather(self._timer, return_exceptions=True)
            self._timer = None
        async with self._capture_lock:
            pass
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

        unresolved = await self._queue.finalize()
        final_report = None
        try:
            final_report = await self._combiner.finalize()
        except Exception as exc:
            logger.exception("Final report failed for %s: %s", session.session_id, exc)
        finally:
            analyses = self._batcher.analyses
            self._batcher.end_session()

        logger.info(
            "Capture stopped: session=%s artifacts=%s batches=%s unresolved_uploads=%s",
            session.session_id,
            len(self._artifacts),
            len(analyses),
            len(unresolved),
        )
        return SessionResult(
            session_id=session.session_id,
            artifacts=list(self._artifacts),
            batch_analyses=analyses,
            final_report=final_report,
            unresolved_uploads=unresolved,
        )

    async def trigger(self, kind: TriggerKind, detail: dict | None = None) -> Optional[CapturedArtifact]:
        """Capture for an interaction event. Ignored unless a session is active."""
        if self._session is None:
            return None
        logger.debug("Trigger %s %s", kind.value, detail or {})
        return await self._capture(kind, detail or {})

    def status(self) -> dict[str, Any]:
        analysis = self._batcher.status()
        return {
            "capturing": self.capturing,
            "session_id": self._session.session_id if self._session else None,
            "artifact_count": len(self._artifacts),
            "artifact_bytes": sum(artifact.byte_size for artifact in self._artifacts),
            "process_memory_bytes": process_memory_bytes(),
            "upload": self._queue.status(),
            "batches_completed": analysis["batches_completed"],
            "analysis_available": analysis["analysis_available"],
            "last_error": analysis["last_error"],
        }

    async def _run_timer(self, session: CaptureSession) -> None:
        interval = session.options.interval_seconds
        while self._session is session:
            await self._sleep(interval)
            if self._session is not session:
                break
            await self._capture(TriggerKind.INTERVAL, {})

    async def _capture(self, kind: TriggerKind, detail: dict) -> Optional[CapturedArtifact]:
        async with self._capture_lock:
            session = self._session
            if session is None:
                return None
            options = session.options

            try:
                window = await asyncio.to_thread(self._grabber.active_window)
                if options.is_excluded(window[1]):
                    logger.debug("Skipping capture: %s is excluded", window[1])
                    return None
                frame = await asyncio.to_thread(self._grabber.grab, options.quality, options.include_mouse_position)
                image_bytes = frame.image_bytes
                if options.privacy_mode:
                    image_bytes = self._privacy_filter(image_bytes, window)
            except Exception as exc:
                logger.exception("Failed to capture screenshot: %s", exc)
                return None

            captured_at = self._clock()
            artifact = CapturedArtifact(
                artifact_id=new_artifact_id(captured_at),
                session_id=session.session_id,
                captured_at=captured_at,
                image_bytes=image_bytes,
                trigger_kind=kind,
                trigger_detail=detail,
                active_window_title=window[0],
                active_application=window[1],
                source_url=detail.get("url"),
                mouse_position=frame.mouse_position,
            )
            self._artifacts.append(artifact)
            self._queue.enqueue(artifact)
            self._batcher.record_artifact(artifact)
            logger.info(
                "Captured %s (%s, %s bytes, %s)",
                artifact.artifact_id,
                kind.value,
                artifact.byte_size,
                artifact.active_window_title,
            )

        self._spawn(self._queue.process_queue())
        self._spawn(self._batcher.check_for_trigger())
        return artifact

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed: %s", task.exception())
