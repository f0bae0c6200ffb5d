from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Sequence

from .exceptions import ConfigurationError, StorageError, WorkLensError
from .http_client import ResilientHttpClient
from .logging_utils import get_logger
from .models import ApiResponse, BatchAnalysis, CapturedArtifact, StoreResult
from .utils import ensure_directory

logger = get_logger("storage")

GROUP_SIZE = 3
GROUP_DELAY_SECONDS = 0.1


class RemoteObjectStore:
    """Primary tier: the remote object store behind the backend upload endpoint."""

    def __init__(self, http: ResilientHttpClient, base_url: str | None):
        self._http = http
        self._base_url = base_url

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    async def put(self, artifact: CapturedArtifact) -> str:
        if not self._base_url:
            raise ConfigurationError("OBJECT_STORE_URL is not configured")

        payload = {
            "screenshot_id": artifact.artifact_id,
            "session_id": artifact.session_id,
            "base64_data": base64.b64encode(artifact.image_bytes).decode("ascii"),
            "timestamp": artifact.captured_at.isoformat(),
            "window_title": artifact.active_window_title,
            "application": artifact.active_application,
            "trigger": artifact.trigger_kind.value,
        }
        response = await self._http.execute("POST", f"{self._base_url}/screenshots/upload", payload)
        if not response.success:
            error = response.error
            raise StorageError(
                f"Remote upload failed: {error.message if error else 'unknown error'}",
                tier="remote",
                details={"code": error.code if error else None},
            )

        storage_url = _find_storage_url(response.data)
        if not storage_url:
            raise StorageError("Remote upload response missing storage_url", tier="remote")
        return storage_url


class LocalArtifactStore:
    """Fallback tier: ``{base}/{session_id}/{timestamp}_{artifact_id}.png`` on local disk."""

    def __init__(self, base_path: Path):
        self._base_path = base_path

    @property
    def base_path(self) -> Path:
        return self._base_path

    def path_for(self, artifact: CapturedArtifact) -> Path:
        # ISO-8601 with ':' swapped out so the name is valid on Windows.
        stamp = artifact.captured_at.isoformat().replace(":", "-")
        session = artifact.session_id or "unknown-session"
        return self._base_path / session / f"{stamp}_{artifact.artifact_id}.png"

    def save(self, artifact: CapturedArtifact) -> str:
        if not artifact.image_bytes:
            raise StorageError("No image data found", tier="local")
        path = self.path_for(artifact)
        try:
            ensure_directory(path.parent)
            path.write_bytes(artifact.image_bytes)
        except OSError as exc:
            raise StorageError(f"Local save failed: {exc}", tier="local", details={"path": str(path)}) from exc
        logger.debug("Saved %s locally (%s bytes)", path.name, artifact.byte_size)
        return path.resolve().as_uri()

    def stats(self) -> dict[str, Any]:
        file_count = 0
        total_bytes = 0
        if self._base_path.exists():
            for path in self._base_path.glob("*/*.png"):
                file_count += 1
                total_bytes += path.stat().st_size
        return {"base_path": str(self._base_path), "file_count": file_count, "total_bytes": total_bytes}


class BackendRegistry:
    """Backend metadata registry. Deduplication is the registry's concern."""

    def __init__(self, http: ResilientHttpClient, base_url: str | None):
        self._http = http
        self._base_url = base_url
        self._warned_unconfigured = False

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    async def register_screenshot(self, artifact: CapturedArtifact, storage_ref: str) -> ApiResponse:
        payload = {
            "session_id": artifact.session_id,
            "screenshot_id": artifact.artifact_id,
            "file_storage_key": storage_ref,
            "file_size_bytes": artifact.byte_size,
            "timestamp": artifact.captured_at.isoformat(),
            "capture_trigger": artifact.trigger_kind.value,
            "trigger_details": artifact.trigger_detail,
            "window_title": artifact.active_window_title,
            "active_app": artifact.active_application,
            "url": artifact.source_url,
        }
        return await self._post("/screenshots", payload)

    async def store_batch_analysis(self, analysis: BatchAnalysis, extra: dict[str, Any] | None = None) -> ApiResponse:
        payload = {
            "session_id": analysis.session_id,
            "batch_number": analysis.batch_index,
            "analysis_type": "batch",
            "screenshot_ids": analysis.artifact_ids,
            "screenshot_count": len(analysis.artifact_ids),
            "time_range_start": analysis.time_range_start.isoformat(),
            "time_range_end": analysis.time_range_end.isoformat(),
            "analysis_results": analysis.to_dict(),
            **(extra or {}),
        }
        return await self._post("/analysis/batch", payload)

    async def store_final_report(self, report: BatchAnalysis, extra: dict[str, Any] | None = None) -> ApiResponse:
        payload = {
            "session_id": report.session_id,
            "combined_analysis": report.to_dict(),
            "session_story": report.summary.report_ready_summary,
            **(extra or {}),
        }
        return await self._post("/analysis/final", payload)

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> ApiResponse:
        if not self._base_url:
            if not self._warned_unconfigured:
                logger.warning("BACKEND_URL is not configured; registry calls will report failure")
                self._warned_unconfigured = True
            return ApiResponse.fail("NOT_CONFIGURED", "BACKEND_URL is not configured")
        return await self._http.execute("POST", f"{self._base_url}{endpoint}", payload)


class TieredStorageWriter:
    def __init__(
        self,
        remote: RemoteObjectStore,
        local: LocalArtifactStore,
        registry: BackendRegistry,
        *,
        group_size: int = GROUP_SIZE,
        group_delay_seconds: float = GROUP_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._remote = remote
        self._local = local
        self._registry = registry
        self._group_size = max(1, group_size)
        self._group_delay = group_delay_seconds
        self._sleep = sleep

    async def store(self, artifact: CapturedArtifact) -> StoreResult:
        warnings: List[str] = []
        storage_ref: str | None = None
        tier: str | None = None

        try:
            storage_ref = await self._remote.put(artifact)
            tier = "remote"
        except WorkLensError as exc:
            logger.warning("Remote store failed for %s: %s; falling back to local disk", artifact.artifact_id, exc.message)
            remote_error = exc.message
        except Exception as exc:
            logger.exception("Remote store raised for %s; falling back to local disk", artifact.artifact_id)
            remote_error = str(exc)

        if tier == "remote":
            try:
                self._local.save(artifact)
            except StorageError as exc:
                logger.warning("Local backup of %s failed: %s", artifact.artifact_id, exc.message)
                warnings.append(f"local backup failed: {exc.message}")
        else:
            try:
                storage_ref = self._local.save(artifact)
                tier = "local"
            except StorageError as exc:
                logger.error("Both storage tiers failed for %s: %s", artifact.artifact_id, exc.message)
                return StoreResult(
                    artifact_id=artifact.artifact_id,
                    success=False,
                    error=f"remote: {remote_error}; local: {exc.message}",
                )

        try:
            registration = await self._registry.register_screenshot(artifact, storage_ref)
        except Exception as exc:
            logger.exception("Registering %s raised (stored at %s)", artifact.artifact_id, storage_ref)
            registration = ApiResponse.fail("REGISTRATION_ERROR", str(exc))
        if not registration.success:
            message = registration.error.message if registration.error else "unknown error"
            logger.warning("Registry rejected %s (stored at %s): %s", artifact.artifact_id, storage_ref, message)
            warnings.append(f"registration failed: {message}")

        return StoreResult(
            artifact_id=artifact.artifact_id,
            success=True,
            storage_ref=storage_ref,
            tier=tier,
            warnings=warnings,
        )

    async def store_batch(self, artifacts: Sequence[CapturedArtifact]) -> List[StoreResult]:
        results: List[StoreResult] = []
        groups = [artifacts[i : i + self._group_size] for i in range(0, len(artifacts), self._group_size)]
        for index, group in enumerate(groups):
            if index > 0 and self._group_delay > 0:
                await self._sleep(self._group_delay)
            results.extend(await asyncio.gather(*(self.store(artifact) for artifact in group)))

        stored = sum(1 for result in results if result.success)
        logger.info("Stored %s/%s artifacts (%s groups)", stored, len(results), len(groups))
        return results


def _find_storage_url(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    if data.get("success") is False:
        return None
    url = data.get("storage_url") or data.get("storageUrl")
    if url:
        return str(url)
    nested = data.get("data")
    if isinstance(nested, dict):
        return _find_storage_url(nested)
    return None
