"""
Ordered, durable-in-memory queue of captured artifacts awaiting storage.

Artifacts are never dropped: a failed store puts the task back at the front of
the queue in capture order, so the next drain retries oldest first.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, List, Optional

from .logging_utils import get_logger
from .models import CapturedArtifact, StoreResult, UploadTask
from .storage import TieredStorageWriter

logger = get_logger("upload")


class UploadQueue:
    def __init__(
        self,
        writer: TieredStorageWriter,
        *,
        threshold: int = 1,
        max_attempts: Optional[int] = None,
    ):
        self._writer = writer
        self._threshold = max(1, threshold)
        self._max_attempts = max_attempts
        self._queue: Deque[UploadTask] = deque()
        self._dead_letters: List[UploadTask] = []
        self._lock = asyncio.Lock()
        self._delivered = 0

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> bool:
        return self._lock.locked()

    @property
    def dead_letters(self) -> List[UploadTask]:
        return list(self._dead_letters)

    def pending(self) -> List[UploadTask]:
        return list(self._queue)

    def enqueue(self, artifact: CapturedArtifact) -> UploadTask:
        task = UploadTask(artifact=artifact)
        self._queue.append(task)
        logger.debug("Queued %s (queue size %s)", artifact.artifact_id, len(self._queue))
        return task

    async def process_queue(self, force: bool = False) -> int:
        """Drain the queue once. Returns the number of artifacts stored.

        A call made while another drain is running returns 0 immediately.
        """
        if self._lock.locked():
            logger.debug("Drain already in progress; skipping")
            return 0

        async with self._lock:
            return await self._drain(force)

    async def finalize(self) -> List[UploadTask]:
        """Force a final drain and hand back everything still unresolved."""
        # Waits for a drain already in flight instead of skipping.
        async with self._lock:
            await self._drain(force=True)

        unresolved = [*self._dead_letters, *self._queue]
        self._queue.clear()
        if unresolved:
            logger.warning("%s artifacts remain unresolved at session end", len(unresolved))
        return unresolved

    async def _drain(self, force: bool) -> int:
        if not self._queue:
            return 0
        if not force and len(self._queue) < self._threshold:
            return 0

        batch = list(self._queue)
        self._queue.clear()
        logger.info("Storing %s queued artifacts%s", len(batch), " (forced)" if force else "")

        try:
            results = await self._writer.store_batch([task.artifact for task in batch])
        except asyncio.CancelledError:
            self._queue.extendleft(reversed(batch))
            raise
        except Exception as exc:
            logger.exception("Storing %s artifacts raised; treating the whole drain as failed", len(batch))
            results = _failed(batch, str(exc))
        if len(results) != len(batch):
            logger.error("Writer returned %s results for %s artifacts; retrying all", len(results), len(batch))
            results = _failed(batch, "writer result count mismatch")

        retry: List[UploadTask] = []
        stored = 0
        for task, result in zip(batch, results):
            task.attempt_count += 1
            if result.success:
                task.resolved_storage_url = result.storage_ref
                task.last_error = None
                stored += 1
                continue

            task.last_error = result.error
            if self._max_attempts is not None and task.attempt_count >= self._max_attempts:
                logger.error(
                    "Giving up on %s after %s attempts: %s",
                    task.artifact.artifact_id,
                    task.attempt_count,
                    task.last_error,
                )
                self._dead_letters.append(task)
            else:
                retry.append(task)

        # Failures go back ahead of anything enqueued during the drain.
        self._queue.extendleft(reversed(retry))
        self._delivered += stored
        if retry:
            logger.warning("%s artifacts failed to store and were re-queued", len(retry))
        return stored

    def status(self) -> dict:
        return {
            "queue_size": len(self._queue),
            "processing": self.processing,
            "delivered": self._delivered,
            "dead_letters": len(self._dead_letters),
        }


def _failed(batch: List[UploadTask], error: str) -> List[StoreResult]:
    return [StoreResult(artifact_id=task.artifact.artifact_id, success=False, error=error) for task in batch]
