"""Reaper: returns expired in-flight messages to the READY index.

A consumer that crashes or hangs without acknowledging leaves its message in
the UNACK index. :meth:`Reaper.process_unacks` moves every entry whose
deadline has passed back to READY, scored at that deadline so it is eligible
at once. The scan can be driven by any external scheduler, or by the
built-in loop started with :meth:`Reaper.start`.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from delayq.config import DEFAULT_REAPER_BATCH_SIZE, Settings, get_settings
from delayq.logging import get_logger
from delayq.queue.delay_queue import DelayQueue

log = get_logger("delayq.queue.reaper")


@dataclass
class ReaperStats:
    """Statistics about reaper runs."""

    total_runs: int = 0
    requeued: int = 0
    orphaned: int = 0
    last_run: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_runs": self.total_runs,
            "requeued": self.requeued,
            "orphaned": self.orphaned,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_error": self.last_error,
        }


class Reaper:
    """Periodic redelivery of unacknowledged messages for one queue."""

    def __init__(
        self,
        queue: DelayQueue,
        *,
        batch_size: int = DEFAULT_REAPER_BATCH_SIZE,
        interval_seconds: float = 60.0,
    ) -> None:
        self._queue = queue
        self._batch_size = batch_size
        self._interval_seconds = interval_seconds
        self._stats = ReaperStats()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, queue: DelayQueue, settings: Settings | None = None) -> Reaper:
        """Build a reaper from :class:`~delayq.config.Settings`."""
        settings = settings or get_settings()
        return cls(
            queue,
            batch_size=settings.reaper_batch_size,
            interval_seconds=settings.reaper_interval_seconds,
        )

    @property
    def stats(self) -> ReaperStats:
        """Get reaper statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if the reaper loop is running."""
        return self._running

    async def process_unacks(self) -> int:
        """Requeue in-flight messages whose deadline has passed.

        At most ``batch_size`` entries are handled per call. Entries without a
        payload are dropped from the in-flight index.

        Returns:
            Number of messages returned to the READY index.
        """
        queue = self._queue
        now = queue.now()
        expired = await queue.unack_index.range_by_score(0, now, 0, self._batch_size)

        requeued = 0
        orphaned = 0
        for member, deadline in expired:
            if await queue.payload_store.get(member) is None:
                orphaned += await queue.unack_index.remove(member)
                log.warning(
                    "payload_missing",
                    queue=queue.name,
                    message_id=member,
                    source="reaper",
                )
                continue
            # False when a consumer acked it or extended its lease since the scan.
            if await queue.unack_index.move(member, queue.ready_index, deadline, max_score=now):
                requeued += 1

        self._stats.total_runs += 1
        self._stats.last_run = datetime.now()
        self._stats.requeued += requeued
        self._stats.orphaned += orphaned
        queue.stats.orphaned_payloads += orphaned

        if requeued:
            log.info("unack_requeued", queue=queue.name, count=requeued, scanned=len(expired))
            await queue.notify()
        return requeued

    async def start(self) -> None:
        """Start the periodic reaper loop."""
        if self._running:
            log.warning("reaper_already_running", queue=self._queue.name)
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        log.info("reaper_started", queue=self._queue.name, interval=self._interval_seconds)

    async def stop(self) -> None:
        """Stop the periodic reaper loop."""
        self._running = False
        task = self._task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._task = None
        log.info("reaper_stopped", queue=self._queue.name)

    async def _run_loop(self) -> None:
        """Main reaper loop."""
        while self._running:
            try:
                await self.process_unacks()
            except Exception as e:
                log.exception("reaper_error", queue=self._queue.name)
                self._stats.last_error = str(e)

            await asyncio.sleep(self._interval_seconds)
