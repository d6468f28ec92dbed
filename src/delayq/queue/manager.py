"""Queue manager: consumer worker pool and reaper lifecycle.

Spawns ``asyncio.Task`` workers that claim messages from a
:class:`DelayQueue`, hand them to an async handler and acknowledge them when
the handler returns. A handler that raises leaves its message in flight; the
reaper makes it eligible again once the unack timeout has passed.

Supports graceful shutdown: stop claiming, drain in-flight handlers, cancel
the rest.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from typing import Any

from delayq.config import get_settings
from delayq.logging import get_logger
from delayq.queue.delay_queue import DelayQueue
from delayq.queue.models import Message
from delayq.queue.reaper import Reaper

log = get_logger("delayq.queue.manager")

MessageHandler = Callable[[Message], Awaitable[None]]


class QueueManager:
    """Runs consumer workers and, optionally, the reaper for one queue."""

    def __init__(
        self,
        queue: DelayQueue,
        handler: MessageHandler,
        *,
        reaper: Reaper | None = None,
        worker_count: int | None = None,
        poll_interval_ms: int | None = None,
        drain_timeout_seconds: float | None = None,
    ) -> None:
        """Initialise the manager.

        Args:
            queue: Queue to consume from.
            handler: Coroutine run for every claimed message.
            reaper: Optional reaper started and stopped with the workers.
            worker_count: Number of consumer tasks; defaults to
                ``Settings.worker_count``.
            poll_interval_ms: Longest wait per ``peek``; defaults to the
                queue's own poll interval.
            drain_timeout_seconds: Grace period for running handlers on
                stop; defaults to ``Settings.drain_timeout_seconds``.
        """
        self._queue = queue
        self._handler = handler
        self._reaper = reaper
        self._worker_count = worker_count
        self._poll_interval_ms = poll_interval_ms
        self._drain_timeout_seconds = drain_timeout_seconds
        self._workers: list[asyncio.Task[None]] = []
        self._running = False
        self._draining = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn worker tasks and start the reaper."""
        if self._running:
            log.warning("queue_manager_already_running", queue=self._queue.name)
            return

        worker_count = self._worker_count or get_settings().worker_count
        poll_seconds = (self._poll_interval_ms or self._queue.poll_interval_ms) / 1000.0
        self._running = True

        for i in range(worker_count):
            task = asyncio.create_task(
                self._worker_loop(name=f"{self._queue.name}-worker-{i}", poll_seconds=poll_seconds),
            )
            self._workers.append(task)

        if self._reaper is not None:
            await self._reaper.start()

        log.info(
            "queue_manager_started",
            queue=self._queue.name,
            workers=worker_count,
            reaper=self._reaper is not None,
        )

    async def stop(self) -> None:
        """Gracefully stop all workers.

        1. Stop claiming new messages (``_draining = True``).
        2. Wait up to ``drain_timeout_seconds`` for running handlers.
        3. Cancel remaining tasks and stop the reaper.

        Messages whose handler was cancelled stay in flight and are
        redelivered by the reaper.
        """
        if not self._running:
            return

        log.info("queue_manager_stopping", queue=self._queue.name)
        self._draining = True
        self._running = False

        if self._workers:
            drain_timeout = self._drain_timeout_seconds or get_settings().drain_timeout_seconds
            _, pending = await asyncio.wait(self._workers, timeout=drain_timeout)
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self._workers.clear()

        if self._reaper is not None:
            await self._reaper.stop()

        self._draining = False
        log.info("queue_manager_stopped", queue=self._queue.name)

    @property
    def is_running(self) -> bool:
        """Whether the manager is running."""
        return self._running

    async def get_status(self) -> dict[str, Any]:
        """Return queue sizes, counters and worker info."""
        return {
            "queue": self._queue.name,
            "running": self._running,
            "draining": self._draining,
            "workers": len(self._workers),
            "ready": await self._queue.size(),
            "unacked": await self._queue.unacked_size(),
            "stats": self._queue.stats.to_dict(),
            "reaper": self._reaper.stats.to_dict() if self._reaper else None,
        }

    # ------------------------------------------------------------------
    # Worker loop
    # ------------------------------------------------------------------

    async def _worker_loop(self, name: str, poll_seconds: float) -> None:
        """Claim messages and process them until stopped.

        Args:
            name: Human-readable worker name for logging.
            poll_seconds: Longest wait for a message before re-checking
                whether the manager is still running.
        """
        log.debug("worker_started", worker=name)

        while self._running:
            try:
                message = await self._queue.peek(wait_timeout=poll_seconds)
                if message is None:
                    continue
                await self._process_message(message, worker_name=name)

            except asyncio.CancelledError:
                break
            except Exception:
                log.exception("worker_error", worker=name)
                await asyncio.sleep(poll_seconds)

        log.debug("worker_stopped", worker=name)

    async def _process_message(self, message: Message, worker_name: str) -> None:
        """Run a single message through the handler and record the outcome."""
        log.debug("processing_message", message_id=message.id, worker=worker_name)

        try:
            await self._handler(message)
        except Exception as e:
            log.warning(
                "message_failed",
                message_id=message.id,
                error=str(e),
                worker=worker_name,
            )
            return

        if await self._queue.ack(message.id):
            log.debug("message_completed", message_id=message.id, worker=worker_name)
        else:
            # Lease expired, redelivered and acked by another consumer.
            log.warning("message_ack_lost", message_id=message.id, worker=worker_name)
