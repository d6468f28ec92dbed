"""Tests for QueueManager: worker lifecycle, ack-on-success, redelivery on failure."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from delayq.queue.delay_queue import DelayQueue
from delayq.queue.manager import QueueManager
from delayq.queue.models import Message
from delayq.queue.reaper import Reaper
from delayq.storage.memory import InMemoryBackend


@pytest.fixture
def mock_settings() -> Iterator[MagicMock]:
    """Patch the settings seen by the manager."""
    with patch("delayq.queue.manager.get_settings") as get_settings:
        s = MagicMock()
        s.worker_count = 2
        s.drain_timeout_seconds = 1.0
        get_settings.return_value = s
        yield s


async def _wait_for(predicate, timeout: float = 1.0) -> None:  # type: ignore[no-untyped-def]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestQueueManagerLifecycle:
    """Tests for QueueManager start/stop."""

    @pytest.mark.asyncio
    async def test_start_creates_workers(self, mock_settings: MagicMock) -> None:
        queue = DelayQueue(InMemoryBackend(), "jobs", poll_interval_ms=20)
        mgr = QueueManager(queue, AsyncMock())

        await mgr.start()
        assert mgr.is_running is True
        assert len(mgr._workers) == 2

        await mgr.stop()
        assert mgr.is_running is False
        assert len(mgr._workers) == 0

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_noop(self) -> None:
        queue = DelayQueue(InMemoryBackend(), "jobs")
        mgr = QueueManager(queue, AsyncMock())
        await mgr.stop()  # Should not raise

    @pytest.mark.asyncio
    async def test_double_start_is_noop(self, mock_settings: MagicMock) -> None:
        mock_settings.worker_count = 1
        queue = DelayQueue(InMemoryBackend(), "jobs", poll_interval_ms=20)
        mgr = QueueManager(queue, AsyncMock())

        await mgr.start()
        worker_count = len(mgr._workers)
        await mgr.start()
        assert len(mgr._workers) == worker_count

        await mgr.stop()

    @pytest.mark.asyncio
    async def test_starts_and_stops_reaper(self, mock_settings: MagicMock) -> None:
        queue = DelayQueue(InMemoryBackend(), "jobs", poll_interval_ms=20)
        reaper = Reaper(queue, interval_seconds=10)
        mgr = QueueManager(queue, AsyncMock(), reaper=reaper)

        await mgr.start()
        assert reaper.is_running is True
        await mgr.stop()
        assert reaper.is_running is False

    @pytest.mark.asyncio
    async def test_constructor_overrides_settings(self, mock_settings: MagicMock) -> None:
        queue = DelayQueue(InMemoryBackend(), "jobs", poll_interval_ms=20)
        mgr = QueueManager(queue, AsyncMock(), worker_count=3, drain_timeout_seconds=0.5)

        await mgr.start()
        assert len(mgr._workers) == 3
        await mgr.stop()

    @pytest.mark.asyncio
    async def test_polls_at_queue_interval(self, mock_settings: MagicMock) -> None:
        mock_settings.worker_count = 1
        queue = DelayQueue(InMemoryBackend(), "jobs", poll_interval_ms=35)
        timeouts: list[float | None] = []

        async def fake_peek(wait_timeout: float | None = None) -> None:
            timeouts.append(wait_timeout)
            await asyncio.sleep(0.01)

        queue.peek = fake_peek  # type: ignore[method-assign,assignment]
        mgr = QueueManager(queue, AsyncMock())

        await mgr.start()

        async def polled() -> bool:
            return len(timeouts) >= 1

        await _wait_for(polled)
        await mgr.stop()

        assert timeouts[0] == 0.035

    @pytest.mark.asyncio
    async def test_get_status(self) -> None:
        queue = DelayQueue(InMemoryBackend(), "jobs")
        await queue.push(Message(delay_ms=10_000))
        mgr = QueueManager(queue, AsyncMock())

        status = await mgr.get_status()

        assert status["queue"] == "jobs"
        assert status["running"] is False
        assert status["ready"] == 1
        assert status["unacked"] == 0
        assert status["stats"]["pushed"] == 1
        assert status["reaper"] is None


class TestQueueManagerProcessing:
    """Tests for message handling by workers."""

    @pytest.mark.asyncio
    async def test_handler_success_acks(self, mock_settings: MagicMock) -> None:
        queue = DelayQueue(InMemoryBackend(), "jobs", poll_interval_ms=20)
        seen: list[str] = []

        async def handler(message: Message) -> None:
            seen.append(message.id)

        mgr = QueueManager(queue, handler)
        await queue.push(Message(id="A"))
        await mgr.start()

        async def drained() -> bool:
            return await queue.size() == 0 and await queue.unacked_size() == 0

        await _wait_for(drained)
        await mgr.stop()

        assert seen == ["A"]
        assert await queue.get("A") is None
        assert queue.stats.acked == 1

    @pytest.mark.asyncio
    async def test_handler_failure_leaves_message_in_flight(
        self, mock_settings: MagicMock
    ) -> None:
        queue = DelayQueue(InMemoryBackend(), "jobs", poll_interval_ms=20)
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        mgr = QueueManager(queue, handler)
        await queue.push(Message(id="A"))
        await mgr.start()

        async def claimed() -> bool:
            return handler.await_count >= 1

        await _wait_for(claimed)
        await mgr.stop()

        assert await queue.unacked_size() == 1
        assert await queue.get("A") is not None

    @pytest.mark.asyncio
    async def test_process_message_ack_lost(self) -> None:
        queue = MagicMock(spec=DelayQueue)
        queue.ack = AsyncMock(return_value=False)
        handler = AsyncMock()
        mgr = QueueManager(queue, handler)
        msg = Message(id="A")

        await mgr._process_message(msg, worker_name="jobs-worker-0")

        handler.assert_awaited_once_with(msg)
        queue.ack.assert_awaited_once_with("A")
