"""Delay queue: scoring, the claim/ack protocol and the blocking consumer wait.

Messages live in three places of a :class:`~delayq.storage.base.StorageBackend`:

* ``<prefix>.QUEUE.<name>``: READY index, scored by eligibility time plus a
  sub-millisecond priority term.
* ``<prefix>.UNACK.<name>``: in-flight index, scored by redelivery deadline.
* ``<prefix>.MESSAGE.<name>``: the JSON-encoded messages.

A consumer claims a message by moving it from READY to UNACK in one store
operation, so concurrent consumers (in this process or others) never receive
the same claim. Waiting for work is a bounded poll; the in-process condition
notified by :meth:`DelayQueue.push` only shortens the wait.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

from delayq.config import (
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_UNACK_TIMEOUT_MS,
    Settings,
    get_settings,
)
from delayq.errors import InvalidDelayError, InvalidPriorityError, SerializationError
from delayq.logging import get_logger
from delayq.queue.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    Message,
    QueueStats,
    compute_score,
    now_ms,
)
from delayq.storage.base import PayloadStore, ScoreIndex, StorageBackend

log = get_logger("delayq.queue.delay_queue")

Clock = Callable[[], float]


class DelayQueue:
    """Delay/priority queue with acknowledgement and redelivery.

    All methods are coroutines; none of them holds a local lock across a
    store call, so many instances may share one backend.
    """

    def __init__(
        self,
        backend: StorageBackend,
        name: str,
        *,
        key_prefix: str = "delayq",
        unack_timeout_ms: int = DEFAULT_UNACK_TIMEOUT_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        poll_interval_ms: int = 1000,
        clock: Clock = now_ms,
    ) -> None:
        """Initialise the queue.

        Args:
            backend: Store providing the indexes and payload map.
            name: Logical queue name.
            key_prefix: Namespace prefix for every store key.
            unack_timeout_ms: How long a claimed message stays in flight
                before the reaper may redeliver it.
            max_delay_ms: Largest delay accepted by :meth:`push`; also bounds
                the READY scan.
            poll_interval_ms: Longest single wait inside :meth:`peek`.
            clock: Returns the current time in epoch milliseconds.
        """
        self._name = name
        self._key_prefix = key_prefix
        self._unack_timeout_ms = unack_timeout_ms
        self._max_delay_ms = max_delay_ms
        self._poll_interval_ms = poll_interval_ms
        self._clock = clock

        self._ready = backend.score_index(f"{key_prefix}.QUEUE.{name}")
        self._unack = backend.score_index(f"{key_prefix}.UNACK.{name}")
        self._payloads = backend.payload_store(f"{key_prefix}.MESSAGE.{name}")

        self._available = asyncio.Condition()
        self._stats = QueueStats()

    @classmethod
    def from_settings(
        cls,
        backend: StorageBackend,
        settings: Settings | None = None,
        *,
        clock: Clock = now_ms,
    ) -> DelayQueue:
        """Build a queue from :class:`~delayq.config.Settings`."""
        settings = settings or get_settings()
        return cls(
            backend,
            settings.queue_name,
            key_prefix=settings.key_prefix,
            unack_timeout_ms=settings.unack_timeout_ms,
            max_delay_ms=settings.max_delay_ms,
            poll_interval_ms=settings.poll_interval_ms,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        """Logical queue name."""
        return self._name

    @property
    def unack_timeout_ms(self) -> int:
        """Default in-flight lease for claimed messages."""
        return self._unack_timeout_ms

    @property
    def max_delay_ms(self) -> int:
        return self._max_delay_ms

    @property
    def poll_interval_ms(self) -> int:
        """Longest single wait inside :meth:`peek`."""
        return self._poll_interval_ms

    @property
    def stats(self) -> QueueStats:
        """In-process counters."""
        return self._stats

    @property
    def ready_index(self) -> ScoreIndex:
        return self._ready

    @property
    def unack_index(self) -> ScoreIndex:
        return self._unack

    @property
    def payload_store(self) -> PayloadStore:
        return self._payloads

    def now(self) -> float:
        """Current time in epoch milliseconds, as seen by this queue."""
        return self._clock()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def push(self, message: Message) -> str:
        """Enqueue a message to become eligible after ``message.delay_ms``.

        ``message.create_time`` is stamped with the current time.

        Args:
            message: The message to enqueue.

        Returns:
            The message id.

        Raises:
            InvalidDelayError: If the delay is negative or above ``max_delay_ms``.
            InvalidPriorityError: If the priority is outside 0-99.
            SerializationError: If the payload cannot be JSON-encoded.
        """
        self._check_delay(message.delay_ms)
        if not MIN_PRIORITY <= message.priority <= MAX_PRIORITY:
            raise InvalidPriorityError(message.priority)

        message.create_time = int(self._clock())
        blob = message.to_json()
        score = compute_score(message.create_time, message.delay_ms, message.priority)

        await self._payloads.set(message.id, blob)
        await self._ready.insert_or_update(message.id, score)
        self._stats.pushed += 1
        log.debug(
            "message_pushed",
            queue=self._name,
            message_id=message.id,
            delay_ms=message.delay_ms,
            priority=message.priority,
            score=score,
        )
        await self.notify()
        return message.id

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def peek(self, wait_timeout: float | None = None) -> Message | None:
        """Claim the earliest eligible message, waiting for one if needed.

        The claimed message moves to the in-flight index with a deadline of
        ``now + unack_timeout_ms``; it must be :meth:`ack`-ed before then or
        the reaper makes it eligible again.

        Args:
            wait_timeout: Seconds to wait for a message. ``None`` waits until
                one arrives, ``0`` makes a single attempt.

        Returns:
            The claimed message, or ``None`` when the wait timed out or the
            claimed entry had no payload.

        Raises:
            SerializationError: If the stored payload cannot be decoded. The
                message is put back in the READY index untouched.
        """
        loop = asyncio.get_running_loop()
        deadline = None if wait_timeout is None else loop.time() + wait_timeout

        while True:
            now = self._clock()
            head = await self._ready.range_by_score(0, now + self._max_delay_ms, 0, 1)

            if head and head[0][1] <= now:
                member, score = head[0]
                if not await self._claim(member):
                    # Another consumer moved it first; look at the next head.
                    continue
                message = await self._load_claimed(member, score)
                if message is None:
                    return None
                await self._await_own_delay(message)
                self._stats.delivered += 1
                log.debug("message_delivered", queue=self._name, message_id=member)
                return message

            wait_ms = float(self._poll_interval_ms)
            if head:
                wait_ms = min(wait_ms, head[0][1] - now)
            wait_s = wait_ms / 1000
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait_s = min(wait_s, remaining)
            await self._wait(wait_s)

    async def ack(self, message_id: str) -> bool:
        """Acknowledge a message, removing it from the queue for good.

        READY is cleared before UNACK so a claim racing with the ack is
        caught by the second removal. The payload is only deleted once an
        index entry was removed.

        Returns:
            ``True`` if the message was queued or in flight and its payload
            existed; ``False`` if there was nothing to acknowledge.
        """
        removed = await self._ready.remove(message_id)
        removed += await self._unack.remove(message_id)
        deleted = removed > 0 and await self._payloads.delete(message_id)
        if deleted:
            self._stats.acked += 1
            log.debug("message_acked", queue=self._name, message_id=message_id)
            return True
        log.debug(
            "ack_nothing_to_acknowledge",
            queue=self._name,
            message_id=message_id,
            index_removed=removed,
            payload_removed=deleted,
        )
        return False

    async def set_unack_timeout(self, message_id: str, timeout_ms: int) -> bool:
        """Extend the lease of an in-flight message to ``now + timeout_ms``.

        Returns:
            ``False`` if the message is not in flight (acked or reclaimed).
        """
        deadline = self._clock() + timeout_ms
        updated = await self._unack.insert_if_exists(message_id, deadline)
        log.debug(
            "unack_timeout_set",
            queue=self._name,
            message_id=message_id,
            timeout_ms=timeout_ms,
            updated=updated,
        )
        return updated

    async def set_timeout(self, message_id: str, delay_ms: int) -> bool:
        """Reschedule a pending message to become eligible ``delay_ms`` from now.

        In-flight and acked messages are left alone.

        Returns:
            ``True`` if the message was rescheduled.

        Raises:
            InvalidDelayError: If the delay is negative or above ``max_delay_ms``.
            SerializationError: If the stored payload cannot be decoded.
        """
        self._check_delay(delay_ms)
        blob = await self._payloads.get(message_id)
        if blob is None:
            return False
        message = Message.from_json(blob)

        if await self._ready.score_of(message_id) is None:
            return False

        score = compute_score(self._clock(), delay_ms, message.priority)
        if not await self._ready.insert_if_exists(message_id, score):
            return False

        message.delay_ms = delay_ms
        # An ack between the two writes must not bring the payload back.
        if not await self._payloads.set_if_exists(message_id, message.to_json()):
            return False
        log.debug(
            "message_rescheduled",
            queue=self._name,
            message_id=message_id,
            delay_ms=delay_ms,
            score=score,
        )
        return True

    # ------------------------------------------------------------------
    # Inspection / maintenance
    # ------------------------------------------------------------------

    async def get(self, message_id: str) -> Message | None:
        """Read a message without changing its state."""
        blob = await self._payloads.get(message_id)
        if blob is None:
            return None
        return Message.from_json(blob)

    async def size(self) -> int:
        """Number of pending (not in-flight) messages."""
        return await self._ready.cardinality()

    async def unacked_size(self) -> int:
        """Number of in-flight messages."""
        return await self._unack.cardinality()

    async def clear(self) -> None:
        """Delete every message, pending or in flight."""
        await self._ready.clear()
        await self._unack.clear()
        await self._payloads.clear()
        log.info("queue_cleared", queue=self._name)

    async def notify(self) -> None:
        """Wake consumers of this instance blocked in :meth:`peek`."""
        async with self._available:
            self._available.notify_all()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_delay(self, delay_ms: int) -> None:
        if delay_ms < 0 or delay_ms > self._max_delay_ms:
            raise InvalidDelayError(delay_ms, self._max_delay_ms)

    async def _claim(self, member: str) -> bool:
        """Move ``member`` from READY to UNACK; ``False`` if someone else did."""
        deadline = self._clock() + self._unack_timeout_ms
        if await self._ready.move(member, self._unack, deadline):
            log.debug("message_claimed", queue=self._name, message_id=member, deadline=deadline)
            return True
        self._stats.lost_claims += 1
        log.debug("message_claim_lost", queue=self._name, message_id=member)
        return False

    async def _load_claimed(self, member: str, score: float) -> Message | None:
        """Fetch the payload of a freshly claimed message."""
        blob = await self._payloads.get(member)
        if blob is None:
            await self._unack.remove(member)
            self._stats.orphaned_payloads += 1
            log.warning("payload_missing", queue=self._name, message_id=member, source="peek")
            return None
        try:
            return Message.from_json(blob)
        except SerializationError:
            await self._unack.move(member, self._ready, score)
            log.error("message_decode_failed", queue=self._name, message_id=member)
            raise

    async def _await_own_delay(self, message: Message) -> None:
        """Sleep until the message's own ``create_time + delay_ms`` has passed."""
        remaining_ms = message.remaining_delay_ms(self._clock())
        if remaining_ms > 0:
            log.debug(
                "message_delay_pending",
                queue=self._name,
                message_id=message.id,
                remaining_ms=remaining_ms,
            )
            await asyncio.sleep(remaining_ms / 1000)

    async def _wait(self, timeout_s: float) -> None:
        """Block until notified or ``timeout_s`` elapses, whichever is first."""
        async with self._available:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._available.wait(), timeout_s)
