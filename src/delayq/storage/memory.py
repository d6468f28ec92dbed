"""In-memory storage backend.

Keeps every index and payload map in plain dictionaries guarded by one
``threading.Lock``, so each operation is atomic for all queues sharing the
backend inside a single process. Useful for tests and embedded use; it offers
nothing across processes.
"""

from __future__ import annotations

from threading import Lock

from delayq.storage.base import PayloadStore, ScoreIndex, StorageBackend


class InMemoryScoreIndex(ScoreIndex):
    """Score index backed by a ``{member: score}`` dictionary."""

    def __init__(self, key: str, entries: dict[str, float], lock: Lock) -> None:
        super().__init__(key)
        self._entries = entries
        self._lock = lock

    async def insert_or_update(self, member: str, score: float) -> None:
        with self._lock:
            self._entries[member] = score

    async def insert_if_exists(self, member: str, score: float) -> bool:
        with self._lock:
            if member not in self._entries:
                return False
            self._entries[member] = score
            return True

    async def remove(self, member: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(member, None) is not None else 0

    async def score_of(self, member: str) -> float | None:
        with self._lock:
            return self._entries.get(member)

    async def range_by_score(
        self,
        min_score: float,
        max_score: float,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        with self._lock:
            matches = sorted(
                ((m, s) for m, s in self._entries.items() if min_score <= s <= max_score),
                key=lambda pair: (pair[1], pair[0]),
            )
        end = None if limit is None else offset + limit
        return matches[offset:end]

    async def cardinality(self) -> int:
        with self._lock:
            return len(self._entries)

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def move(
        self,
        member: str,
        target: ScoreIndex,
        score: float,
        *,
        max_score: float | None = None,
    ) -> bool:
        if not isinstance(target, InMemoryScoreIndex) or target._lock is not self._lock:
            raise ValueError("move target must belong to the same in-memory backend")
        with self._lock:
            current = self._entries.get(member)
            if current is None or (max_score is not None and current > max_score):
                return False
            del self._entries[member]
            target._entries[member] = score
            return True


class InMemoryPayloadStore(PayloadStore):
    """Payload store backed by a ``{member: blob}`` dictionary."""

    def __init__(self, key: str, entries: dict[str, str], lock: Lock) -> None:
        super().__init__(key)
        self._entries = entries
        self._lock = lock

    async def set(self, member: str, blob: str) -> None:
        with self._lock:
            self._entries[member] = blob

    async def set_if_exists(self, member: str, blob: str) -> bool:
        with self._lock:
            if member not in self._entries:
                return False
            self._entries[member] = blob
            return True

    async def get(self, member: str) -> str | None:
        with self._lock:
            return self._entries.get(member)

    async def delete(self, member: str) -> bool:
        with self._lock:
            return self._entries.pop(member, None) is not None

    async def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class InMemoryBackend(StorageBackend):
    """Process-local backend; indexes with the same key share their data."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._indexes: dict[str, dict[str, float]] = {}
        self._payloads: dict[str, dict[str, str]] = {}

    def score_index(self, key: str) -> InMemoryScoreIndex:
        with self._lock:
            entries = self._indexes.setdefault(key, {})
        return InMemoryScoreIndex(key, entries, self._lock)

    def payload_store(self, key: str) -> InMemoryPayloadStore:
        with self._lock:
            entries = self._payloads.setdefault(key, {})
        return InMemoryPayloadStore(key, entries, self._lock)
