"""Abstract storage interfaces used by the delay queue.

Every method is a single atomic operation of the backing store. The queue
never guards cross-process races with a local lock, so backends must honour
these contracts on their own:

* :meth:`ScoreIndex.insert_if_exists` only updates a member that is present.
* :meth:`ScoreIndex.remove` reports how many entries it deleted, so exactly
  one of several concurrent callers observes ``1``.
* :meth:`ScoreIndex.move` deletes from the source and upserts into the target
  as one unit; it returns ``False`` without touching the target when the
  member was not in the source, or when its score exceeds ``max_score``.
* :meth:`PayloadStore.set_if_exists` never recreates a deleted entry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class ScoreIndex(ABC):
    """Ordered index of members keyed by a numeric score."""

    def __init__(self, key: str) -> None:
        self._key = key

    @property
    def key(self) -> str:
        """Store key this index lives under."""
        return self._key

    @abstractmethod
    async def insert_or_update(self, member: str, score: float) -> None:
        """Unconditionally set ``member`` to ``score``."""

    @abstractmethod
    async def insert_if_exists(self, member: str, score: float) -> bool:
        """Update ``member`` to ``score`` only if it is already present."""

    @abstractmethod
    async def remove(self, member: str) -> int:
        """Delete ``member`` and return the number of entries removed."""

    @abstractmethod
    async def score_of(self, member: str) -> float | None:
        """Return the score of ``member`` or ``None`` if absent."""

    @abstractmethod
    async def range_by_score(
        self,
        min_score: float,
        max_score: float,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        """Return ``(member, score)`` pairs with ``min_score <= score <= max_score``.

        Results are ordered by score, ties broken by member.
        """

    @abstractmethod
    async def cardinality(self) -> int:
        """Number of members in the index."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every member of the index."""

    @abstractmethod
    async def move(
        self,
        member: str,
        target: ScoreIndex,
        score: float,
        *,
        max_score: float | None = None,
    ) -> bool:
        """Atomically move ``member`` into ``target`` with ``score``.

        With ``max_score`` set, the move only happens while the member's
        current score is at most ``max_score``.
        """


class PayloadStore(ABC):
    """Key-value map from message id to serialised message."""

    def __init__(self, key: str) -> None:
        self._key = key

    @property
    def key(self) -> str:
        """Store key this map lives under."""
        return self._key

    @abstractmethod
    async def set(self, member: str, blob: str) -> None:
        """Store ``blob`` under ``member``."""

    @abstractmethod
    async def set_if_exists(self, member: str, blob: str) -> bool:
        """Replace the blob of ``member`` only if it is already present."""

    @abstractmethod
    async def get(self, member: str) -> str | None:
        """Return the blob for ``member`` or ``None``."""

    @abstractmethod
    async def delete(self, member: str) -> bool:
        """Delete ``member``; ``True`` if it existed."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every entry of the map."""


class StorageBackend(ABC):
    """Factory for the named indexes and payload stores of one store."""

    @abstractmethod
    def score_index(self, key: str) -> ScoreIndex:
        """Return the score index stored under ``key``."""

    @abstractmethod
    def payload_store(self, key: str) -> PayloadStore:
        """Return the payload store stored under ``key``."""
