"""Storage backends for the delay queue.

``ScoreIndex`` and ``PayloadStore`` describe the ordered index and key-value
map the queue is built on; ``InMemoryBackend`` and ``PostgresBackend``
implement them.
"""

from delayq.storage.base import PayloadStore, ScoreIndex, StorageBackend
from delayq.storage.memory import InMemoryBackend
from delayq.storage.postgres import PostgresBackend

__all__ = [
    "InMemoryBackend",
    "PayloadStore",
    "PostgresBackend",
    "ScoreIndex",
    "StorageBackend",
]
