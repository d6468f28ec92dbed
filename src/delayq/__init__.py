"""delayq - delay/priority message queue with acknowledgement and redelivery."""

from delayq.errors import (
    DelayQueueError,
    InvalidDelayError,
    InvalidPriorityError,
    SerializationError,
    StoreUnavailableError,
)
from delayq.queue import DelayQueue, Message, QueueManager, Reaper
from delayq.storage import InMemoryBackend, PostgresBackend

__version__ = "0.1.0"

__all__ = [
    "DelayQueue",
    "DelayQueueError",
    "InMemoryBackend",
    "InvalidDelayError",
    "InvalidPriorityError",
    "Message",
    "PostgresBackend",
    "QueueManager",
    "Reaper",
    "SerializationError",
    "StoreUnavailableError",
]
