"""Delay/priority message queue.

Provides at-least-once delivery: messages become eligible after a per-message
delay, are claimed by one consumer at a time and are redelivered by the
reaper when not acknowledged within the unack timeout.
"""

from delayq.queue.delay_queue import DelayQueue
from delayq.queue.manager import QueueManager
from delayq.queue.models import Message, QueueStats
from delayq.queue.reaper import Reaper, ReaperStats

__all__ = [
    "DelayQueue",
    "Message",
    "QueueManager",
    "QueueStats",
    "Reaper",
    "ReaperStats",
]
