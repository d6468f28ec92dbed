"""Exceptions raised by the delay queue.

"Nothing to acknowledge" style outcomes (unknown id, message in the wrong
state) are not exceptions; the queue reports them as ``False`` / ``None``.
"""


class DelayQueueError(Exception):
    """Base exception for delay queue errors."""

    pass


class InvalidDelayError(DelayQueueError):
    """Raised when a requested delay is negative or above the configured maximum."""

    def __init__(self, delay_ms: int, max_delay_ms: int) -> None:
        self.delay_ms = delay_ms
        self.max_delay_ms = max_delay_ms
        super().__init__(f"Delay {delay_ms}ms outside allowed range [0, {max_delay_ms}]ms")


class InvalidPriorityError(DelayQueueError):
    """Raised when a priority cannot be folded into a sub-millisecond score offset."""

    def __init__(self, priority: int) -> None:
        self.priority = priority
        super().__init__(f"Priority {priority} outside allowed range [0, 99]")


class SerializationError(DelayQueueError):
    """Raised when a message cannot be encoded or decoded."""

    pass


class StoreUnavailableError(DelayQueueError):
    """Raised when the backing store cannot be reached."""

    pass
