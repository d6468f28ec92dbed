"""Queue models: the Message dataclass, score helpers and counters.

A message moves through two indexes: READY (scored by the time it becomes
eligible) and UNACK (scored by the redelivery deadline) until it is acked.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from delayq.errors import SerializationError

# Priorities are folded into the millisecond score, so they must stay below 1ms.
MIN_PRIORITY = 0
MAX_PRIORITY = 99
_PRIORITY_SCALE = 100


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def compute_score(now: float, delay_ms: int, priority: int) -> float:
    """Ready-index score: eligibility time biased by a sub-millisecond priority term."""
    return float(now + delay_ms) + priority / _PRIORITY_SCALE


@dataclass
class Message:
    """A single message held by the delay queue.

    Attributes:
        id: Identifier, unique within a queue.
        payload: Arbitrary JSON-serialisable data.
        delay_ms: Delay after ``create_time`` before the message is eligible.
        priority: Tie-breaker among messages ready at the same instant
            (0 = dequeued first).
        create_time: Epoch milliseconds, stamped when the message is pushed.
    """

    id: str = field(default_factory=lambda: uuid4().hex)
    payload: Any = None
    delay_ms: int = 0
    priority: int = 0
    create_time: int = field(default_factory=now_ms)

    @property
    def ready_at_ms(self) -> int:
        """Epoch milliseconds at which the message's own delay has elapsed."""
        return self.create_time + self.delay_ms

    def remaining_delay_ms(self, now: float) -> float:
        """Milliseconds left until ``ready_at_ms`` (0 when already elapsed)."""
        return max(0.0, self.ready_at_ms - now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialisation, omitting ``None`` fields."""
        data = {
            "id": self.id,
            "payload": self.payload,
            "delay_ms": self.delay_ms,
            "priority": self.priority,
            "create_time": self.create_time,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create a Message from a dictionary; unknown keys are ignored."""
        return cls(
            id=str(data["id"]),
            payload=data.get("payload"),
            delay_ms=int(data.get("delay_ms") or 0),
            priority=int(data.get("priority") or 0),
            create_time=int(data.get("create_time") or 0),
        )

    def to_json(self) -> str:
        """Encode as compact JSON.

        Raises:
            SerializationError: If the payload is not JSON-serialisable.
        """
        try:
            return json.dumps(self.to_dict(), separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise SerializationError(f"Cannot encode message {self.id}: {exc}") from exc

    @classmethod
    def from_json(cls, blob: str | bytes) -> Message:
        """Decode a message previously produced by :meth:`to_json`.

        Raises:
            SerializationError: If the blob is not a valid encoded message.
        """
        try:
            data = json.loads(blob)
            if not isinstance(data, dict):
                raise TypeError(f"expected an object, got {type(data).__name__}")
            return cls.from_dict(data)
        except (TypeError, ValueError, KeyError) as exc:
            raise SerializationError(f"Cannot decode message: {exc}") from exc


@dataclass
class QueueStats:
    """In-process counters for one DelayQueue instance."""

    pushed: int = 0
    delivered: int = 0
    acked: int = 0
    lost_claims: int = 0
    orphaned_payloads: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "pushed": self.pushed,
            "delivered": self.delivered,
            "acked": self.acked,
            "lost_claims": self.lost_claims,
            "orphaned_payloads": self.orphaned_payloads,
        }
