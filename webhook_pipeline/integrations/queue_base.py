# integrations/queue_base.py
"""
Durable queue contract shared by every backend.

Delivery is at-least-once. A received message stays invisible for the
visibility timeout; if it is not acknowledged in that window it becomes
visible again and the next pickup increments its receive count. When that
count would exceed the policy's max_receive_count the message is moved to
the dead-letter queue instead of being delivered.

Retention is a hard data-loss boundary: messages older than the policy's
retention period are purged even if never acknowledged. Purges are logged
at WARNING and retention is never extended for a message; a redrive from
the dead-letter queue creates a new message with a new retention window.
"""

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from webhook_pipeline.schemas.queue_models import QueueMessage, QueuePolicy

Clock = Callable[[], float]


class DurableQueue(ABC):
    """Queue operations. Every mutation is atomic per message."""

    def __init__(
        self,
        name: str,
        policy: Optional[QueuePolicy] = None,
        dead_letter_queue: Optional["DurableQueue"] = None,
        clock: Clock = time.time,
    ):
        self.name = name
        self.policy = policy or QueuePolicy()
        self.dead_letter_queue = dead_letter_queue
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _is_expired(self, message: QueueMessage, now: float) -> bool:
        return now - message.enqueued_at >= self.policy.retention_seconds

    def _exceeds_receive_budget(self, receive_count: int) -> bool:
        limit = self.policy.max_receive_count
        return (
            self.dead_letter_queue is not None
            and limit is not None
            and receive_count > limit
        )

    @abstractmethod
    def enqueue(self, body: str, attributes: Optional[Dict[str, str]] = None) -> str:
        """Store a new message and return its id."""

    @abstractmethod
    def receive_batch(self, max_messages: int, visibility_timeout: float) -> List[QueueMessage]:
        """Deliver up to max_messages visible messages and hide them for visibility_timeout."""

    @abstractmethod
    def acknowledge(self, message_id: str) -> bool:
        """Remove a message permanently. Returns False if it was not present."""

    @abstractmethod
    def extend_visibility(self, message_id: str, duration: float) -> bool:
        """Keep an in-flight message hidden for `duration` more seconds from now."""

    @abstractmethod
    def dead_letter(self, message_id: str, reason: str) -> bool:
        """Move a message to the dead-letter queue immediately."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Drop messages past retention; returns how many were dropped."""

    @abstractmethod
    def depth(self) -> int:
        """Number of messages held, visible or in flight."""

    @abstractmethod
    def list_messages(self) -> List[QueueMessage]:
        """Snapshot of held messages, for out-of-band inspection."""

    def redrive(self, message_id: str) -> Optional[str]:
        """
        Replay a dead-lettered message onto this queue.

        The body and attributes are re-enqueued as a new message (receive
        count 0) and the dead-letter copy is removed afterwards, so a crash in
        between leaves a duplicate rather than a loss.
        """
        if self.dead_letter_queue is None:
            return None
        for message in self.dead_letter_queue.list_messages():
            if message.message_id == message_id:
                new_id = self.enqueue(message.body, message.attributes)
                self.dead_letter_queue.acknowledge(message_id)
                return new_id
        return None
