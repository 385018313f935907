# integrations/memory_queue.py
"""
In-process queue backend.

Not durable across restarts; used for local development and tests. All
state changes happen under one lock, and a dead-letter move holds the
primary lock while the copy is written, so no receiver ever sees the
message in neither queue or in both.
"""

import threading
import time
import uuid
from collections import OrderedDict
from typing import Dict, List, Optional

from webhook_pipeline.core.logger import logger
from webhook_pipeline.integrations.queue_base import Clock, DurableQueue
from webhook_pipeline.schemas.queue_models import QueueMessage, QueuePolicy


class InMemoryQueue(DurableQueue):

    def __init__(
        self,
        name: str,
        policy: Optional[QueuePolicy] = None,
        dead_letter_queue: Optional[DurableQueue] = None,
        clock: Clock = time.time,
    ):
        super().__init__(name, policy, dead_letter_queue, clock)
        self._lock = threading.Lock()
        self._messages: "OrderedDict[str, QueueMessage]" = OrderedDict()

    def enqueue(self, body: str, attributes: Optional[Dict[str, str]] = None) -> str:
        message = QueueMessage(
            message_id=str(uuid.uuid4()),
            body=body,
            attributes=dict(attributes or {}),
            enqueued_at=self.now(),
        )
        with self._lock:
            self._messages[message.message_id] = message
        logger.debug("Enqueued message queue=%s msg_id=%s", self.name, message.message_id)
        return message.message_id

    def store_dead_letter(self, message: QueueMessage, reason: str) -> None:
        """Accept a message moved here from a primary queue, keeping its id."""
        copy = message.model_copy(update={"dead_letter_reason": reason, "visible_at": 0.0})
        with self._lock:
            self._messages[copy.message_id] = copy

    def _move_to_dead_letter(self, message: QueueMessage, reason: str) -> None:
        # caller holds self._lock
        if isinstance(self.dead_letter_queue, InMemoryQueue):
            self.dead_letter_queue.store_dead_letter(message, reason)
        else:
            self.dead_letter_queue.enqueue(message.body, message.attributes)
        del self._messages[message.message_id]
        logger.warning(
            "Moved message to dead-letter queue queue=%s dlq=%s msg_id=%s receive_count=%s reason=%s",
            self.name, self.dead_letter_queue.name, message.message_id, message.receive_count, reason
        )

    def _purge_expired_locked(self, now: float) -> int:
        expired = [m for m in self._messages.values() if self._is_expired(m, now)]
        for message in expired:
            del self._messages[message.message_id]
            logger.warning(
                "Retention expired, message purged queue=%s msg_id=%s receive_count=%s",
                self.name, message.message_id, message.receive_count
            )
        return len(expired)

    def receive_batch(self, max_messages: int, visibility_timeout: float) -> List[QueueMessage]:
        delivered: List[QueueMessage] = []
        with self._lock:
            now = self.now()
            self._purge_expired_locked(now)
            for message in list(self._messages.values()):
                if len(delivered) >= max_messages:
                    break
                if message.visible_at > now:
                    continue

                receive_count = message.receive_count + 1
                if self._exceeds_receive_budget(receive_count):
                    self._move_to_dead_letter(message, "max_receive_count_exceeded")
                    continue

                message.receive_count = receive_count
                message.visible_at = now + visibility_timeout
                delivered.append(message.model_copy())
        return delivered

    def acknowledge(self, message_id: str) -> bool:
        with self._lock:
            removed = self._messages.pop(message_id, None)
        if removed is None:
            logger.debug("Acknowledge for unknown message queue=%s msg_id=%s", self.name, message_id)
            return False
        return True

    def extend_visibility(self, message_id: str, duration: float) -> bool:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return False
            message.visible_at = self.now() + duration
        return True

    def dead_letter(self, message_id: str, reason: str) -> bool:
        if self.dead_letter_queue is None:
            return False
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                return False
            self._move_to_dead_letter(message, reason)
        return True

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_expired_locked(self.now())

    def depth(self) -> int:
        with self._lock:
            return len(self._messages)

    def list_messages(self) -> List[QueueMessage]:
        with self._lock:
            return [m.model_copy() for m in self._messages.values()]
