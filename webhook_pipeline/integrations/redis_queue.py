# integrations/redis_queue.py
"""
Durable queue backend on Redis.

Layout per queue name:
  <name>:messages   hash  message_id -> QueueMessage JSON
  <name>:schedule   zset  message_id -> visible_at (in-flight ids score in the future)
  <name>:enqueued   zset  message_id -> enqueued_at (retention sweep index)

Every per-message mutation runs as a WATCH/MULTI transaction over the
queue's keys (and the dead-letter queue's keys for a move), so a concurrent
receiver either sees the state before or after the change, never between.
"""

import time
import uuid
from contextlib import contextmanager
from typing import Dict, List, Optional

import redis

from webhook_pipeline.core.errors import ConfigurationError, QueueUnavailableError
from webhook_pipeline.core.logger import logger
from webhook_pipeline.integrations.queue_base import Clock, DurableQueue
from webhook_pipeline.schemas.queue_models import QueueMessage, QueuePolicy


@contextmanager
def _redis_errors(operation: str, queue_name: str):
    try:
        yield
    except redis.RedisError as exc:
        logger.error(f"Redis queue operation failed: op={operation} queue={queue_name} error={exc}")
        raise QueueUnavailableError(f"{operation} failed on {queue_name}: {exc}") from exc


class RedisQueue(DurableQueue):

    def __init__(
        self,
        client: redis.Redis,
        name: str,
        policy: Optional[QueuePolicy] = None,
        dead_letter_queue: Optional["RedisQueue"] = None,
        clock: Clock = time.time,
    ):
        if dead_letter_queue is not None and not isinstance(dead_letter_queue, RedisQueue):
            raise ConfigurationError("RedisQueue dead-letter target must be a RedisQueue on the same server")
        super().__init__(name, policy, dead_letter_queue, clock)
        self._client = client
        self.messages_key = f"{name}:messages"
        self.schedule_key = f"{name}:schedule"
        self.enqueued_key = f"{name}:enqueued"

    @property
    def _keys(self) -> List[str]:
        keys = [self.messages_key, self.schedule_key, self.enqueued_key]
        if self.dead_letter_queue is not None:
            keys.extend(self.dead_letter_queue._keys)
        return keys

    def _stage_put(self, pipe, message: QueueMessage) -> None:
        pipe.hset(self.messages_key, message.message_id, message.model_dump_json())
        pipe.zadd(self.schedule_key, {message.message_id: message.visible_at})
        pipe.zadd(self.enqueued_key, {message.message_id: message.enqueued_at})

    def _stage_delete(self, pipe, message_id: str) -> None:
        pipe.hdel(self.messages_key, message_id)
        pipe.zrem(self.schedule_key, message_id)
        pipe.zrem(self.enqueued_key, message_id)

    def _stage_dead_letter(self, pipe, message: QueueMessage, reason: str) -> None:
        moved = message.model_copy(update={"dead_letter_reason": reason, "visible_at": 0.0})
        self.dead_letter_queue._stage_put(pipe, moved)
        self._stage_delete(pipe, message.message_id)

    def _load(self, pipe, message_id: str) -> Optional[QueueMessage]:
        raw = pipe.hget(self.messages_key, message_id)
        if raw is None:
            return None
        return QueueMessage.model_validate_json(raw)

    def enqueue(self, body: str, attributes: Optional[Dict[str, str]] = None) -> str:
        message = QueueMessage(
            message_id=str(uuid.uuid4()),
            body=body,
            attributes=dict(attributes or {}),
            enqueued_at=self.now(),
        )
        with _redis_errors("enqueue", self.name):
            pipe = self._client.pipeline(transaction=True)
            self._stage_put(pipe, message)
            pipe.execute()
        logger.debug("Enqueued message queue=%s msg_id=%s", self.name, message.message_id)
        return message.message_id

    def _claim(self, message_id: str, now: float, visibility_timeout: float):
        def txn(pipe):
            score = pipe.zscore(self.schedule_key, message_id)
            message = self._load(pipe, message_id)
            if message is None or score is None or score > now:
                return None, None
            pipe.multi()
            receive_count = message.receive_count + 1
            if self._exceeds_receive_budget(receive_count):
                self._stage_dead_letter(pipe, message, "max_receive_count_exceeded")
                return "dead_lettered", message
            message.receive_count = receive_count
            message.visible_at = now + visibility_timeout
            self._stage_put(pipe, message)
            return "delivered", message

        return self._client.transaction(txn, *self._keys, value_from_callable=True)

    def receive_batch(self, max_messages: int, visibility_timeout: float) -> List[QueueMessage]:
        delivered: List[QueueMessage] = []
        with _redis_errors("receive_batch", self.name):
            self.purge_expired()
            now = self.now()
            candidates = self._client.zrangebyscore(
                self.schedule_key, "-inf", now, start=0, num=max_messages * 2
            )
            for message_id in candidates:
                if len(delivered) >= max_messages:
                    break
                outcome, message = self._claim(message_id, now, visibility_timeout)
                if outcome == "dead_lettered":
                    logger.warning(
                        "Moved message to dead-letter queue queue=%s dlq=%s msg_id=%s receive_count=%s",
                        self.name, self.dead_letter_queue.name, message_id, message.receive_count
                    )
                elif outcome == "delivered":
                    delivered.append(message)
        return delivered

    def acknowledge(self, message_id: str) -> bool:
        with _redis_errors("acknowledge", self.name):
            pipe = self._client.pipeline(transaction=True)
            self._stage_delete(pipe, message_id)
            removed, _, _ = pipe.execute()
        return bool(removed)

    def extend_visibility(self, message_id: str, duration: float) -> bool:
        def txn(pipe):
            message = self._load(pipe, message_id)
            if message is None:
                return False
            message.visible_at = self.now() + duration
            pipe.multi()
            self._stage_put(pipe, message)
            return True

        with _redis_errors("extend_visibility", self.name):
            return self._client.transaction(
                txn, self.messages_key, self.schedule_key, value_from_callable=True
            )

    def dead_letter(self, message_id: str, reason: str) -> bool:
        if self.dead_letter_queue is None:
            return False

        def txn(pipe):
            message = self._load(pipe, message_id)
            if message is None:
                return False
            pipe.multi()
            self._stage_dead_letter(pipe, message, reason)
            return True

        with _redis_errors("dead_letter", self.name):
            moved = self._client.transaction(txn, *self._keys, value_from_callable=True)
        if moved:
            logger.warning(
                "Moved message to dead-letter queue queue=%s dlq=%s msg_id=%s reason=%s",
                self.name, self.dead_letter_queue.name, message_id, reason
            )
        return moved

    def purge_expired(self) -> int:
        cutoff = self.now() - self.policy.retention_seconds

        def txn(pipe):
            expired = pipe.zrangebyscore(self.enqueued_key, "-inf", cutoff)
            if not expired:
                return []
            pipe.multi()
            for message_id in expired:
                self._stage_delete(pipe, message_id)
            return expired

        with _redis_errors("purge_expired", self.name):
            expired = self._client.transaction(
                txn, self.messages_key, self.schedule_key, self.enqueued_key, value_from_callable=True
            )
        for message_id in expired:
            logger.warning("Retention expired, message purged queue=%s msg_id=%s", self.name, message_id)
        return len(expired)

    def depth(self) -> int:
        with _redis_errors("depth", self.name):
            return self._client.hlen(self.messages_key)

    def list_messages(self) -> List[QueueMessage]:
        with _redis_errors("list_messages", self.name):
            raw = self._client.hgetall(self.messages_key)
        messages = [QueueMessage.model_validate_json(value) for value in raw.values()]
        return sorted(messages, key=lambda m: m.enqueued_at)
