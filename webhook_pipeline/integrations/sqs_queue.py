# integrations/sqs_queue.py
"""
Amazon SQS queue backend.

Visibility, retention and receive counting are SQS's own; queues are
expected to exist already (provisioning is outside this service). The
backend still enforces max_receive_count on pickup so a queue created
without a redrive policy cannot loop forever.

SQS deletes by receipt handle, so the backend remembers the latest
delivery (receipt handle and message) per message id. Entries are dropped
on acknowledge, and also once their visibility window has been over for
RECEIPT_GRACE_SECONDS (the message will be redelivered with a new receipt).
A dead-letter move
is send-then-delete: a failure between the two leaves a duplicate in the
dead-letter queue, never a lost message.
"""

import math
import threading
import time
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from webhook_pipeline.core.errors import QueueUnavailableError
from webhook_pipeline.core.logger import logger
from webhook_pipeline.integrations.queue_base import Clock, DurableQueue
from webhook_pipeline.schemas.queue_models import QueueMessage, QueuePolicy

DEAD_LETTER_REASON_ATTRIBUTE = "DeadLetterReason"
RECEIPT_GRACE_SECONDS = 300.0
PEEK_VISIBILITY_SECONDS = 30
PEEK_LIMIT = 1000


@contextmanager
def _sqs_errors(operation: str, queue_name: str):
    try:
        yield
    except (BotoCoreError, ClientError) as exc:
        logger.error(f"SQS operation failed: op={operation} queue={queue_name} error={exc}")
        raise QueueUnavailableError(f"{operation} failed on {queue_name}: {exc}") from exc


def _encode_attributes(attributes: Dict[str, str]) -> Dict[str, Dict[str, str]]:
    return {
        key: {"DataType": "String", "StringValue": value}
        for key, value in attributes.items()
        if value
    }


def _decode_attributes(raw: Dict[str, Dict[str, str]]) -> Dict[str, str]:
    return {
        key: value["StringValue"]
        for key, value in (raw or {}).items()
        if "StringValue" in value
    }


class SqsQueue(DurableQueue):

    def __init__(
        self,
        client,
        queue_url: str,
        name: str,
        policy: Optional[QueuePolicy] = None,
        dead_letter_queue: Optional["SqsQueue"] = None,
        wait_time_seconds: int = 0,
        clock: Clock = time.time,
    ):
        super().__init__(name, policy, dead_letter_queue, clock)
        self._sqs = client
        self.queue_url = queue_url
        self.wait_time_seconds = wait_time_seconds
        self._in_flight: Dict[str, Tuple[str, QueueMessage]] = {}
        self._lock = threading.Lock()

    def enqueue(self, body: str, attributes: Optional[Dict[str, str]] = None) -> str:
        params = {
            "QueueUrl": self.queue_url,
            "MessageBody": body,
        }
        encoded = _encode_attributes(attributes or {})
        if encoded:
            params["MessageAttributes"] = encoded

        with _sqs_errors("enqueue", self.name):
            resp = self._sqs.send_message(**params)
        msg_id = resp.get("MessageId", "")
        if not msg_id:
            raise QueueUnavailableError(f"enqueue on {self.name} returned no MessageId")
        logger.info("SQS publish ok queue=%s msg_id=%s", self.name, msg_id)
        return msg_id

    def _to_message(self, raw: Dict) -> QueueMessage:
        attrs = raw.get("Attributes", {})
        sent_ms = int(attrs.get("SentTimestamp", "0"))
        return QueueMessage(
            message_id=raw["MessageId"],
            body=raw["Body"],
            attributes=_decode_attributes(raw.get("MessageAttributes", {})),
            enqueued_at=sent_ms / 1000.0 if sent_ms else self.now(),
            receive_count=int(attrs.get("ApproximateReceiveCount", "1")),
        )

    def receive_batch(self, max_messages: int, visibility_timeout: float) -> List[QueueMessage]:
        with _sqs_errors("receive_batch", self.name):
            resp = self._sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=max(1, min(max_messages, 10)),
                VisibilityTimeout=int(math.ceil(visibility_timeout)),
                WaitTimeSeconds=self.wait_time_seconds,
                AttributeNames=["ApproximateReceiveCount", "SentTimestamp"],
                MessageAttributeNames=["All"],
            )

        delivered: List[QueueMessage] = []
        now = self.now()
        for raw in resp.get("Messages", []):
            message = self._to_message(raw)
            message.visible_at = now + visibility_timeout
            self._track(message, raw["ReceiptHandle"])

            if self._exceeds_receive_budget(message.receive_count):
                self._move_to_dead_letter(message, "max_receive_count_exceeded")
                continue
            delivered.append(message)
        return delivered

    def _track(self, message: QueueMessage, receipt: str) -> None:
        cutoff = self.now() - RECEIPT_GRACE_SECONDS
        with self._lock:
            stale = [mid for mid, (_, m) in self._in_flight.items() if m.visible_at < cutoff]
            for mid in stale:
                del self._in_flight[mid]
            self._in_flight[message.message_id] = (receipt, message)

    def _receipt(self, message_id: str) -> Optional[str]:
        with self._lock:
            entry = self._in_flight.get(message_id)
        return entry[0] if entry else None

    def acknowledge(self, message_id: str) -> bool:
        receipt = self._receipt(message_id)
        if receipt is None:
            logger.debug("Acknowledge without receipt handle queue=%s msg_id=%s", self.name, message_id)
            return False
        with _sqs_errors("acknowledge", self.name):
            self._sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt)
        with self._lock:
            self._in_flight.pop(message_id, None)
        return True

    def extend_visibility(self, message_id: str, duration: float) -> bool:
        receipt = self._receipt(message_id)
        if receipt is None:
            return False
        with _sqs_errors("extend_visibility", self.name):
            self._sqs.change_message_visibility(
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt,
                VisibilityTimeout=int(math.ceil(duration)),
            )
        with self._lock:
            entry = self._in_flight.get(message_id)
            if entry:
                entry[1].visible_at = self.now() + duration
        return True

    def _move_to_dead_letter(self, message: QueueMessage, reason: str) -> None:
        attributes = dict(message.attributes)
        attributes[DEAD_LETTER_REASON_ATTRIBUTE] = reason
        self.dead_letter_queue.enqueue(message.body, attributes)
        self.acknowledge(message.message_id)
        logger.warning(
            "Moved message to dead-letter queue queue=%s dlq=%s msg_id=%s receive_count=%s reason=%s",
            self.name, self.dead_letter_queue.name, message.message_id, message.receive_count, reason
        )

    def dead_letter(self, message_id: str, reason: str) -> bool:
        if self.dead_letter_queue is None:
            return False
        with self._lock:
            entry = self._in_flight.get(message_id)
        if entry is None:
            return False
        _, message = entry
        self._move_to_dead_letter(message, reason)
        return True

    def purge_expired(self) -> int:
        # SQS drops messages past MessageRetentionPeriod itself
        return 0

    def depth(self) -> int:
        with _sqs_errors("depth", self.name):
            resp = self._sqs.get_queue_attributes(
                QueueUrl=self.queue_url,
                AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
            )
        attrs = resp.get("Attributes", {})
        return int(attrs.get("ApproximateNumberOfMessages", 0)) + int(
            attrs.get("ApproximateNumberOfMessagesNotVisible", 0)
        )

    def list_messages(self) -> List[QueueMessage]:
        """
        Peek at up to PEEK_LIMIT messages. SQS has no browse API, so this
        receives repeatedly with a short visibility timeout (so each receive
        returns messages not seen yet) until a receive brings nothing new,
        then makes everything it saw visible again. Receive counts go up.
        """
        seen: Dict[str, QueueMessage] = {}
        receipts: List[str] = []
        try:
            while len(seen) < PEEK_LIMIT:
                with _sqs_errors("list_messages", self.name):
                    resp = self._sqs.receive_message(
                        QueueUrl=self.queue_url,
                        MaxNumberOfMessages=10,
                        VisibilityTimeout=PEEK_VISIBILITY_SECONDS,
                        AttributeNames=["ApproximateReceiveCount", "SentTimestamp"],
                        MessageAttributeNames=["All"],
                    )
                fresh = [raw for raw in resp.get("Messages", []) if raw["MessageId"] not in seen]
                if not fresh:
                    break
                for raw in fresh:
                    message = self._to_message(raw)
                    message.visible_at = self.now()
                    message.dead_letter_reason = message.attributes.get(DEAD_LETTER_REASON_ATTRIBUTE)
                    self._track(message, raw["ReceiptHandle"])
                    receipts.append(raw["ReceiptHandle"])
                    seen[message.message_id] = message
        finally:
            self._release(receipts)
        return list(seen.values())

    def _release(self, receipts: List[str]) -> None:
        for start in range(0, len(receipts), 10):
            entries = [
                {"Id": str(i), "ReceiptHandle": receipt, "VisibilityTimeout": 0}
                for i, receipt in enumerate(receipts[start:start + 10])
            ]
            with _sqs_errors("list_messages", self.name):
                self._sqs.change_message_visibility_batch(QueueUrl=self.queue_url, Entries=entries)
