# schemas/queue_models.py
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class QueuePolicy(BaseModel):
    """Retention and redelivery limits for one queue."""
    retention_seconds: float = Field(7 * 86400, gt=0)
    max_receive_count: Optional[int] = Field(
        3,
        ge=1,
        description="None disables dead-lettering (used for the dead-letter queue itself)"
    )


class QueueMessage(BaseModel):
    """
    Queue entry: opaque body plus queue-owned delivery metadata.
    Only the queue backend mutates receive_count and visible_at.
    """
    message_id: str
    body: str
    attributes: Dict[str, str] = Field(default_factory=dict)
    enqueued_at: float
    receive_count: int = 0
    visible_at: float = 0.0
    dead_letter_reason: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Delivery record handed to the workflow runner."""
        return {
            "messageId": self.message_id,
            "body": self.body,
            "attributes": dict(self.attributes),
            "receiveCount": self.receive_count,
        }


class DispatchStats(BaseModel):
    received: int = 0
    acknowledged: int = 0
    failed: int = 0
    dead_lettered: int = 0

    def add(self, other: "DispatchStats") -> None:
        self.received += other.received
        self.acknowledged += other.acknowledged
        self.failed += other.failed
        self.dead_lettered += other.dead_lettered
