# core/container.py
"""
Composition root: builds the queue pair, workflow runner, dispatcher and
ingress gateway from settings and wires them together explicitly.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional

from webhook_pipeline.core.aws_client import get_sqs_client, validate_aws_credentials
from webhook_pipeline.core.config import Settings
from webhook_pipeline.core.errors import ConfigurationError
from webhook_pipeline.core.logger import logger
from webhook_pipeline.core.redis_client import RedisClient
from webhook_pipeline.integrations.memory_queue import InMemoryQueue
from webhook_pipeline.integrations.queue_base import DurableQueue
from webhook_pipeline.integrations.redis_queue import RedisQueue
from webhook_pipeline.integrations.sqs_queue import SqsQueue
from webhook_pipeline.schemas.queue_models import QueuePolicy
from webhook_pipeline.services.dispatcher import Dispatcher
from webhook_pipeline.services.ingress_gateway import IngressGateway
from webhook_pipeline.services.message_steps import (
    LogPayloadHandler,
    MessageStep,
    build_authenticity_check,
)
from webhook_pipeline.services.workflow_runner import WorkflowRunner


@dataclass
class Pipeline:
    settings: Settings
    queue: DurableQueue
    dead_letter_queue: DurableQueue
    runner: WorkflowRunner
    dispatcher: Dispatcher
    gateway: IngressGateway
    _closers: List[Callable[[], None]] = field(default_factory=list)

    def close(self) -> None:
        self.dispatcher.close()
        for closer in self._closers:
            closer()


def build_queues(settings: Settings):
    """Return (primary, dead_letter, closers) for QUEUE_BACKEND."""
    primary_policy = QueuePolicy(
        retention_seconds=settings.QUEUE_RETENTION_SECONDS,
        max_receive_count=settings.MAX_RECEIVE_COUNT,
    )
    dlq_policy = QueuePolicy(retention_seconds=settings.DLQ_RETENTION_SECONDS, max_receive_count=None)
    backend = settings.QUEUE_BACKEND.lower()

    if backend == "memory":
        logger.warning("Using in-memory queue: accepted payloads do not survive a restart")
        dlq = InMemoryQueue(settings.DLQ_NAME, dlq_policy)
        return InMemoryQueue(settings.QUEUE_NAME, primary_policy, dlq), dlq, []

    if backend == "redis":
        redis_client = RedisClient(settings)
        client = redis_client.get_client()
        if not redis_client.health_check():
            logger.warning("Redis not reachable at startup host=%s; queue operations will fail until it is", settings.REDIS_HOST)
        dlq = RedisQueue(client, settings.DLQ_NAME, dlq_policy)
        return RedisQueue(client, settings.QUEUE_NAME, primary_policy, dlq), dlq, [redis_client.close]

    if backend == "sqs":
        if not settings.SQS_QUEUE_URL or not settings.SQS_DLQ_URL:
            raise ConfigurationError("QUEUE_BACKEND=sqs requires SQS_QUEUE_URL and SQS_DLQ_URL")
        validate_aws_credentials(settings)
        sqs = get_sqs_client(settings)
        dlq = SqsQueue(sqs, settings.SQS_DLQ_URL, settings.DLQ_NAME, dlq_policy)
        primary = SqsQueue(sqs, settings.SQS_QUEUE_URL, settings.QUEUE_NAME, primary_policy, dlq)
        return primary, dlq, []

    raise ConfigurationError(f"Unknown QUEUE_BACKEND: {settings.QUEUE_BACKEND}")


def build_pipeline(
    settings: Settings,
    queue: Optional[DurableQueue] = None,
    validate_step: Optional[MessageStep] = None,
    process_step: Optional[MessageStep] = None,
) -> Pipeline:
    """
    Build every component from settings. Tests and embedders can inject a
    ready queue (its dead_letter_queue is used as the DLQ) or custom steps.
    """
    closers: List[Callable[[], None]] = []
    if queue is None:
        queue, dlq, closers = build_queues(settings)
    else:
        dlq = queue.dead_letter_queue
        if dlq is None:
            raise ConfigurationError("Injected queue must have a dead_letter_queue")

    runner = WorkflowRunner(
        validate_step or build_authenticity_check(settings),
        process_step or LogPayloadHandler(),
        timeout_seconds=settings.WORKFLOW_TIMEOUT_SECONDS,
    )
    dispatcher = Dispatcher(
        queue,
        runner,
        batch_size=settings.DISPATCH_BATCH_SIZE,
        visibility_timeout=settings.VISIBILITY_TIMEOUT_SECONDS,
        workers=settings.DISPATCH_WORKERS,
        poll_interval=settings.DISPATCH_POLL_INTERVAL_SECONDS,
        max_poll_interval=settings.DISPATCH_MAX_POLL_INTERVAL_SECONDS,
        authenticity_failure_policy=settings.AUTHENTICITY_FAILURE_POLICY.lower(),
    )
    gateway = IngressGateway(queue, forwarded_headers=settings.FORWARDED_HEADERS)

    logger.info(
        "Pipeline built backend=%s queue=%s dlq=%s max_receive_count=%s auth_check=%s",
        settings.QUEUE_BACKEND, queue.name, dlq.name, settings.MAX_RECEIVE_COUNT, settings.AUTHENTICITY_CHECK
    )
    return Pipeline(settings, queue, dlq, runner, dispatcher, gateway, closers)
