"""Tests for pipeline wiring and backend selection."""

from unittest.mock import MagicMock, patch

import fakeredis
import pytest
from starlette.requests import Request

from webhook_pipeline.core import container, rate_limiter
from webhook_pipeline.core.container import build_pipeline, build_queues
from webhook_pipeline.core.errors import ConfigurationError
from webhook_pipeline.integrations.memory_queue import InMemoryQueue
from webhook_pipeline.integrations.redis_queue import RedisQueue
from webhook_pipeline.integrations.sqs_queue import SqsQueue
from webhook_pipeline.services.message_steps import AcceptAllCheck, HmacSignatureCheck


def test_memory_backend_builds_linked_queue_pair(make_settings):
    primary, dlq, closers = build_queues(make_settings())

    assert isinstance(primary, InMemoryQueue)
    assert primary.dead_letter_queue is dlq
    assert primary.policy.max_receive_count == 3
    assert primary.policy.retention_seconds == 7 * 86400
    assert dlq.policy.retention_seconds == 14 * 86400
    assert dlq.policy.max_receive_count is None
    assert closers == []


def test_redis_backend_uses_shared_client(make_settings):
    fake = fakeredis.FakeRedis(decode_responses=True)
    redis_client = MagicMock()
    redis_client.get_client.return_value = fake
    redis_client.health_check.return_value = True

    with patch.object(container, "RedisClient", return_value=redis_client):
        primary, dlq, closers = build_queues(make_settings(QUEUE_BACKEND="redis"))

    assert isinstance(primary, RedisQueue) and isinstance(dlq, RedisQueue)
    assert primary.dead_letter_queue is dlq
    assert closers == [redis_client.close]


def test_sqs_backend_requires_both_urls(make_settings):
    with pytest.raises(ConfigurationError):
        build_queues(make_settings(QUEUE_BACKEND="sqs", SQS_QUEUE_URL="https://sqs/q"))


def test_sqs_backend_builds_queue_pair(make_settings):
    settings = make_settings(QUEUE_BACKEND="sqs", SQS_QUEUE_URL="https://sqs/q", SQS_DLQ_URL="https://sqs/dlq")

    with patch.object(container, "get_sqs_client", return_value=MagicMock()), \
            patch.object(container, "validate_aws_credentials", return_value=True):
        primary, dlq, _ = build_queues(settings)

    assert isinstance(primary, SqsQueue)
    assert primary.queue_url == "https://sqs/q"
    assert dlq.queue_url == "https://sqs/dlq"


def test_unknown_backend_is_rejected(make_settings):
    with pytest.raises(ConfigurationError):
        build_queues(make_settings(QUEUE_BACKEND="kafka"))


def test_pipeline_selects_authenticity_check(make_settings):
    default = build_pipeline(make_settings())
    signed = build_pipeline(make_settings(AUTHENTICITY_CHECK="hmac", WEBHOOK_HMAC_SECRET="s" * 32))
    try:
        assert isinstance(default.runner.validate_step, AcceptAllCheck)
        assert isinstance(signed.runner.validate_step, HmacSignatureCheck)
    finally:
        default.close()
        signed.close()


def test_unknown_authenticity_check_is_rejected(make_settings):
    with pytest.raises(ConfigurationError):
        build_pipeline(make_settings(AUTHENTICITY_CHECK="magic"))


def test_injected_queue_needs_dead_letter_queue(make_settings):
    with pytest.raises(ConfigurationError):
        build_pipeline(make_settings(), queue=InMemoryQueue("orphan"))


def _request(headers, client=("10.0.0.1", 1234)):
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": client,
    })


def test_rate_limit_key_ignores_forwarded_for_by_default():
    request = _request({"X-Forwarded-For": "203.0.113.9"})
    assert rate_limiter.client_address(request) == "10.0.0.1"


def test_rate_limit_key_uses_first_forwarded_hop_when_trusted():
    request = _request({"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
    with patch.object(rate_limiter.settings, "TRUST_FORWARDED_FOR", True):
        assert rate_limiter.client_address(request) == "203.0.113.9"
