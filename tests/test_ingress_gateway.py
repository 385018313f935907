"""Tests for the ingress gateway (transport-independent edge handler)."""

import json
from unittest.mock import MagicMock

from webhook_pipeline.core.errors import QueueUnavailableError
from webhook_pipeline.services.ingress_gateway import CORS_HEADERS, IngressGateway


ANA = b'{"name":"Ana","age":30,"email":"ana@example.com"}'


def test_valid_payload_is_enqueued_verbatim(queue):
    gateway = IngressGateway(queue)

    response = gateway.handle(ANA)

    assert response.status_code == 200
    assert response.body == {"message": "hellou, hellou"}
    messages = queue.list_messages()
    assert len(messages) == 1
    assert messages[0].body == ANA.decode("utf-8")
    assert messages[0].receive_count == 0
    assert response.message_id == messages[0].message_id


def test_body_whitespace_and_key_order_are_preserved(queue):
    raw = b'{ "email" : "ana@example.com",\n  "age": 30, "name": "Ana", "extra": [1, 2] }'
    IngressGateway(queue).handle(raw)
    assert queue.list_messages()[0].body == raw.decode("utf-8")


def test_success_response_allows_cross_origin(queue):
    response = IngressGateway(queue).handle(ANA)
    for header, value in CORS_HEADERS.items():
        assert response.headers[header] == value
    assert response.headers["Access-Control-Allow-Origin"] == "*"


def test_invalid_payload_is_rejected_and_not_enqueued(queue):
    response = IngressGateway(queue).handle(b'{"age": 17, "email": "not-an-email"}')

    assert response.status_code == 400
    assert response.body["message"] == "Validation failed"
    assert [e["path"] for e in response.body["errors"]] == ["name", "age", "email"]
    assert all(set(e) == {"path", "message"} for e in response.body["errors"])
    assert queue.depth() == 0


def test_malformed_json_is_a_validation_failure(queue):
    response = IngressGateway(queue).handle(b'{"name": "Ana",')

    assert response.status_code == 400
    assert response.body["message"] == "Validation failed"
    assert response.body["errors"][0]["path"] == ""
    assert queue.depth() == 0


def test_non_utf8_body_is_a_validation_failure(queue):
    response = IngressGateway(queue).handle(b"\xff\xfe\x00garbage")
    assert response.status_code == 400
    assert queue.depth() == 0


def test_oversized_integer_is_a_validation_failure(queue):
    raw = b'{"name":"Ana","age":1' + b"0" * 5000 + b',"email":"ana@example.com"}'

    response = IngressGateway(queue).handle(raw)

    assert response.status_code == 400
    assert response.body["errors"][0]["path"] == ""
    assert queue.depth() == 0


def test_deeply_nested_body_is_a_validation_failure(queue):
    raw = b"[" * 200000 + b"]" * 200000

    response = IngressGateway(queue).handle(raw)

    assert response.status_code == 400
    assert response.body["errors"][0]["path"] == ""
    assert queue.depth() == 0


def test_json_array_is_rejected(queue):
    response = IngressGateway(queue).handle(json.dumps([{"name": "Ana"}]).encode())
    assert response.status_code == 400
    assert response.body["errors"][0]["path"] == ""


def test_enqueue_failure_returns_500_and_never_200():
    failing_queue = MagicMock()
    failing_queue.name = "webhook-queue"
    failing_queue.enqueue.side_effect = QueueUnavailableError("connection refused")

    response = IngressGateway(failing_queue).handle(ANA)

    assert response.status_code == 500
    assert response.body == {"message": "Failed to enqueue payload"}
    failing_queue.enqueue.assert_called_once()


def test_exactly_one_enqueue_attempt_per_request():
    spy_queue = MagicMock()
    spy_queue.name = "webhook-queue"
    spy_queue.enqueue.return_value = "msg-1"

    IngressGateway(spy_queue).handle(ANA)

    spy_queue.enqueue.assert_called_once_with(ANA.decode("utf-8"), {})


def test_forwarded_headers_become_message_attributes(queue):
    gateway = IngressGateway(queue, forwarded_headers=["Authorization", "X-Webhook-Signature"])

    gateway.handle(ANA, {"x-webhook-signature": "sha256=abc", "content-type": "application/json"})

    message = queue.list_messages()[0]
    assert message.attributes == {"X-Webhook-Signature": "sha256=abc"}
    assert message.body == ANA.decode("utf-8")
