"""Tests for the dispatcher: acknowledgment, redelivery and dead-letter routing."""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from webhook_pipeline.core.errors import ConfigurationError, QueueUnavailableError
from webhook_pipeline.integrations.memory_queue import InMemoryQueue
from webhook_pipeline.schemas.queue_models import QueuePolicy
from webhook_pipeline.services.dispatcher import Dispatcher
from webhook_pipeline.services.message_steps import CallableStep
from webhook_pipeline.services.workflow_runner import WorkflowRunner

VISIBILITY = 30.0
ANA = '{"name":"Ana","age":30,"email":"ana@example.com"}'


class RecordingRunner(WorkflowRunner):
    """Runner that keeps every execution it produced."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.executions = []

    def run(self, workflow_input):
        execution = super().run(workflow_input)
        self.executions.append(execution)
        return execution


@pytest.fixture()
def make_dispatcher():
    created = []

    def _make(queue, validate=lambda e: True, process=lambda e: True, timeout_seconds=2.0, **kwargs):
        runner = RecordingRunner(CallableStep(validate, "validate"), CallableStep(process, "process"), timeout_seconds)
        kwargs.setdefault("visibility_timeout", VISIBILITY)
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("max_poll_interval", 0.05)
        dispatcher = Dispatcher(queue, runner, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield _make
    for dispatcher in created:
        dispatcher.close(timeout=2)


def test_success_acknowledges_message(queue, clock, make_dispatcher):
    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue)

    stats = dispatcher.run_once()

    assert stats.received == 1
    assert stats.acknowledged == 1
    assert queue.depth() == 0
    clock.advance(VISIBILITY * 2)
    assert queue.receive_batch(10, VISIBILITY) == []


def test_workflow_receives_message_body(queue, make_dispatcher):
    queue.enqueue(ANA, {"X-Webhook-Signature": "sig"})
    dispatcher = make_dispatcher(queue)

    dispatcher.run_once()

    record = dispatcher.runner.executions[0].input[0]
    assert record["body"] == ANA
    assert record["attributes"] == {"X-Webhook-Signature": "sig"}
    assert record["receiveCount"] == 1


def test_processing_failure_leaves_message_for_redelivery(queue, clock, make_dispatcher):
    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, process=lambda e: False)

    stats = dispatcher.run_once()

    assert stats.failed == 1 and stats.acknowledged == 0
    assert queue.depth() == 1
    assert dispatcher.run_once().received == 0

    clock.advance(VISIBILITY)
    assert dispatcher.run_once().received == 1


def test_three_processing_failures_dead_letter_the_message(queue, dlq, clock, make_dispatcher):
    message_id = queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, process=lambda e: False)

    for _ in range(3):
        assert dispatcher.run_once().failed == 1
        clock.advance(VISIBILITY)

    assert dispatcher.run_once().received == 0
    assert queue.depth() == 0
    assert [m.message_id for m in dlq.list_messages()] == [message_id]


def test_transient_failure_then_success(queue, clock, make_dispatcher):
    attempts = []

    def flaky(event):
        attempts.append(event[0]["receiveCount"])
        return len(attempts) >= 2

    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, process=flaky)

    dispatcher.run_once()
    clock.advance(VISIBILITY)
    stats = dispatcher.run_once()

    assert stats.acknowledged == 1
    assert attempts == [1, 2]
    assert queue.depth() == 0


def test_retries_use_fresh_executions(queue, clock, make_dispatcher):
    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, process=lambda e: False)

    dispatcher.run_once()
    clock.advance(VISIBILITY)
    dispatcher.run_once()

    ids = [e.execution_id for e in dispatcher.runner.executions]
    assert len(ids) == 2 and len(set(ids)) == 2


def test_authenticity_failure_dead_letters_immediately(queue, dlq, make_dispatcher):
    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, validate=lambda e: False, authenticity_failure_policy="dead_letter")

    stats = dispatcher.run_once()

    assert stats.dead_lettered == 1
    assert queue.depth() == 0
    assert dlq.list_messages()[0].dead_letter_reason == "authenticity_failure"


def test_authenticity_failure_retry_policy_uses_redelivery(queue, dlq, clock, make_dispatcher):
    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, validate=lambda e: False, authenticity_failure_policy="retry")

    stats = dispatcher.run_once()

    assert stats.dead_lettered == 0
    assert queue.depth() == 1
    assert dlq.depth() == 0

    for _ in range(3):
        clock.advance(VISIBILITY)
        dispatcher.run_once()
    assert dlq.depth() == 1


def test_timeout_is_retried_like_processing_failure(queue, dlq, clock, make_dispatcher):
    release = threading.Event()

    def hang(event):
        release.wait(5)
        return True

    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, process=hang, timeout_seconds=0.1)

    try:
        stats = dispatcher.run_once()
    finally:
        release.set()

    assert stats.failed == 1
    assert queue.depth() == 1
    assert dlq.depth() == 0


def test_parallel_batch_acknowledges_each_message_independently(queue, make_dispatcher):
    good = [queue.enqueue('{"ok": true}') for _ in range(3)]
    bad = [queue.enqueue('{"ok": false}') for _ in range(2)]
    dispatcher = make_dispatcher(queue, process=lambda e: '"ok": true' in e[0]["body"], batch_size=10)

    stats = dispatcher.run_once()

    assert stats.acknowledged == 3 and stats.failed == 2
    remaining = {m.message_id for m in queue.list_messages()}
    assert remaining == set(bad)
    assert not remaining & set(good)


def test_receive_failure_propagates_from_run_once(make_dispatcher):
    broken = MagicMock()
    broken.name = "broken"
    broken.receive_batch.side_effect = QueueUnavailableError("down")
    dispatcher = make_dispatcher(broken)

    with pytest.raises(QueueUnavailableError):
        dispatcher.run_once()


def test_acknowledge_failure_is_contained(queue, make_dispatcher):
    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue)

    with patch.object(queue, "acknowledge", side_effect=QueueUnavailableError("down")):
        stats = dispatcher.run_once()

    assert stats.failed == 1
    assert queue.depth() == 1


def test_visibility_extended_when_timeout_not_below_visibility(queue, make_dispatcher):
    message_id = queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, timeout_seconds=60.0, visibility_timeout=30.0)

    with patch.object(queue, "extend_visibility", wraps=queue.extend_visibility) as extend:
        dispatcher.run_once()

    extend.assert_called_once_with(message_id, 90.0)


def test_visibility_not_extended_for_fast_workflows(queue, make_dispatcher):
    queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, timeout_seconds=2.0, visibility_timeout=30.0)

    with patch.object(queue, "extend_visibility") as extend:
        dispatcher.run_once()

    extend.assert_not_called()


def test_unknown_policy_is_rejected(queue):
    runner = WorkflowRunner(CallableStep(lambda e: True), CallableStep(lambda e: True))
    with pytest.raises(ConfigurationError):
        Dispatcher(queue, runner, authenticity_failure_policy="ignore")


def test_worker_threads_drain_queue(make_dispatcher):
    live = InMemoryQueue("live", QueuePolicy(), InMemoryQueue("live-dlq", QueuePolicy(max_receive_count=None)))
    for i in range(20):
        live.enqueue(f'{{"n": {i}}}')
    dispatcher = make_dispatcher(live, workers=3, batch_size=5)

    dispatcher.start()
    deadline = time.monotonic() + 5
    while live.depth() and time.monotonic() < deadline:
        time.sleep(0.01)
    dispatcher.stop(timeout=2)

    assert live.depth() == 0
    assert not dispatcher.is_running
    status = dispatcher.status()
    assert status["workers"] == 3
    assert status["stats"]["acknowledged"] == 20


def test_workers_survive_queue_outage(make_dispatcher):
    flaky = MagicMock()
    flaky.name = "flaky"
    calls = []

    def receive(max_messages, visibility_timeout):
        calls.append(1)
        if len(calls) < 3:
            raise QueueUnavailableError("down")
        return []

    flaky.receive_batch.side_effect = receive
    dispatcher = make_dispatcher(flaky)

    dispatcher.start()
    deadline = time.monotonic() + 5
    while len(calls) < 4 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert dispatcher.is_running
    dispatcher.stop(timeout=2)

    assert len(calls) >= 4


def test_every_worker_batch_runs_without_waiting_on_others(make_dispatcher):
    live = InMemoryQueue("live", QueuePolicy(), InMemoryQueue("live-dlq", QueuePolicy(max_receive_count=None)))
    for i in range(6):
        live.enqueue(f'{{"n": {i}}}')
    all_running = threading.Barrier(6, timeout=3)

    def process(event):
        all_running.wait()
        return True

    dispatcher = make_dispatcher(live, process=process, timeout_seconds=5.0, workers=3, batch_size=2)

    dispatcher.start()
    deadline = time.monotonic() + 5
    while live.depth() and time.monotonic() < deadline:
        time.sleep(0.01)
    dispatcher.stop(timeout=2)

    assert live.depth() == 0
    assert dispatcher.status()["stats"]["acknowledged"] == 6
    assert dispatcher.status()["stats"]["failed"] == 0


def test_visibility_extended_when_message_waited_since_receive(queue, make_dispatcher):
    message_id = queue.enqueue(ANA)
    dispatcher = make_dispatcher(queue, timeout_seconds=10.0, visibility_timeout=30.0)
    message = queue.receive_batch(1, 30.0)[0]

    with patch.object(queue, "extend_visibility", wraps=queue.extend_visibility) as extend:
        stats = dispatcher._dispatch_message(message, received_at=time.monotonic() - 25.0)

    extend.assert_called_once_with(message_id, 40.0)
    assert stats.acknowledged == 1


def test_close_releases_dispatch_pool(queue, make_dispatcher):
    dispatcher = make_dispatcher(queue, workers=2)
    dispatcher.start()

    dispatcher.close(timeout=2)

    assert not dispatcher.is_running
    queue.enqueue(ANA)
    with pytest.raises(RuntimeError):
        dispatcher.run_once()
