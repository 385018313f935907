# services/dispatcher.py
"""
Queue-to-workflow dispatcher.

Each cycle receives a batch, runs one fresh workflow execution per message
and acknowledges only the messages whose execution succeeded. A failed
message is left alone: it becomes visible again after the visibility
timeout and the queue dead-letters it once its receive budget is spent.

The dispatcher touches queue state only through queue operations.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from webhook_pipeline.core.errors import ConfigurationError, QueueUnavailableError
from webhook_pipeline.core.logger import logger
from webhook_pipeline.integrations.queue_base import DurableQueue
from webhook_pipeline.schemas.queue_models import DispatchStats, QueueMessage
from webhook_pipeline.schemas.workflow_models import FailureKind
from webhook_pipeline.services.workflow_runner import WorkflowRunner

AUTH_FAILURE_RETRY = "retry"
AUTH_FAILURE_DEAD_LETTER = "dead_letter"


class Dispatcher:

    def __init__(
        self,
        queue: DurableQueue,
        runner: WorkflowRunner,
        batch_size: int = 10,
        visibility_timeout: float = 30.0,
        workers: int = 1,
        poll_interval: float = 0.5,
        max_poll_interval: float = 10.0,
        authenticity_failure_policy: str = AUTH_FAILURE_DEAD_LETTER,
    ):
        if authenticity_failure_policy not in (AUTH_FAILURE_RETRY, AUTH_FAILURE_DEAD_LETTER):
            raise ConfigurationError(f"Unknown AUTHENTICITY_FAILURE_POLICY: {authenticity_failure_policy}")

        self.queue = queue
        self.runner = runner
        self.batch_size = batch_size
        self.visibility_timeout = visibility_timeout
        self.workers = workers
        self.poll_interval = poll_interval
        self.max_poll_interval = max(max_poll_interval, poll_interval)
        self.authenticity_failure_policy = authenticity_failure_policy

        self._stats = DispatchStats()
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        # every polling worker can have a full batch in flight at once
        self._pool = ThreadPoolExecutor(max_workers=batch_size * workers, thread_name_prefix="dispatch")

        if runner.timeout_seconds >= visibility_timeout:
            logger.warning(
                "Workflow timeout %.1fs is not below visibility timeout %.1fs; "
                "visibility will be extended before each run",
                runner.timeout_seconds, visibility_timeout
            )

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def _needs_extension(self, received_at: float) -> bool:
        """True when the run could outlast what is left of the visibility window."""
        remaining = self.visibility_timeout - (time.monotonic() - received_at)
        return remaining <= self.runner.timeout_seconds

    def _dispatch_message(self, message: QueueMessage, received_at: float) -> DispatchStats:
        stats = DispatchStats(received=1)

        if self._needs_extension(received_at):
            self.queue.extend_visibility(
                message.message_id, self.runner.timeout_seconds + self.visibility_timeout
            )

        execution = self.runner.run([message.to_record()])

        if execution.succeeded:
            self.queue.acknowledge(message.message_id)
            stats.acknowledged = 1
            logger.info(
                "Message acknowledged msg_id=%s execution_id=%s receive_count=%s",
                message.message_id, execution.execution_id, message.receive_count
            )
            return stats

        stats.failed = 1
        if (
            execution.failure == FailureKind.AUTHENTICITY
            and self.authenticity_failure_policy == AUTH_FAILURE_DEAD_LETTER
        ):
            if self.queue.dead_letter(message.message_id, "authenticity_failure"):
                stats.dead_lettered = 1
            return stats

        logger.info(
            "Workflow failed, message left for redelivery msg_id=%s failure=%s receive_count=%s",
            message.message_id, execution.failure.value if execution.failure else None, message.receive_count
        )
        return stats

    def _safe_dispatch(self, message: QueueMessage, received_at: float) -> DispatchStats:
        try:
            return self._dispatch_message(message, received_at)
        except QueueUnavailableError:
            # ack/dead-letter did not land; the message will reappear after its visibility timeout
            logger.exception(f"Queue error while finishing msg_id={message.message_id}")
            return DispatchStats(received=1, failed=1)

    def run_once(self) -> DispatchStats:
        """
        Receive one batch and dispatch it. Messages in the batch run in
        parallel; each one is acknowledged independently.

        Raises QueueUnavailableError if the receive itself fails.
        """
        received_at = time.monotonic()
        messages = self.queue.receive_batch(self.batch_size, self.visibility_timeout)
        stats = DispatchStats()
        if not messages:
            return stats

        for result in self._pool.map(self._safe_dispatch, messages, [received_at] * len(messages)):
            stats.add(result)

        with self._stats_lock:
            self._stats.add(stats)
        return stats

    # ------------------------------------------------------------------
    # Polling workers
    # ------------------------------------------------------------------

    def _worker_loop(self, worker_id: int) -> None:
        delay = self.poll_interval
        logger.info("Dispatcher worker %s started queue=%s", worker_id, self.queue.name)
        while not self._stop.is_set():
            try:
                stats = self.run_once()
            except QueueUnavailableError:
                logger.exception(f"Dispatcher worker {worker_id}: queue unavailable, backing off {delay:.1f}s")
                self._stop.wait(delay)
                delay = min(delay * 2, self.max_poll_interval)
                continue
            except Exception:
                logger.exception(f"Dispatcher worker {worker_id}: unexpected cycle failure")
                self._stop.wait(delay)
                delay = min(delay * 2, self.max_poll_interval)
                continue

            if stats.received:
                delay = self.poll_interval
            else:
                self._stop.wait(delay)
                delay = min(delay * 2, self.max_poll_interval)
        logger.info("Dispatcher worker %s stopped", worker_id)

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._worker_loop, args=(i,), name=f"dispatcher-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for thread in self._threads:
            thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop the workers and release the dispatch pool."""
        self.stop(timeout)
        self._pool.shutdown(wait=False)

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def status(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = self._stats.model_dump()
        return {
            "running": self.is_running,
            "workers": self.workers,
            "abandoned_steps": self.runner.abandoned_steps,
            "stats": stats,
        }
