# services/workflow_runner.py
"""
Validate-then-process state machine for one queued message.

    ValidateMessage -> ProcessMessage -> Succeeded
           \\                 \\
            +-> Failed         +-> Failed

Each run is a fresh WorkflowExecution that reaches a terminal state before
run() returns. The whole run shares one deadline. Every step runs on its own
daemon thread; a step that has not finished when the deadline passes is
abandoned (the thread cannot be killed, so the step should be safe to re-run)
and the execution fails with kind "timeout". An abandoned step holds only its
own thread, so later executions are not starved by it.
"""

import threading
import time
import uuid
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Any, List, Optional, Tuple

from webhook_pipeline.core.errors import WorkflowTimeoutError
from webhook_pipeline.core.logger import logger
from webhook_pipeline.schemas.workflow_models import (
    FailureKind,
    StateRecord,
    StepOutcome,
    WorkflowExecution,
    WorkflowState,
)
from webhook_pipeline.services.message_steps import MessageStep, delivery_records
from webhook_pipeline.utils.log_response import log_transition


class WorkflowRunner:

    def __init__(
        self,
        validate_step: MessageStep,
        process_step: MessageStep,
        timeout_seconds: float = 10.0,
    ):
        self.validate_step = validate_step
        self.process_step = process_step
        self.timeout_seconds = timeout_seconds
        self._abandoned: List[threading.Thread] = []
        self._abandoned_lock = threading.Lock()

    @property
    def abandoned_steps(self) -> int:
        """Timed-out step threads that are still running."""
        with self._abandoned_lock:
            self._abandoned = [t for t in self._abandoned if t.is_alive()]
            return len(self._abandoned)

    @staticmethod
    def _start_step(step: MessageStep, workflow_input: Any) -> Tuple[Future, threading.Thread]:
        future: Future = Future()

        def target():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(step.execute(workflow_input))
            except Exception as e:
                future.set_exception(e)

        thread = threading.Thread(target=target, name=f"workflow-step-{step.name}", daemon=True)
        thread.start()
        return future, thread

    def _run_step(self, step: MessageStep, workflow_input: Any, deadline: float) -> StepOutcome:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise WorkflowTimeoutError(f"no time left for step {step.name}")
        future, thread = self._start_step(step, workflow_input)
        try:
            outcome = future.result(timeout=remaining)
        except FutureTimeoutError:
            with self._abandoned_lock:
                self._abandoned.append(thread)
            logger.warning(f"Abandoned step thread {thread.name} after deadline")
            raise WorkflowTimeoutError(
                f"step {step.name} exceeded {self.timeout_seconds}s execution deadline"
            )
        if not isinstance(outcome, StepOutcome):
            raise TypeError(f"step {step.name} returned {type(outcome).__name__}, expected StepOutcome")
        return outcome

    def _enter(self, execution: WorkflowExecution, state: WorkflowState, message_id: Optional[str]) -> StateRecord:
        execution.state = state
        record = StateRecord(state=state, started_at=time.time())
        execution.history.append(record)
        log_transition(execution.execution_id, state.value, message_id)
        return record

    def _finish(
        self,
        execution: WorkflowExecution,
        state: WorkflowState,
        message_id: Optional[str],
        failure: Optional[FailureKind] = None,
        error: Optional[str] = None,
    ) -> WorkflowExecution:
        execution.state = state
        execution.failure = failure
        now = time.time()
        execution.history.append(StateRecord(
            state=state, started_at=now, finished_at=now,
            success=state == WorkflowState.SUCCEEDED, error=error,
        ))
        log_transition(
            execution.execution_id, state.value, message_id,
            output={"failure": failure.value if failure else None},
            error=error,
        )
        return execution

    def run(self, workflow_input: Any) -> WorkflowExecution:
        """Drive one execution to Succeeded or Failed. Never raises for step errors."""
        execution = WorkflowExecution(execution_id=str(uuid.uuid4()), input=workflow_input)
        records = delivery_records(workflow_input)
        message_id = records[0].get("messageId") if records else None
        deadline = time.monotonic() + self.timeout_seconds

        steps = (
            (WorkflowState.VALIDATE_MESSAGE, self.validate_step, FailureKind.AUTHENTICITY),
            (WorkflowState.PROCESS_MESSAGE, self.process_step, FailureKind.PROCESSING),
        )
        for state, step, failure_kind in steps:
            record = self._enter(execution, state, message_id)
            try:
                outcome = self._run_step(step, workflow_input, deadline)
            except WorkflowTimeoutError as e:
                record.finished_at = time.time()
                record.success = False
                record.error = str(e)
                return self._finish(execution, WorkflowState.FAILED, message_id, FailureKind.TIMEOUT, str(e))
            except Exception as e:
                logger.exception(f"Workflow step {step.name} raised: execution_id={execution.execution_id}")
                record.finished_at = time.time()
                record.success = False
                record.error = f"{type(e).__name__}: {e}"
                return self._finish(execution, WorkflowState.FAILED, message_id, failure_kind, record.error)

            record.finished_at = time.time()
            record.success = outcome.success
            record.output = outcome.output
            log_transition(
                execution.execution_id, state.value, message_id,
                output=outcome.output, event="workflow_step_completed",
                error=None if outcome.success else f"{step.name} reported failure",
            )
            if not outcome.success:
                return self._finish(
                    execution, WorkflowState.FAILED, message_id, failure_kind,
                    f"{step.name} reported failure",
                )

        return self._finish(execution, WorkflowState.SUCCEEDED, message_id)
