# schemas/workflow_models.py
from pydantic import BaseModel, Field
from typing import Any, List, Optional
from enum import Enum


class WorkflowState(str, Enum):
    """Workflow execution states"""
    VALIDATE_MESSAGE = "ValidateMessage"
    PROCESS_MESSAGE = "ProcessMessage"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class FailureKind(str, Enum):
    """Why an execution ended in Failed"""
    AUTHENTICITY = "authenticity"
    PROCESSING = "processing"
    TIMEOUT = "timeout"


class StepOutcome(BaseModel):
    success: bool
    output: Any = None


class StateRecord(BaseModel):
    """Audit entry for one state the execution passed through."""
    state: WorkflowState
    started_at: float
    finished_at: Optional[float] = None
    success: Optional[bool] = None
    output: Any = None
    error: Optional[str] = None


class WorkflowExecution(BaseModel):
    """
    One run of the validate-then-process state machine for a single
    delivery attempt. Never reused across retries.
    """
    execution_id: str
    state: WorkflowState = WorkflowState.VALIDATE_MESSAGE
    input: Any = None
    history: List[StateRecord] = Field(default_factory=list)
    failure: Optional[FailureKind] = None

    @property
    def succeeded(self) -> bool:
        return self.state == WorkflowState.SUCCEEDED

    @property
    def is_terminal(self) -> bool:
        return self.state in (WorkflowState.SUCCEEDED, WorkflowState.FAILED)
