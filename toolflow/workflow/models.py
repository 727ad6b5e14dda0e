"""
Workflow tracking data structures.

A WorkflowRecord is the tracker's view of one execution: metadata plus an
append-only list of WorkflowSteps. While the execution runs it lives in
memory; on completion it is written to a WorkflowStore, with the steps
stored individually under their own ids.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StepType(StrEnum):
    ITERATION_START = "iteration_start"
    MODEL_REQUEST = "model_request"
    LLM_RESPONSE = "llm_response"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    COMPLETION = "completion"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"
    CANCELLATION = "cancellation"
    ERROR = "error"


class WorkflowStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class WorkflowNotFoundError(KeyError):
    """Raised when an execution id has no active workflow."""

    def __init__(self, execution_id: str):
        super().__init__(execution_id)
        self.execution_id = execution_id

    def __str__(self) -> str:
        return f"Workflow not found: {self.execution_id}"


class StepNotFoundError(KeyError):
    """Raised when a step id does not exist in a workflow."""

    def __init__(self, step_id: str):
        super().__init__(step_id)
        self.step_id = step_id

    def __str__(self) -> str:
        return f"Step not found: {self.step_id}"


class WorkflowStoreError(RuntimeError):
    """Raised when the durable workflow store cannot be read or written."""


class WorkflowStep(BaseModel):
    """One observable event within an execution."""

    id: str
    execution_id: str
    type: StepType
    iteration: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    sequence: int = Field(default=0, description="Insertion order within the execution")
    duration: float | None = None
    content: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: str = "completed"
    updated_at: datetime | None = None

    model_config = ConfigDict(extra="allow")


class WorkflowRecord(BaseModel):
    """Metadata and steps of one tracked execution."""

    execution_id: str
    status: WorkflowStatus = WorkflowStatus.ACTIVE
    model_id: str | None = None
    start_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    total_duration: float | None = Field(None, description="Seconds from start to end")
    current_iteration: int = 0
    max_iterations: int = 10
    step_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    results: dict[str, Any] = Field(default_factory=dict)
    errors: list[dict[str, Any]] = Field(default_factory=list)
    steps: list[WorkflowStep] = Field(default_factory=list)

    def summary(self) -> "WorkflowRecord":
        """Copy without steps, as stored in the workflow index."""
        return self.model_copy(update={"steps": [], "step_count": len(self.steps)}, deep=True)


class WorkflowFilters(BaseModel):
    """Filters for history queries over stored workflows."""

    status: WorkflowStatus | None = None
    model_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int | None = Field(default=50, ge=1)
    offset: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def matches(self, record: WorkflowRecord) -> bool:
        if self.status is not None and record.status != self.status:
            return False
        if self.model_id is not None and record.model_id != self.model_id:
            return False
        if self.start_date is not None and record.start_time < self.start_date:
            return False
        if self.end_date is not None and record.start_time > self.end_date:
            return False
        return True


class WorkflowHistoryPage(BaseModel):
    workflows: list[WorkflowRecord]
    total: int = Field(description="Number of stored workflows matching the filters")
    has_more: bool


class WorkflowStatistics(BaseModel):
    total_workflows: int = 0
    completed_workflows: int = 0
    cancelled_workflows: int = 0
    error_workflows: int = 0
    average_duration: float = 0.0
    average_iterations: float = 0.0
    total_tool_calls: int = 0
    model_breakdown: dict[str, int] = Field(default_factory=dict)
    status_breakdown: dict[str, int] = Field(default_factory=dict)


class CleanupReport(BaseModel):
    deleted_count: int
    remaining_count: int
