"""
Execution state and the views handed back to callers.

An Execution is owned by the orchestrator task driving it; every other
component only ever sees copies (status snapshots, summaries, results).
"""

from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from toolflow.llm.models import Message
from toolflow.tools.models import ToolConfiguration, ToolExecutionResult
from toolflow.workflow.models import WorkflowStep


class ExecutionStatus(StrEnum):
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.EXECUTING


class StreamEvent(BaseModel):
    """
    Progress event passed to an execution's ``on_stream_update`` callback.

    ``content`` is a human-readable summary; the remaining fields carry the
    structured details relevant to the event type.
    """

    type: str = Field(
        description="iteration_start, model_request, tool_requests, tool_execution, "
                    "tool_result, tool_error or completion"
    )
    content: str
    execution_id: str
    iteration: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    max_iterations: int | None = None
    tool_name: str | None = None
    tool_use_id: str | None = None
    tool_requests: list[dict[str, Any]] | None = None
    success: bool | None = None
    result: Any = None
    error: str | None = None
    final_response: str | None = None


StreamCallback = Callable[[StreamEvent], None]


class ExecutionOptions(BaseModel):
    """Per-run options for StartExecution."""

    max_iterations: int | None = Field(
        default=None, ge=1, description="Bound on model calls; None uses the configured default"
    )
    on_stream_update: StreamCallback | None = None
    dataset_context: Any = None
    scenario_id: str | None = Field(
        default=None, description="Scenario whose handlers serve this run's tools"
    )
    parallel_tool_calls: bool | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class ExecutionErrorEntry(BaseModel):
    kind: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ExecutionResults(BaseModel):
    final_response: str | None = None
    tool_executions: list[ToolExecutionResult] = Field(default_factory=list)
    total_tool_calls: int = 0
    iteration_count: int = 0


class Execution(BaseModel):
    """One end-to-end run of the conversation loop."""

    execution_id: str
    model_id: str
    system_prompt: str | None = None
    user_prompt: str
    context_payload: Any = None
    tool_configuration: ToolConfiguration | None = None
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)

    status: ExecutionStatus = ExecutionStatus.EXECUTING
    current_iteration: int = 0
    max_iterations: int = Field(default=10, ge=1)
    messages: list[Message] = Field(default_factory=list)
    results: ExecutionResults = Field(default_factory=ExecutionResults)
    errors: list[ExecutionErrorEntry] = Field(default_factory=list)
    workflow: list[WorkflowStep] = Field(default_factory=list)
    cancelled: bool = False

    start_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    total_duration: float | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def duration(self) -> float:
        """Seconds elapsed so far, or the total once finished."""
        if self.total_duration is not None:
            return self.total_duration
        return (datetime.now(UTC) - self.start_time).total_seconds()


class ExecutionStatusSnapshot(BaseModel):
    execution_id: str
    status: ExecutionStatus
    current_iteration: int
    max_iterations: int
    start_time: datetime
    end_time: datetime | None = None
    duration: float
    tool_call_count: int
    cancelled: bool


class ExecutionSummary(BaseModel):
    execution_id: str
    status: ExecutionStatus
    model_id: str
    current_iteration: int
    max_iterations: int
    start_time: datetime
    tool_call_count: int


class ExecutionResult(BaseModel):
    """What a finished run hands back to its caller."""

    execution_id: str
    success: bool
    status: ExecutionStatus
    results: ExecutionResults
    workflow: list[WorkflowStep] = Field(default_factory=list)
    iteration_count: int
    total_duration: float
    tool_call_count: int
    error: str | None = None


def snapshot_of(execution: Execution) -> ExecutionStatusSnapshot:
    return ExecutionStatusSnapshot(
        execution_id=execution.execution_id,
        status=execution.status,
        current_iteration=execution.current_iteration,
        max_iterations=execution.max_iterations,
        start_time=execution.start_time,
        end_time=execution.end_time,
        duration=execution.duration(),
        tool_call_count=execution.results.total_tool_calls,
        cancelled=execution.cancelled,
    )


def summary_of(execution: Execution) -> ExecutionSummary:
    return ExecutionSummary(
        execution_id=execution.execution_id,
        status=execution.status,
        model_id=execution.model_id,
        current_iteration=execution.current_iteration,
        max_iterations=execution.max_iterations,
        start_time=execution.start_time,
        tool_call_count=execution.results.total_tool_calls,
    )
