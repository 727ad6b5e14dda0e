"""
Execution state and the registry of running and finished executions.
"""

from toolflow.execution.models import (
    Execution,
    ExecutionOptions,
    ExecutionResult,
    ExecutionResults,
    ExecutionStatus,
    ExecutionStatusSnapshot,
    ExecutionSummary,
    StreamEvent,
)
from toolflow.execution.registry import ExecutionRegistry

__all__ = [
    "Execution",
    "ExecutionOptions",
    "ExecutionRegistry",
    "ExecutionResult",
    "ExecutionResults",
    "ExecutionStatus",
    "ExecutionStatusSnapshot",
    "ExecutionSummary",
    "StreamEvent",
]
