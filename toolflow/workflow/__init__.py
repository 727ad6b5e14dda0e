"""
Workflow tracking layer.

Records every step of an execution (iteration starts, model calls, tool calls
and results, completion, errors, cancellation), notifies live listeners, and
keeps a durable history of finished workflows for browsing and statistics.
"""

from toolflow.workflow.models import (
    CleanupReport,
    StepNotFoundError,
    StepType,
    WorkflowFilters,
    WorkflowHistoryPage,
    WorkflowNotFoundError,
    WorkflowRecord,
    WorkflowStatistics,
    WorkflowStatus,
    WorkflowStep,
    WorkflowStoreError,
)
from toolflow.workflow.store import InMemoryWorkflowStore, JsonFileWorkflowStore, WorkflowStore
from toolflow.workflow.tracker import ALL_EXECUTIONS, WorkflowTracker

__all__ = [
    "ALL_EXECUTIONS",
    "CleanupReport",
    "InMemoryWorkflowStore",
    "JsonFileWorkflowStore",
    "StepNotFoundError",
    "StepType",
    "WorkflowFilters",
    "WorkflowHistoryPage",
    "WorkflowNotFoundError",
    "WorkflowRecord",
    "WorkflowStatistics",
    "WorkflowStatus",
    "WorkflowStep",
    "WorkflowStore",
    "WorkflowStoreError",
    "WorkflowTracker",
]
