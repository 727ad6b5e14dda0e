"""
Workflow tracker: per-execution step log with live listeners and history.

The tracker keeps one in-memory WorkflowRecord per running execution. Steps
are appended as the orchestrator reaches each milestone; listeners registered
for that execution (or for "all") are notified synchronously. When the
execution finishes the record is written to the WorkflowStore and dropped
from memory, after which it is only reachable through load_workflow() and
the history/statistics queries.

Listener callbacks receive ``(event_type, data, execution_id)`` where
event_type is one of: workflow_created, step_added, step_updated,
workflow_completed.
"""

import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from toolflow.config.logging import get_logger
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
)
from toolflow.workflow.store import WorkflowStore

logger = get_logger(__name__)

ALL_EXECUTIONS = "all"

WorkflowListener = Callable[[str, Any, str], None]


class WorkflowTracker:
    """
    Tracks workflow steps for active executions and persists finished ones.

    Args:
        store: Durable store for finished workflows

    Example:
        >>> tracker = WorkflowTracker(InMemoryWorkflowStore())
        >>> await tracker.initialize()
        >>> tracker.create_execution("exec_1", {"model_id": "m", "max_iterations": 5})
        >>> tracker.add_step("exec_1", {"type": "iteration_start", "iteration": 1})
        >>> record = await tracker.complete_execution("exec_1", {"status": "completed"})
    """

    def __init__(self, store: WorkflowStore):
        self._store = store
        self._active: dict[str, WorkflowRecord] = {}
        self._listeners: dict[str, dict[str, WorkflowListener]] = {}
        self._lock = threading.RLock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        await self._store.initialize()
        self._initialized = True
        logger.info("Workflow tracker initialized")

    async def shutdown(self) -> None:
        with self._lock:
            pending = list(self._active)
        if pending:
            logger.warning(f"Shutting down with {len(pending)} unfinished workflow(s): {pending}")
        await self._store.close()
        self._initialized = False

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()
        return False

    # ------------------------------------------------------------------
    # Live record
    # ------------------------------------------------------------------

    def create_execution(self, execution_id: str, metadata: dict[str, Any] | None = None) -> WorkflowRecord:
        """
        Open an in-memory workflow record.

        Raises:
            ValueError: If the execution id is already being tracked
        """
        metadata = dict(metadata or {})
        record = WorkflowRecord(
            execution_id=execution_id,
            model_id=metadata.get("model_id"),
            max_iterations=metadata.get("max_iterations", 10),
            start_time=metadata.get("start_time") or datetime.now(UTC),
            metadata={**metadata, "created_at": datetime.now(UTC).isoformat()},
        )
        with self._lock:
            if execution_id in self._active:
                raise ValueError(f"Workflow already exists: {execution_id}")
            self._active[execution_id] = record
            snapshot = record.model_copy(deep=True)

        logger.debug(f"Tracking workflow {execution_id}")
        self._notify(execution_id, "workflow_created", snapshot)
        return snapshot

    def _get_active(self, execution_id: str) -> WorkflowRecord:
        record = self._active.get(execution_id)
        if record is None:
            raise WorkflowNotFoundError(execution_id)
        return record

    def add_step(self, execution_id: str, step: WorkflowStep | dict[str, Any]) -> str:
        """
        Append a step to an active workflow.

        Args:
            execution_id: Execution to append to
            step: Step model or dict with at least ``type``

        Returns:
            The step id

        Raises:
            WorkflowNotFoundError: If the execution is not active
        """
        data = step.model_dump() if isinstance(step, WorkflowStep) else dict(step)
        with self._lock:
            record = self._get_active(execution_id)
            workflow_step = WorkflowStep(
                **{
                    **data,
                    "id": data.get("id") or f"step_{uuid.uuid4().hex}",
                    "execution_id": execution_id,
                    "iteration": data.get("iteration") or record.current_iteration,
                    "timestamp": data.get("timestamp") or datetime.now(UTC),
                    "sequence": len(record.steps),
                    "content": data.get("content") or {},
                    "metadata": data.get("metadata") or {},
                    "status": data.get("status") or "completed",
                }
            )
            record.steps.append(workflow_step)
            if workflow_step.type == StepType.ITERATION_START and workflow_step.iteration:
                record.current_iteration = workflow_step.iteration
            snapshot = workflow_step.model_copy(deep=True)

        self._notify(execution_id, "step_added", snapshot)
        return snapshot.id

    def update_step(self, execution_id: str, step_id: str, patch: dict[str, Any]) -> WorkflowStep:
        """
        Merge fields into an existing step.

        Raises:
            WorkflowNotFoundError: If the execution is not active
            StepNotFoundError: If the step does not exist
        """
        protected = {"id", "execution_id", "sequence"}
        with self._lock:
            record = self._get_active(execution_id)
            for index, existing in enumerate(record.steps):
                if existing.id == step_id:
                    break
            else:
                raise StepNotFoundError(step_id)

            merged = {
                **existing.model_dump(),
                **{key: value for key, value in patch.items() if key not in protected},
                "updated_at": datetime.now(UTC),
            }
            updated = WorkflowStep(**merged)
            record.steps[index] = updated
            snapshot = updated.model_copy(deep=True)

        self._notify(execution_id, "step_updated", snapshot)
        return snapshot

    def get_workflow(self, execution_id: str) -> WorkflowRecord | None:
        """Copy of an active workflow; finished workflows are read with load_workflow()."""
        with self._lock:
            record = self._active.get(execution_id)
            return record.model_copy(deep=True) if record is not None else None

    def get_workflow_steps(self, execution_id: str) -> list[WorkflowStep]:
        workflow = self.get_workflow(execution_id)
        return workflow.steps if workflow is not None else []

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete_execution(self, execution_id: str, final_data: dict[str, Any] | None = None) -> WorkflowRecord:
        """
        Finish a workflow: stamp it, persist it and stop tracking it.

        A store failure is logged; the workflow is still finished and
        listeners are still notified.

        Args:
            execution_id: Execution to finish
            final_data: Optional ``status``, ``results``, ``errors``,
                ``current_iteration``

        Returns:
            The finished record, steps included

        Raises:
            WorkflowNotFoundError: If the execution is not active
        """
        final_data = final_data or {}
        with self._lock:
            record = self._get_active(execution_id)
            record.status = WorkflowStatus(final_data.get("status") or WorkflowStatus.COMPLETED)
            record.end_time = datetime.now(UTC)
            record.total_duration = (record.end_time - record.start_time).total_seconds()
            record.results = dict(final_data.get("results") or {})
            record.errors = list(final_data.get("errors") or [])
            if final_data.get("current_iteration") is not None:
                record.current_iteration = final_data["current_iteration"]
            record.step_count = len(record.steps)
            snapshot = record.model_copy(deep=True)

        try:
            await self._store.save_workflow(snapshot.summary(), snapshot.steps)
        except Exception as e:
            logger.error(f"Failed to persist workflow {execution_id}: {e}", exc_info=True)
        finally:
            with self._lock:
                self._active.pop(execution_id, None)

        logger.info(
            f"Workflow {execution_id} finished: status={snapshot.status}, "
            f"steps={snapshot.step_count}, duration={snapshot.total_duration:.2f}s"
        )
        self._notify(execution_id, "workflow_completed", snapshot)
        return snapshot

    async def cancel_execution(self, execution_id: str, reason: str = "Cancelled by user") -> WorkflowRecord:
        """Record a cancellation step and finish the workflow as cancelled."""
        self.add_step(
            execution_id,
            {"type": StepType.CANCELLATION, "content": {"reason": reason}, "status": "completed"},
        )
        return await self.complete_execution(
            execution_id,
            {"status": WorkflowStatus.CANCELLED, "results": {"cancelled": True, "reason": reason}},
        )

    # ------------------------------------------------------------------
    # Durable reads
    # ------------------------------------------------------------------

    async def load_workflow(self, execution_id: str) -> WorkflowRecord | None:
        """Load a finished workflow with its steps sorted by timestamp."""
        record = await self._store.get_workflow(execution_id)
        if record is None:
            return None
        steps = await self._store.get_steps(execution_id)
        return record.model_copy(update={"steps": steps})

    async def load_steps(
        self,
        execution_id: str,
        step_type: StepType | str | None = None,
        iteration: int | None = None,
    ) -> list[WorkflowStep]:
        """
        Load the stored steps of a finished workflow, optionally filtered.

        Args:
            execution_id: Execution to read
            step_type: Only steps of this type
            iteration: Only steps recorded in this iteration

        Returns:
            Matching steps sorted by timestamp; empty if nothing is stored
        """
        steps = await self._store.get_steps(execution_id)
        if step_type is not None:
            steps = [step for step in steps if step.type == StepType(step_type)]
        if iteration is not None:
            steps = [step for step in steps if step.iteration == iteration]
        return steps

    async def _query(self, filters: WorkflowFilters) -> list[WorkflowRecord]:
        records = [record for record in await self._store.list_workflows() if filters.matches(record)]
        records.sort(key=lambda record: record.start_time, reverse=True)
        return records

    async def get_workflow_history(self, filters: WorkflowFilters | None = None) -> WorkflowHistoryPage:
        """Stored workflows matching the filters, newest first, paginated."""
        filters = filters or WorkflowFilters()
        matching = await self._query(filters)
        start = filters.offset
        end = start + filters.limit if filters.limit is not None else len(matching)
        page = matching[start:end]
        return WorkflowHistoryPage(workflows=page, total=len(matching), has_more=end < len(matching))

    async def get_workflow_statistics(self, filters: WorkflowFilters | None = None) -> WorkflowStatistics:
        """Aggregate counts and averages over stored workflows (pagination is ignored)."""
        filters = (filters or WorkflowFilters()).model_copy(update={"limit": None, "offset": 0})
        workflows = await self._query(filters)

        stats = WorkflowStatistics(total_workflows=len(workflows))
        if not workflows:
            return stats

        for workflow in workflows:
            status = str(workflow.status)
            stats.status_breakdown[status] = stats.status_breakdown.get(status, 0) + 1
            if workflow.model_id:
                stats.model_breakdown[workflow.model_id] = stats.model_breakdown.get(workflow.model_id, 0) + 1
            stats.total_tool_calls += int(workflow.results.get("total_tool_calls") or 0)

        stats.completed_workflows = stats.status_breakdown.get(WorkflowStatus.COMPLETED, 0)
        stats.cancelled_workflows = stats.status_breakdown.get(WorkflowStatus.CANCELLED, 0)
        stats.error_workflows = stats.status_breakdown.get(WorkflowStatus.ERROR, 0)

        durations = [w.total_duration for w in workflows if w.total_duration is not None]
        if durations:
            stats.average_duration = sum(durations) / len(durations)
        stats.average_iterations = sum(w.current_iteration for w in workflows) / len(workflows)
        return stats

    async def delete_workflow(self, execution_id: str) -> None:
        await self._store.delete_workflow(execution_id)

    async def cleanup_workflows(
        self,
        max_age: timedelta = timedelta(days=7),
        max_count: int = 1000,
    ) -> CleanupReport:
        """
        Apply retention to stored workflows.

        Deletes workflows that started before ``now - max_age`` and, if more
        than ``max_count`` remain stored, the oldest ones beyond that count.
        """
        all_workflows = await self._store.list_workflows()
        oldest_first = sorted(all_workflows, key=lambda record: record.start_time)
        cutoff = datetime.now(UTC) - max_age

        to_delete: dict[str, WorkflowRecord] = {
            record.execution_id: record for record in oldest_first if record.start_time < cutoff
        }
        excess = len(all_workflows) - max_count
        if excess > 0:
            for record in oldest_first[:excess]:
                to_delete.setdefault(record.execution_id, record)

        for execution_id in to_delete:
            await self._store.delete_workflow(execution_id)

        if to_delete:
            logger.info(f"Workflow cleanup deleted {len(to_delete)} record(s)")
        return CleanupReport(
            deleted_count=len(to_delete),
            remaining_count=len(all_workflows) - len(to_delete),
        )

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, execution_id: str, callback: WorkflowListener) -> str:
        """
        Subscribe to events of one execution, or of every execution with "all".

        Returns:
            Listener id for remove_listener()
        """
        listener_id = f"listener_{uuid.uuid4().hex}"
        with self._lock:
            self._listeners.setdefault(execution_id, {})[listener_id] = callback
        return listener_id

    def remove_listener(self, execution_id: str, listener_id: str) -> None:
        with self._lock:
            listeners = self._listeners.get(execution_id)
            if listeners is None:
                return
            listeners.pop(listener_id, None)
            if not listeners:
                del self._listeners[execution_id]

    def _notify(self, execution_id: str, event_type: str, data: Any) -> None:
        with self._lock:
            specific = list(self._listeners.get(execution_id, {}).values())
            global_ = list(self._listeners.get(ALL_EXECUTIONS, {}).values()) if execution_id != ALL_EXECUTIONS else []

        for callback in specific + global_:
            try:
                callback(event_type, data, execution_id)
            except Exception as e:
                logger.warning(f"Workflow listener failed on {event_type} for {execution_id}: {e}")

    def get_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "initialized": self._initialized,
                "active_workflows": len(self._active),
                "total_listeners": sum(len(listeners) for listeners in self._listeners.values()),
            }
