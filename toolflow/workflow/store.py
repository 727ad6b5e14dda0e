"""
Durable storage for finished workflow records.

Two implementations share the WorkflowStore interface:

- InMemoryWorkflowStore: process-local, for tests and ephemeral runs.
- JsonFileWorkflowStore: one JSON file per workflow plus one per step,
  written with aiofiles so the event loop is not blocked on disk I/O.

    <root>/workflows/<execution_id>.json
    <root>/steps/<execution_id>/<step_id>.json

Records are keyed by execution id, steps by step id. History queries load
the workflow index and filter in memory; the store is sized for thousands of
records, not millions.
"""

import asyncio
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

import aiofiles

from toolflow.config.logging import get_logger
from toolflow.workflow.models import WorkflowRecord, WorkflowStep, WorkflowStoreError

logger = get_logger(__name__)


def _sort_steps(steps: list[WorkflowStep]) -> list[WorkflowStep]:
    return sorted(steps, key=lambda step: (step.timestamp, step.sequence))


class WorkflowStore(ABC):
    """Abstract key/value store for workflow records and their steps."""

    async def initialize(self) -> None:
        """Prepare the store for use."""

    async def close(self) -> None:
        """Release any resources held by the store."""

    @abstractmethod
    async def save_workflow(self, record: WorkflowRecord, steps: list[WorkflowStep]) -> None:
        """
        Persist workflow metadata and every step.

        Args:
            record: Workflow metadata (its ``steps`` field is ignored)
            steps: Steps to store, each under its own id

        Raises:
            WorkflowStoreError: If the write fails
        """

    @abstractmethod
    async def get_workflow(self, execution_id: str) -> WorkflowRecord | None:
        """Load workflow metadata, or None if it was never stored."""

    @abstractmethod
    async def get_steps(self, execution_id: str) -> list[WorkflowStep]:
        """Load the steps of a workflow sorted by timestamp."""

    @abstractmethod
    async def list_workflows(self) -> list[WorkflowRecord]:
        """Load the metadata of every stored workflow (no steps)."""

    @abstractmethod
    async def delete_workflow(self, execution_id: str) -> None:
        """Delete a workflow and its steps. Missing ids are ignored."""

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


class InMemoryWorkflowStore(WorkflowStore):
    """Workflow store backed by dictionaries."""

    def __init__(self) -> None:
        self._workflows: dict[str, WorkflowRecord] = {}
        self._steps: dict[str, dict[str, WorkflowStep]] = {}
        self._lock = asyncio.Lock()

    async def save_workflow(self, record: WorkflowRecord, steps: list[WorkflowStep]) -> None:
        async with self._lock:
            self._workflows[record.execution_id] = record.model_copy(
                update={"steps": [], "step_count": len(steps)}, deep=True
            )
            bucket = self._steps.setdefault(record.execution_id, {})
            for step in steps:
                bucket[step.id] = step.model_copy(deep=True)

    async def get_workflow(self, execution_id: str) -> WorkflowRecord | None:
        async with self._lock:
            record = self._workflows.get(execution_id)
            return record.model_copy(deep=True) if record is not None else None

    async def get_steps(self, execution_id: str) -> list[WorkflowStep]:
        async with self._lock:
            steps = [step.model_copy(deep=True) for step in self._steps.get(execution_id, {}).values()]
        return _sort_steps(steps)

    async def list_workflows(self) -> list[WorkflowRecord]:
        async with self._lock:
            return [record.model_copy(deep=True) for record in self._workflows.values()]

    async def delete_workflow(self, execution_id: str) -> None:
        async with self._lock:
            self._workflows.pop(execution_id, None)
            self._steps.pop(execution_id, None)


class JsonFileWorkflowStore(WorkflowStore):
    """
    Workflow store that writes JSON documents under a root directory.

    Args:
        root: Directory to store workflows in (created on initialize)
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self._workflows_dir = self.root / "workflows"
        self._steps_dir = self.root / "steps"
        self._initialized = False

    async def initialize(self) -> None:
        try:
            self._workflows_dir.mkdir(parents=True, exist_ok=True)
            self._steps_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkflowStoreError(f"Could not create workflow store at {self.root}: {e}") from e
        self._initialized = True
        logger.info(f"Workflow store ready at {self.root}")

    def _check_initialized(self) -> None:
        if not self._initialized:
            raise WorkflowStoreError("Workflow store not initialized")

    @staticmethod
    async def _write(path: Path, payload: str) -> None:
        # Write then rename so a crash never leaves a half-written record
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
        tmp_path.replace(path)

    @staticmethod
    async def _read(path: Path) -> str:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()

    async def save_workflow(self, record: WorkflowRecord, steps: list[WorkflowStep]) -> None:
        self._check_initialized()
        summary = record.model_copy(update={"steps": [], "step_count": len(steps)})
        step_dir = self._steps_dir / record.execution_id
        try:
            step_dir.mkdir(parents=True, exist_ok=True)
            for step in steps:
                await self._write(step_dir / f"{step.id}.json", step.model_dump_json())
            await self._write(
                self._workflows_dir / f"{record.execution_id}.json",
                summary.model_dump_json(exclude={"steps"}),
            )
        except (OSError, ValueError) as e:
            raise WorkflowStoreError(f"Failed to save workflow {record.execution_id}: {e}") from e

    async def get_workflow(self, execution_id: str) -> WorkflowRecord | None:
        self._check_initialized()
        path = self._workflows_dir / f"{execution_id}.json"
        if not path.exists():
            return None
        try:
            return WorkflowRecord.model_validate_json(await self._read(path))
        except (OSError, ValueError) as e:
            raise WorkflowStoreError(f"Failed to load workflow {execution_id}: {e}") from e

    async def get_steps(self, execution_id: str) -> list[WorkflowStep]:
        self._check_initialized()
        step_dir = self._steps_dir / execution_id
        if not step_dir.is_dir():
            return []
        try:
            steps = [
                WorkflowStep.model_validate_json(await self._read(path))
                for path in step_dir.glob("*.json")
            ]
        except (OSError, ValueError) as e:
            raise WorkflowStoreError(f"Failed to load workflow steps for {execution_id}: {e}") from e
        return _sort_steps(steps)

    async def list_workflows(self) -> list[WorkflowRecord]:
        self._check_initialized()
        records = []
        for path in self._workflows_dir.glob("*.json"):
            try:
                records.append(WorkflowRecord.model_validate_json(await self._read(path)))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable workflow record {path.name}: {e}")
        return records

    async def delete_workflow(self, execution_id: str) -> None:
        self._check_initialized()
        try:
            (self._workflows_dir / f"{execution_id}.json").unlink(missing_ok=True)
            step_dir = self._steps_dir / execution_id
            if step_dir.is_dir():
                shutil.rmtree(step_dir)
        except OSError as e:
            raise WorkflowStoreError(f"Failed to delete workflow {execution_id}: {e}") from e
