"""
Process-wide registry of running and finished executions.

Used for status lookups and cooperative cancellation. All operations take a
lock so concurrent executions (or a caller on another thread) can insert,
look up and move records without interfering with each other.
"""

import threading
from datetime import UTC, datetime, timedelta

from toolflow.config.logging import get_logger
from toolflow.execution.models import Execution

logger = get_logger(__name__)


class ExecutionRegistry:
    """
    Active and historical executions keyed by execution id.

    Args:
        max_history_age: Finished executions older than this are evicted by cleanup_history()
        max_history_count: At most this many finished executions are retained
    """

    def __init__(
        self,
        max_history_age: timedelta = timedelta(hours=24),
        max_history_count: int = 500,
    ):
        self._active: dict[str, Execution] = {}
        self._history: dict[str, Execution] = {}
        self._lock = threading.Lock()
        self._max_history_age = max_history_age
        self._max_history_count = max_history_count
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        self._initialized = True

    def shutdown(self) -> None:
        """Drop all records. Running executions keep their own references."""
        with self._lock:
            if self._active:
                logger.warning(f"Execution registry shut down with {len(self._active)} active execution(s)")
            self._active.clear()
            self._history.clear()
        self._initialized = False

    def add(self, execution: Execution) -> None:
        """
        Register a new running execution.

        Raises:
            ValueError: If the id is already registered
        """
        with self._lock:
            if execution.execution_id in self._active or execution.execution_id in self._history:
                raise ValueError(f"Execution already registered: {execution.execution_id}")
            self._active[execution.execution_id] = execution

    def get(self, execution_id: str) -> Execution | None:
        """Active execution first, then history."""
        with self._lock:
            return self._active.get(execution_id) or self._history.get(execution_id)

    def get_active(self, execution_id: str) -> Execution | None:
        with self._lock:
            return self._active.get(execution_id)

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active

    def list_active(self) -> list[Execution]:
        with self._lock:
            return list(self._active.values())

    def list_history(self) -> list[Execution]:
        with self._lock:
            return list(self._history.values())

    def finish(self, execution_id: str) -> Execution | None:
        """Move an execution from the active set to history."""
        with self._lock:
            execution = self._active.pop(execution_id, None)
            if execution is not None:
                self._history[execution_id] = execution
        if execution is not None:
            self._enforce_count()
        return execution

    def _enforce_count(self) -> int:
        with self._lock:
            excess = len(self._history) - self._max_history_count
            if excess <= 0:
                return 0
            oldest = sorted(self._history.values(), key=self._finished_at)[:excess]
            for execution in oldest:
                del self._history[execution.execution_id]
            return len(oldest)

    @staticmethod
    def _finished_at(execution: Execution) -> datetime:
        return execution.end_time or execution.start_time

    def cleanup_history(
        self,
        max_age: timedelta | None = None,
        max_count: int | None = None,
    ) -> int:
        """
        Evict finished executions by age and by count.

        Args:
            max_age: Override for the configured maximum age
            max_count: Override for the configured maximum count

        Returns:
            Number of executions evicted
        """
        max_age = max_age if max_age is not None else self._max_history_age
        max_count = max_count if max_count is not None else self._max_history_count
        cutoff = datetime.now(UTC) - max_age

        with self._lock:
            expired = [
                execution_id
                for execution_id, execution in self._history.items()
                if self._finished_at(execution) < cutoff
            ]
            for execution_id in expired:
                del self._history[execution_id]

            removed = len(expired)
            excess = len(self._history) - max_count
            if excess > 0:
                for execution in sorted(self._history.values(), key=self._finished_at)[:excess]:
                    del self._history[execution.execution_id]
                removed += excess

        if removed:
            logger.info(f"Evicted {removed} finished execution(s) from history")
        return removed

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def history_count(self) -> int:
        with self._lock:
            return len(self._history)
