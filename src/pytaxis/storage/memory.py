"""In-memory storage implementation for pytaxis.

Design Pattern: Adapter Pattern
InMemoryExecutionStore adapts in-memory dictionaries to the ExecutionStore
interface.

Instance is immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import UTC, datetime

from pytaxis.errors import AlreadyExistsError
from pytaxis.models import Execution, ExecutionStatus, TaskResult
from pytaxis.storage.base import ExecutionStore, StorageError


class InMemoryExecutionStore(ExecutionStore):
    """In-memory storage for testing and single-process use.

    Can be substituted for SqliteExecutionStore without changing client code.
    Nothing survives the process, so recovery has nothing to recover.

    Usage:
        store = InMemoryExecutionStore()
        await store.create_execution(execution)
    """

    def __init__(self):
        super().__init__()
        # Storage: {execution_id: Execution}
        self._executions: dict[str, Execution] = {}

        # Storage: {execution_id: [TaskResult, ...]} in record order
        self._results: dict[str, list[TaskResult]] = {}

        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"InMemoryExecutionStore(executions={len(self._executions)})"

    async def create_execution(self, execution: Execution) -> None:
        async with self._lock:
            if execution.execution_id in self._executions:
                raise AlreadyExistsError(
                    f"Execution already exists: execution_id={execution.execution_id}"
                )
            self._executions[execution.execution_id] = execution.copy()
            self._results[execution.execution_id] = []
        self.notify_status()

    async def get_execution(self, execution_id: str) -> Execution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            return execution.copy() if execution is not None else None

    async def update_execution(self, execution: Execution) -> None:
        async with self._lock:
            old = self._executions.get(execution.execution_id)
            if old is None:
                raise StorageError(
                    f"Execution not found: execution_id={execution.execution_id}"
                )
            updated = execution.copy()
            updated.updated_at = datetime.now(UTC)
            self._executions[execution.execution_id] = updated
            status_changed = old.status is not updated.status

        if status_changed:
            self.notify_status()

    async def list_executions(
        self,
        workflow_name: str | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            matches = [
                e.copy()
                for e in self._executions.values()
                if (workflow_name is None or e.workflow_name == workflow_name)
                and (wanted is None or e.status in wanted)
            ]
        return sorted(matches, key=lambda e: (e.start_time, e.execution_id))

    async def delete_execution(self, execution_id: str) -> bool:
        async with self._lock:
            if self._executions.pop(execution_id, None) is None:
                return False
            self._results.pop(execution_id, None)
            return True

    async def append_task_result(self, execution_id: str, result: TaskResult) -> None:
        async with self._lock:
            results = self._results.get(execution_id)
            if results is None:
                raise StorageError(f"Execution not found: execution_id={execution_id}")
            results.append(result)

    async def record_attempt(self, execution: Execution, result: TaskResult) -> None:
        async with self._lock:
            old = self._executions.get(execution.execution_id)
            if old is None:
                raise StorageError(
                    f"Execution not found: execution_id={execution.execution_id}"
                )
            updated = execution.copy()
            updated.updated_at = datetime.now(UTC)
            self._executions[execution.execution_id] = updated
            self._results[execution.execution_id].append(result)
            status_changed = old.status is not updated.status

        if status_changed:
            self.notify_status()

    async def get_task_results(self, execution_id: str) -> list[TaskResult]:
        async with self._lock:
            return list(self._results.get(execution_id, []))

    async def reset(self) -> None:
        """Clear all data."""
        async with self._lock:
            self._executions.clear()
            self._results.clear()
