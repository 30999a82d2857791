"""
ExecutionStore - Abstract interface for execution state backends.

Design Pattern: Adapter Pattern
ExecutionStore defines the target interface that every storage adapter
implements. In-memory, SQLite and Redis backends adapt to this common
interface, so the controller and dispatchers never know which one they
talk to.

Design Principle: Dependency Inversion
The executor depends on this abstraction, not on a concrete backend. Tests
run against InMemoryExecutionStore; production uses SQLite or Redis.

Write-Through Contract:
    A state transition is committed once the corresponding store call has
    returned. Dispatchers write every transition (status, dispatched set,
    task result) before acting on it, which is what makes `recover()`
    possible after a crash.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from pytaxis.errors import TaxisError
from pytaxis.models import Execution, ExecutionStatus, TaskResult


class StorageError(TaxisError):
    """
    Storage operation failed.

    Errors are values: backends wrap driver exceptions in StorageError with
    the operation and key that failed, never a bare Exception.
    """

    pass


@dataclass
class StoreSnapshot:
    """
    Point-in-time copy of a store's content.

    Produced by `ExecutionStore.snapshot()` and consumed by `restore()`.
    Backends are free to differ; the snapshot is backend-neutral.

    Attributes:
        executions: Execution records, start-time ordered
        results: TaskResults per execution id, in record order
        taken_at: When the snapshot was taken
    """

    executions: list[Execution] = field(default_factory=list)
    results: dict[str, list[TaskResult]] = field(default_factory=dict)
    taken_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __len__(self) -> int:
        return len(self.executions)


class ExecutionStore(ABC):
    """
    Abstract storage interface for workflow executions.

    Every backend keeps two kinds of data:
    - one Execution record per execution id (status, dispatched set, ...)
    - an append-only list of TaskResults per execution id

    Reads return copies: mutating a returned Execution never changes the
    stored one; only `update_execution()` does.

    Usage:
        store = InMemoryExecutionStore()
        await store.create_execution(execution)
        await store.append_task_result(execution.execution_id, result)
        results = await store.get_task_results(execution.execution_id)
    """

    def __init__(self):
        # Replaced on every notification so a waiter that grabbed the old
        # event before reading state can never miss a change.
        self._status_changed = asyncio.Event()

    # ========================================================================
    # Execution records
    # ========================================================================

    @abstractmethod
    async def create_execution(self, execution: Execution) -> None:
        """
        Persist a new execution record.

        Raises:
            AlreadyExistsError: If an execution with the same id exists
            StorageError: If the backend operation fails
        """
        pass

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        """
        Load one execution record.

        Returns None for unknown ids (a valid state: never started, or
        purged), never raises for that case.
        """
        pass

    @abstractmethod
    async def update_execution(self, execution: Execution) -> None:
        """
        Write through status, end time, dispatched set and error.

        Raises:
            StorageError: If the execution is unknown or the write fails
        """
        pass

    @abstractmethod
    async def list_executions(
        self,
        workflow_name: str | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        """
        List executions ordered by start time (ascending).

        Args:
            workflow_name: Only executions of this workflow
            statuses: Only executions currently in one of these statuses
        """
        pass

    @abstractmethod
    async def delete_execution(self, execution_id: str) -> bool:
        """Remove an execution and its results. Returns False if unknown."""
        pass

    # ========================================================================
    # Task results
    # ========================================================================

    @abstractmethod
    async def append_task_result(self, execution_id: str, result: TaskResult) -> None:
        """
        Append one attempt outcome (append-only, never rewritten).

        Raises:
            StorageError: If the execution is unknown or the write fails
        """
        pass

    @abstractmethod
    async def record_attempt(self, execution: Execution, result: TaskResult) -> None:
        """
        Append a TaskResult and write the execution's mutable fields atomically.

        Used when an attempt ends: either both the result and the updated
        dispatched set are committed, or neither is. Recovery relies on this
        to never lose an attempt.

        Raises:
            StorageError: If the execution is unknown or the write fails
        """
        pass

    @abstractmethod
    async def get_task_results(self, execution_id: str) -> list[TaskResult]:
        """All TaskResults of an execution in record order (empty if unknown)."""
        pass

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @abstractmethod
    async def reset(self) -> None:
        """Clear all data. After reset the store is empty but usable."""
        pass

    async def connect(self) -> None:
        """Open backend resources. No-op for backends that need none."""
        pass

    async def close(self) -> None:
        """Release backend resources. No-op for backends that hold none."""
        pass

    # ========================================================================
    # Queries built on the primitives (backends may override for speed)
    # ========================================================================

    async def get_history(
        self, workflow_name: str, start_time: datetime, end_time: datetime
    ) -> list[Execution]:
        """
        Executions of a workflow started within [start_time, end_time].

        Both bounds are inclusive; result is ordered by start time.
        """
        start_time = ensure_utc(start_time)
        end_time = ensure_utc(end_time)
        return [
            e
            for e in await self.list_executions(workflow_name=workflow_name)
            if start_time <= e.start_time <= end_time
        ]

    async def get_incomplete_executions(self) -> list[Execution]:
        """Non-terminal executions, used by recovery."""
        return await self.list_executions(
            statuses=[s for s in ExecutionStatus if not s.is_terminal]
        )

    async def trim_history(self, keep: int, workflow_name: str | None = None) -> int:
        """
        Drop the oldest terminal executions beyond the newest `keep`.

        Active executions are never trimmed.

        Args:
            keep: Number of terminal executions to retain
            workflow_name: Restrict trimming to one workflow

        Returns:
            Number of executions deleted
        """
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")

        terminal = await self.list_executions(
            workflow_name=workflow_name,
            statuses=[s for s in ExecutionStatus if s.is_terminal],
        )
        excess = terminal[: max(len(terminal) - keep, 0)]
        deleted = 0
        for execution in excess:
            if await self.delete_execution(execution.execution_id):
                deleted += 1
        return deleted

    async def cleanup_completed(self, older_than: timedelta) -> int:
        """
        Delete terminal executions that ended more than `older_than` ago.

        Returns:
            Number of executions deleted
        """
        cutoff = datetime.now(UTC) - older_than
        deleted = 0
        for execution in await self.list_executions(
            statuses=[s for s in ExecutionStatus if s.is_terminal]
        ):
            ended = execution.end_time or execution.updated_at
            if ended < cutoff and await self.delete_execution(execution.execution_id):
                deleted += 1
        return deleted

    # ========================================================================
    # Snapshot / restore (Template Method over the primitives)
    # ========================================================================

    async def snapshot(self) -> StoreSnapshot:
        """Point-in-time copy of every execution and its results."""
        executions = await self.list_executions()
        results = {
            e.execution_id: await self.get_task_results(e.execution_id) for e in executions
        }
        return StoreSnapshot(executions=executions, results=results)

    async def restore(self, snapshot: StoreSnapshot) -> None:
        """
        Replace the store content with a snapshot.

        Restored executions have no live dispatcher; non-terminal ones are
        picked up by `Controller.recover()`.
        """
        await self.reset()
        for execution in snapshot.executions:
            await self.create_execution(execution)
            for result in snapshot.results.get(execution.execution_id, []):
                await self.append_task_result(execution.execution_id, result)

    # ========================================================================
    # Status notification
    # ========================================================================

    def status_notify(self) -> asyncio.Event:
        """
        Return the event set on the next execution status change.

        Grab the event before reading state, then wait on it:

        ```python
        changed = store.status_notify()
        execution = await store.get_execution(execution_id)
        if not execution.is_terminal:
            await changed.wait()
        ```
        """
        return self._status_changed

    def notify_status(self) -> None:
        """Wake everyone waiting on `status_notify()`."""
        changed, self._status_changed = self._status_changed, asyncio.Event()
        changed.set()

    async def wait_for_terminal(
        self, execution_id: str, timeout: float | None = None
    ) -> Execution:
        """
        Wait until an execution reaches a terminal status (race-free).

        Raises:
            StorageError: If the execution is unknown
            TimeoutError: If timeout elapses first
        """
        async with asyncio.timeout(timeout):
            while True:
                changed = self.status_notify()
                execution = await self.get_execution(execution_id)
                if execution is None:
                    raise StorageError(f"Execution not found: execution_id={execution_id}")
                if execution.is_terminal:
                    return execution
                await changed.wait()


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


__all__ = [
    "ExecutionStore",
    "StorageError",
    "StoreSnapshot",
    "ensure_utc",
]
