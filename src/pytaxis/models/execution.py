"""Execution record owned by the execution store."""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from pytaxis.models.status import ExecutionStatus
from pytaxis.models.task import Workflow


@dataclass
class Execution:
    """One run instance of a workflow.

    Created by the controller on start, mutated only by the dispatcher and
    the controller, and written through the store on every transition.

    Design: Snapshot, Not Reference
        ``workflow`` is a copy taken at start time, so later edits to the
        registered definition never affect an execution in flight.
    """

    execution_id: str
    """Unique identifier (uuid7 string, time ordered)."""

    workflow_name: str
    workflow_version: str

    workflow: Workflow
    """Definition snapshot taken at start."""

    status: ExecutionStatus = ExecutionStatus.PENDING

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    dispatched: set[str] = field(default_factory=set)
    """Task names with an attempt currently in flight."""

    user_data: Any = None
    """Opaque caller data, handed to every task context."""

    error: str | None = None
    """Diagnostic for engine-internal failures, None otherwise."""

    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __repr__(self) -> str:
        return (
            f"Execution(execution_id={self.execution_id!r}, "
            f"workflow={self.workflow_name!r}@{self.workflow_version!r}, "
            f"status={self.status}, dispatched={sorted(self.dispatched)!r})"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def copy(self) -> "Execution":
        """Detached copy; the workflow snapshot is shared, never mutated."""
        return replace(self, dispatched=set(self.dispatched))

    def current_tasks(self) -> list[str]:
        """Dispatched task names in workflow insertion order."""
        return [name for name in self.workflow.task_names() if name in self.dispatched]
