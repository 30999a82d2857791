"""Result views: per-attempt TaskResult, derived WorkflowResult and the
WorkflowContext status snapshot.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pytaxis.errors import ResultCode
from pytaxis.models.status import ExecutionStatus, TaskOutcome

if TYPE_CHECKING:
    from pytaxis.models.execution import Execution


@dataclass(frozen=True)
class TaskResult:
    """Outcome of one task attempt.

    Skipped tasks get a single record with ``attempt == 0``. When a task is
    retried there is one record per attempt; the latest is authoritative.
    """

    task_name: str
    attempt: int
    outcome: TaskOutcome
    code: ResultCode = ResultCode.SUCCESS
    message: str = ""
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    value: Any = field(default=None, compare=False)
    """Whatever the executable returned (success only)."""
    retryable: bool = True
    """False when the failure asked not to be retried (see TaskError)."""

    @property
    def retry_count(self) -> int:
        """Retries consumed when this attempt ran."""
        return max(self.attempt - 1, 0)

    @property
    def duration(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.outcome is TaskOutcome.SUCCESS

    def __repr__(self) -> str:
        return (
            f"TaskResult(task_name={self.task_name!r}, attempt={self.attempt}, "
            f"outcome={self.outcome}, code={self.code}, message={self.message!r})"
        )


@dataclass(frozen=True)
class WorkflowContext:
    """Status snapshot returned by ``Controller.get_status``."""

    execution_id: str
    workflow_name: str
    workflow_version: str
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime | None
    current_tasks: tuple[str, ...]
    user_data: Any = None

    @property
    def current_task(self) -> str | None:
        """First in-flight task in insertion order, None if idle."""
        return self.current_tasks[0] if self.current_tasks else None

    @classmethod
    def from_execution(cls, execution: Execution) -> WorkflowContext:
        return cls(
            execution_id=execution.execution_id,
            workflow_name=execution.workflow_name,
            workflow_version=execution.workflow_version,
            status=execution.status,
            start_time=execution.start_time,
            end_time=execution.end_time,
            current_tasks=tuple(execution.current_tasks()),
            user_data=execution.user_data,
        )


@dataclass(frozen=True)
class WorkflowResult:
    """Read-only summary of an execution.

    Computed on demand from the execution record and its TaskResults; never
    stored or mutated on its own.
    """

    execution_id: str
    workflow_name: str
    status: ExecutionStatus
    task_results: tuple[TaskResult, ...]
    start_time: datetime
    end_time: datetime | None
    summary: str

    @property
    def overall_result(self) -> ResultCode | None:
        """SUCCESS when completed, ERROR when failed or cancelled, None while active."""
        if self.status is ExecutionStatus.COMPLETED:
            return ResultCode.SUCCESS
        if self.status.is_terminal:
            return ResultCode.ERROR
        return None

    @property
    def total_duration(self) -> float:
        """Seconds from start to end (or to now while active)."""
        end = self.end_time or datetime.now(UTC)
        return max((end - self.start_time).total_seconds(), 0.0)

    def results_for(self, task_name: str) -> list[TaskResult]:
        return [r for r in self.task_results if r.task_name == task_name]

    def final_outcomes(self) -> dict[str, TaskOutcome]:
        """Latest outcome per task, in first-seen order."""
        return {name: result.outcome for name, result in latest_results(self.task_results).items()}

    @classmethod
    def from_execution(
        cls, execution: Execution, results: list[TaskResult]
    ) -> WorkflowResult:
        ordered = tuple(sorted(results, key=lambda r: r.start_time))
        return cls(
            execution_id=execution.execution_id,
            workflow_name=execution.workflow_name,
            status=execution.status,
            task_results=ordered,
            start_time=execution.start_time,
            end_time=execution.end_time,
            summary=_summarize(execution, ordered),
        )


def latest_results(results: tuple[TaskResult, ...] | list[TaskResult]) -> dict[str, TaskResult]:
    """Map each task to its authoritative (latest recorded) result.

    Attempts of one task never overlap, so record order is attempt order.
    """
    latest: dict[str, TaskResult] = {}
    for result in results:
        latest[result.task_name] = result
    return latest


def _summarize(execution: Execution, results: tuple[TaskResult, ...]) -> str:
    finals = Counter(r.outcome for r in latest_results(results).values())
    attempts = sum(1 for r in results if r.outcome is not TaskOutcome.SKIPPED)
    total = len(execution.workflow.tasks)

    summary = (
        f"{execution.status}: {total} tasks, "
        f"{finals[TaskOutcome.SUCCESS]} succeeded, "
        f"{finals[TaskOutcome.FAILURE] + finals[TaskOutcome.TIMEOUT]} failed, "
        f"{finals[TaskOutcome.SKIPPED]} skipped, "
        f"{finals[TaskOutcome.CANCELLED]} cancelled, "
        f"{attempts} attempts"
    )
    if execution.error:
        summary += f"; error: {execution.error}"
    return summary
