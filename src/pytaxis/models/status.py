"""Status enumerations for workflow execution tracking.

Defines the lifecycle states of a workflow execution and the outcome of a
single task attempt.
"""

from enum import Enum


class ExecutionStatus(Enum):
    """Status of a workflow execution.

    Lifecycle:
        PENDING → RUNNING → PAUSED/STOPPING → COMPLETED/FAILED/CANCELLED

    PAUSED returns to RUNNING on resume. STOPPING drains in-flight attempts
    and always ends CANCELLED.
    """

    PENDING = "PENDING"
    """Graph validated, record written, nothing dispatched yet."""

    RUNNING = "RUNNING"
    """Ready tasks are being dispatched."""

    PAUSED = "PAUSED"
    """No new dispatch; in-flight attempts finish naturally."""

    STOPPING = "STOPPING"
    """Cancellation requested; draining in-flight attempts."""

    COMPLETED = "COMPLETED"
    """Every task succeeded."""

    FAILED = "FAILED"
    """Every task is terminal and at least one failed."""

    CANCELLED = "CANCELLED"
    """Stopped before every task ran."""

    @property
    def is_terminal(self) -> bool:
        """Check if no further transitions can occur."""
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    @property
    def is_active(self) -> bool:
        """Check if the execution still owns a control loop."""
        return not self.is_terminal

    def can_transition_to(self, target: "ExecutionStatus") -> bool:
        """Check whether ``self → target`` is a legal transition."""
        return target in _TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.STOPPING, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.PAUSED,
            ExecutionStatus.STOPPING,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
        }
    ),
    ExecutionStatus.PAUSED: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.STOPPING, ExecutionStatus.FAILED}
    ),
    ExecutionStatus.STOPPING: frozenset({ExecutionStatus.CANCELLED, ExecutionStatus.FAILED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


class TaskOutcome(Enum):
    """Outcome of one task attempt.

    Design: One Record Per Attempt
        A task that is retried produces several outcomes; the latest one
        decides how the graph progresses. SKIPPED records are written for
        tasks that were never attempted.
    """

    SUCCESS = "SUCCESS"
    """The executable returned normally."""

    FAILURE = "FAILURE"
    """The executable raised or returned a failure code."""

    TIMEOUT = "TIMEOUT"
    """The attempt exceeded the task deadline."""

    CANCELLED = "CANCELLED"
    """The attempt ended because the execution was being stopped."""

    SKIPPED = "SKIPPED"
    """The task was never attempted (failed dependency or cancellation)."""

    @property
    def is_failure(self) -> bool:
        """Check if this outcome counts against the retry budget."""
        return self in (TaskOutcome.FAILURE, TaskOutcome.TIMEOUT)

    def __str__(self) -> str:
        return self.value
