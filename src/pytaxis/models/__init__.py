"""Core data models for workflow orchestration.

Defines workflow and task definitions, the execution record, per-attempt
results and the derived result/status views.

Design: Dependency-Free Models
These types depend only on ``pytaxis.errors`` so storage and executor
layers can import them without cycles.
"""

from pytaxis.models.execution import Execution
from pytaxis.models.results import TaskResult, WorkflowContext, WorkflowResult, latest_results
from pytaxis.models.schedule import SchedulePolicy
from pytaxis.models.status import ExecutionStatus, TaskOutcome
from pytaxis.models.task import Executable, Task, TaskExecutable, Workflow

__all__ = [
    "Execution",
    "ExecutionStatus",
    "TaskOutcome",
    "Task",
    "TaskExecutable",
    "Executable",
    "Workflow",
    "TaskResult",
    "WorkflowResult",
    "WorkflowContext",
    "SchedulePolicy",
    "latest_results",
]
