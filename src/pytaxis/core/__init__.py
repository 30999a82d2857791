"""Runtime support shared by task bodies and the executor.

- TaskContext: the argument every task executable receives
- TASK_CONTEXT / current_task_context: task-local access to it
"""

from pytaxis.core.context import TASK_CONTEXT, TaskContext, current_task_context

__all__ = [
    "TASK_CONTEXT",
    "TaskContext",
    "current_task_context",
]
