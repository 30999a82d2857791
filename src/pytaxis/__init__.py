"""
pytaxis: Workflow Orchestration Engine for Python

Runs directed graphs of named tasks with dependencies, per-task timeouts
and retries, pause/resume/stop control and auditable execution history.

Design Pattern: Façade Pattern (Chapter 10)
This module provides a simplified interface to the package, hiding the
graph validation, dispatching and storage behind Registry and Controller.

From Dave Cheney: "A good package starts with its name"
Package "taxis" (Greek: arrangement/order) describes what it provides.

Example:
    ```python
    import asyncio
    from pytaxis import Controller, Registry, SqliteExecutionStore, build_workflow, task

    @task
    async def extract(ctx):
        return await fetch_rows()

    @task(depends_on="extract", retries=2, timeout=30)
    async def load(ctx):
        ...

    async def main():
        store = SqliteExecutionStore("executions.db")
        await store.connect()

        registry = Registry()
        registry.add_workflow(build_workflow("etl", [extract, load]))

        controller = Controller(registry, store).with_max_workers(4)
        execution_id = await controller.start("etl")
        result = await controller.wait(execution_id)
        print(result.status, result.summary)

        await store.close()

    asyncio.run(main())
    ```
"""

# Errors
from pytaxis.errors import (
    AlreadyExistsError,
    CycleError,
    InvalidParamError,
    InvalidStateError,
    NotFoundError,
    NotSupportedError,
    PermissionDeniedError,
    ResultCode,
    TaskCancelledError,
    TaskError,
    TaskTimeoutError,
    TaxisError,
    UnknownDependencyError,
    error_for_code,
)

# Data model
from pytaxis.models import (
    Execution,
    ExecutionStatus,
    SchedulePolicy,
    Task,
    TaskExecutable,
    TaskOutcome,
    TaskResult,
    Workflow,
    WorkflowContext,
    WorkflowResult,
)

# Task runtime
from pytaxis.core import TaskContext, current_task_context

# Storage (Adapter pattern)
from pytaxis.storage import ExecutionStore, StorageError, StoreSnapshot
from pytaxis.storage.memory import InMemoryExecutionStore
from pytaxis.storage.sqlite import SqliteExecutionStore

# Decorators
from pytaxis.decorators import build_workflow, is_task, task, task_of

# Execution
from pytaxis.executor import Controller, GraphSummary, TaskGraph, WorkerPool, build_graph, ready_set
from pytaxis.registry import Registry

# Version
__version__ = "0.1.0"

__all__ = [
    # Errors
    "ResultCode",
    "TaxisError",
    "NotFoundError",
    "AlreadyExistsError",
    "InvalidParamError",
    "InvalidStateError",
    "CycleError",
    "UnknownDependencyError",
    "TaskTimeoutError",
    "PermissionDeniedError",
    "NotSupportedError",
    "TaskError",
    "TaskCancelledError",
    "StorageError",
    "error_for_code",

    # Data model
    "Task",
    "TaskExecutable",
    "Workflow",
    "Execution",
    "ExecutionStatus",
    "TaskOutcome",
    "TaskResult",
    "WorkflowResult",
    "WorkflowContext",
    "SchedulePolicy",

    # Task runtime
    "TaskContext",
    "current_task_context",

    # Storage
    "ExecutionStore",
    "StoreSnapshot",
    "InMemoryExecutionStore",
    "SqliteExecutionStore",

    # Decorators
    "task",
    "is_task",
    "task_of",
    "build_workflow",

    # Execution
    "Registry",
    "Controller",
    "TaskGraph",
    "GraphSummary",
    "WorkerPool",
    "build_graph",
    "ready_set",
]
