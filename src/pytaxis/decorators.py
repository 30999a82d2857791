"""
Declarative task definitions.

The @task decorator attaches a Task definition to a function without
wrapping it: the function stays directly callable (and testable) while
`task_of()` and `build_workflow()` turn decorated functions into Tasks and
Workflows.

Example:
    ```python
    @task
    async def fetch(ctx):
        return await api.get("/data")

    @task(depends_on="fetch", retries=2, timeout=30)
    async def parse(ctx):
        ...

    workflow = build_workflow("ingest", [fetch, parse])
    registry.add_workflow(workflow)
    ```
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from pytaxis.errors import InvalidParamError
from pytaxis.models import Task, Workflow

F = TypeVar("F", bound=Callable[..., Any])

_TASK_ATTR = "_pytaxis_task"


def task(
    func: F | None = None,
    *,
    name: str | None = None,
    depends_on: str | Iterable[str] | None = None,
    timeout: float | None = None,
    retries: int = 0,
    description: str | None = None,
    handler: str | None = None,
) -> F:
    """
    Mark a function (sync or async, taking a TaskContext) as a task body.

    Args:
        func: The function to decorate
        name: Task name (defaults to the function name)
        depends_on: Name or names of tasks that must succeed first
        timeout: Per-attempt deadline in seconds (None or 0 for none)
        retries: Retries allowed after the first attempt
        description: Human description (defaults to the first docstring line)
        handler: Registry handler name, so exported definitions can be re-bound

    Example:
        ```python
        @task(depends_on=["extract"], retries=3)
        def transform(ctx):
            ...
        ```
    """

    def decorator(f: F) -> F:
        doc = (f.__doc__ or "").strip().splitlines()
        definition = Task(
            name=name or f.__name__,
            dependencies=depends_on,
            executable=f,
            timeout_seconds=timeout,
            retry_count=retries,
            description=description if description is not None else (doc[0] if doc else ""),
            handler=handler,
        )
        setattr(f, _TASK_ATTR, definition)
        return f

    if func is None:
        return decorator  # type: ignore
    return decorator(func)


def is_task(obj: Any) -> bool:
    """True for functions decorated with @task."""
    return isinstance(getattr(obj, _TASK_ATTR, None), Task)


def task_of(obj: Task | Callable[..., Any]) -> Task:
    """
    Return the Task for a Task or a @task-decorated function.

    Each call returns a fresh copy, so callers may change it freely.

    Raises:
        InvalidParamError: If obj is neither
    """
    if isinstance(obj, Task):
        return obj
    definition = getattr(obj, _TASK_ATTR, None)
    if not isinstance(definition, Task):
        raise InvalidParamError(f"{obj!r} is not a Task or a @task-decorated function")
    return definition.with_changes()


def build_workflow(
    name: str,
    tasks: Iterable[Task | Callable[..., Any]],
    version: str = "1.0",
    description: str = "",
) -> Workflow:
    """Assemble a Workflow from Tasks and decorated functions, in order."""
    return Workflow(
        name=name,
        tasks=[task_of(t) for t in tasks],
        version=version,
        description=description,
    )


__all__ = ["task", "is_task", "task_of", "build_workflow"]
