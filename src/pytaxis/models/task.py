"""Task and workflow definitions.

A Workflow is an ordered collection of Tasks; each Task names the tasks it
depends on. The executable attached to a task is opaque to the engine and
never takes part in equality or in the JSON form, so definitions can be
persisted and compared structurally.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Protocol, Union, runtime_checkable

from pytaxis.errors import InvalidParamError

if TYPE_CHECKING:
    from pytaxis.core.context import TaskContext


@runtime_checkable
class TaskExecutable(Protocol):
    """The single capability a task body provides.

    Variants can wrap resource access, rule evaluation or agent invocation
    uniformly. Plain callables (sync or async) taking the context are
    accepted wherever a TaskExecutable is.
    """

    def execute(self, context: TaskContext) -> Any: ...


Executable = Union[TaskExecutable, Callable[..., Awaitable[Any]], Callable[..., Any]]


def _normalize_dependencies(dependencies: Iterable[str] | str | None) -> tuple[str, ...]:
    if dependencies is None:
        return ()
    if isinstance(dependencies, str):
        dependencies = [dependencies]

    seen: list[str] = []
    for dep in dependencies:
        if not isinstance(dep, str) or not dep:
            raise InvalidParamError(f"Dependency names must be non-empty strings, got {dep!r}")
        if dep not in seen:
            seen.append(dep)
    return tuple(seen)


@dataclass
class Task:
    """A named unit of work with dependencies, timeout and retry budget.

    Attributes:
        name: Unique name within the workflow
        dependencies: Names of tasks that must succeed first (ordered, deduplicated)
        executable: Opaque body, see TaskExecutable (not compared, not exported)
        timeout_seconds: Deadline per attempt; None or 0 means no deadline
        retry_count: Retries allowed after the first attempt
        description: Human description
        handler: Name of an executable registered with the Registry, used
            when no executable is attached (e.g. after import or recovery)
    """

    name: str
    dependencies: tuple[str, ...] = ()
    executable: Executable | None = field(default=None, compare=False, repr=False)
    timeout_seconds: float | None = None
    retry_count: int = 0
    description: str = ""
    handler: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise InvalidParamError(f"Task name must be a non-empty string, got {self.name!r}")

        self.dependencies = _normalize_dependencies(self.dependencies)
        if self.name in self.dependencies:
            raise InvalidParamError(f"Task '{self.name}' cannot depend on itself")

        if isinstance(self.retry_count, bool) or not isinstance(self.retry_count, int):
            raise InvalidParamError(f"Task '{self.name}': retry_count must be an int")
        if self.retry_count < 0:
            raise InvalidParamError(f"Task '{self.name}': retry_count must be >= 0")

        if self.timeout_seconds is not None:
            if self.timeout_seconds < 0:
                raise InvalidParamError(f"Task '{self.name}': timeout_seconds must be >= 0")
            if self.timeout_seconds == 0:
                self.timeout_seconds = None

    @property
    def max_attempts(self) -> int:
        """First attempt plus retries."""
        return self.retry_count + 1

    def with_changes(self, **changes: Any) -> Task:
        """Return a copy with fields replaced (validation re-runs)."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible structural form (no executable)."""
        return {
            "name": self.name,
            "dependencies": list(self.dependencies),
            "timeout_seconds": self.timeout_seconds,
            "retry_count": self.retry_count,
            "description": self.description,
            "handler": self.handler,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Rebuild a task from its structural form.

        Raises:
            InvalidParamError: If required fields are missing or malformed
        """
        if not isinstance(data, dict) or "name" not in data:
            raise InvalidParamError(f"Task document must be an object with a name: {data!r}")
        dependencies = data.get("dependencies") or []
        if not isinstance(dependencies, list):
            raise InvalidParamError(
                f"Task {data['name']!r}: dependencies must be a list, got {dependencies!r}"
            )
        try:
            return cls(
                name=data["name"],
                dependencies=tuple(dependencies),
                timeout_seconds=data.get("timeout_seconds"),
                retry_count=data.get("retry_count", 0),
                description=data.get("description") or "",
                handler=data.get("handler"),
            )
        except TypeError as e:
            raise InvalidParamError(f"Malformed task document: {e}") from e


@dataclass
class Workflow:
    """Named, versioned definition of a task DAG.

    Task insertion order is significant: it is the tie-break order when
    several tasks are ready and worker capacity is limited.

    Example:
        workflow = Workflow("ingest", description="nightly ingest")
        workflow.add(Task("fetch", executable=fetch))
        workflow.add(Task("parse", dependencies=("fetch",), executable=parse))
    """

    name: str
    tasks: list[Task] = field(default_factory=list)
    version: str = "1.0"
    enabled: bool = True
    description: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise InvalidParamError(f"Workflow name must be a non-empty string, got {self.name!r}")
        if not isinstance(self.version, str) or not self.version:
            raise InvalidParamError(f"Workflow '{self.name}': version must be a non-empty string")
        self.tasks = list(self.tasks)

    def __repr__(self) -> str:
        return (
            f"Workflow(name={self.name!r}, version={self.version!r}, "
            f"tasks={self.task_names()!r}, enabled={self.enabled})"
        )

    def task_names(self) -> list[str]:
        return [t.name for t in self.tasks]

    def get_task(self, name: str) -> Task | None:
        for task in self.tasks:
            if task.name == name:
                return task
        return None

    def index_of(self, name: str) -> int:
        """Insertion index of a task, -1 if absent."""
        for i, task in enumerate(self.tasks):
            if task.name == name:
                return i
        return -1

    def add(self, task: Task) -> Workflow:
        """Append a task (no graph validation, see build_graph)."""
        self.tasks.append(task)
        return self

    def copy(self) -> Workflow:
        """Independent snapshot; executables are shared, everything else copied."""
        return Workflow(
            name=self.name,
            tasks=[replace(t) for t in self.tasks],
            version=self.version,
            enabled=self.enabled,
            description=self.description,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "enabled": self.enabled,
            "description": self.description,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Workflow:
        """Rebuild a workflow from its structural form (executables unbound).

        Raises:
            InvalidParamError: If the document is malformed
        """
        if not isinstance(data, dict) or "name" not in data:
            raise InvalidParamError("Workflow document must be an object with a name")
        tasks = data.get("tasks") or []
        if not isinstance(tasks, list):
            raise InvalidParamError("Workflow document 'tasks' must be a list")
        return cls(
            name=data["name"],
            tasks=[Task.from_dict(t) for t in tasks],
            version=data.get("version") or "1.0",
            enabled=bool(data.get("enabled", True)),
            description=data.get("description") or "",
        )
