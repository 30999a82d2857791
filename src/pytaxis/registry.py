"""
Workflow Registry: named, versioned workflow definitions.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"Where definitions live and how they are kept valid"**

Every mutation builds the candidate definition into a TaskGraph first and
only stores it if that succeeds, so the registry never holds a definition
that could not be started. Executions work on snapshots, so nothing here
ever affects an execution in flight.

Besides definitions the registry holds:
- handlers: named executables, used to re-bind definitions that were
  imported from JSON or recovered from a persistent store
- schedules: opaque scheduling policies for an external scheduler
- templates: parameterized definitions instantiated with `${param}` values

Example:
    ```python
    registry = Registry()
    registry.create_workflow("ingest", description="nightly ingest")
    registry.add_task("ingest", Task("fetch", executable=fetch))
    registry.add_task("ingest", Task("parse", dependencies=("fetch",), executable=parse))

    text = registry.export_json("ingest")
    ```
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from string import Template
from typing import Any

from pytaxis.decorators import task_of
from pytaxis.errors import (
    AlreadyExistsError,
    InvalidParamError,
    NotFoundError,
    TaxisError,
)
from pytaxis.executor.graph import TaskGraph, build_graph
from pytaxis.models import Executable, SchedulePolicy, Task, Workflow

logger = logging.getLogger(__name__)

DOCUMENT_FORMAT = "pytaxis.workflow"
DOCUMENT_FORMAT_VERSION = 1


class Registry:
    """
    In-memory table of workflow definitions keyed by name.

    Reads return copies: mutating what `get_info()` returns never changes
    the registered definition.
    """

    def __init__(self):
        """Create an empty registry."""
        self._workflows: dict[str, Workflow] = {}
        self._handlers: dict[str, Executable] = {}
        self._schedules: dict[str, SchedulePolicy] = {}
        self._templates: dict[str, Workflow] = {}

    def __repr__(self) -> str:
        return (
            f"Registry(workflows={len(self._workflows)}, handlers={len(self._handlers)}, "
            f"templates={len(self._templates)})"
        )

    def __len__(self) -> int:
        return len(self._workflows)

    def __contains__(self, name: object) -> bool:
        return name in self._workflows

    # ========================================================================
    # Workflow CRUD
    # ========================================================================

    def create_workflow(
        self,
        name: str,
        description: str = "",
        version: str = "1.0",
        enabled: bool = True,
    ) -> Workflow:
        """
        Register an empty workflow.

        Raises:
            AlreadyExistsError: If the name is taken
            InvalidParamError: If name or version is invalid
        """
        if name in self._workflows:
            raise AlreadyExistsError(f"Workflow already exists: {name}")
        workflow = Workflow(name=name, version=version, enabled=enabled, description=description)
        self._workflows[name] = workflow
        logger.info(f"Registered workflow '{name}' (version {version})")
        return workflow.copy()

    def add_workflow(self, workflow: Workflow, replace: bool = False) -> None:
        """
        Register a complete definition (validated as a whole).

        Raises:
            AlreadyExistsError: If the name is taken and replace is False
            InvalidParamError: If the task graph is invalid
        """
        if workflow.name in self._workflows and not replace:
            raise AlreadyExistsError(f"Workflow already exists: {workflow.name}")
        build_graph(workflow)
        self._workflows[workflow.name] = workflow.copy()
        logger.info(
            f"Registered workflow '{workflow.name}' (version {workflow.version}, "
            f"{len(workflow.tasks)} tasks)"
        )

    def add_task(self, workflow_name: str, task: Task | Callable[..., Any]) -> None:
        """
        Append a task (a Task or a @task-decorated function).

        Dependencies must already be registered, so tasks are added in
        dependency order.

        Raises:
            NotFoundError: Unknown workflow
            AlreadyExistsError: Duplicate task name
            InvalidParamError: Unknown dependency, self-dependency or cycle
        """
        task = task_of(task)
        workflow = self._get(workflow_name)
        if workflow.get_task(task.name) is not None:
            raise AlreadyExistsError(
                f"Workflow '{workflow_name}' already has a task named '{task.name}'"
            )

        candidate = workflow.copy()
        candidate.add(task)
        build_graph(candidate)

        self._workflows[workflow_name] = candidate
        logger.debug(
            f"Added task '{task.name}' to '{workflow_name}' "
            f"(depends on {list(task.dependencies)})"
        )

    def remove_task(self, workflow_name: str, task_name: str) -> None:
        """
        Remove a task nothing depends on.

        Raises:
            NotFoundError: Unknown workflow or task
            InvalidParamError: Other tasks depend on it
        """
        workflow = self._get(workflow_name)
        if workflow.get_task(task_name) is None:
            raise NotFoundError(f"Workflow '{workflow_name}' has no task '{task_name}'")

        dependents = [t.name for t in workflow.tasks if task_name in t.dependencies]
        if dependents:
            raise InvalidParamError(
                f"Cannot remove '{task_name}' from '{workflow_name}': "
                f"required by {dependents}"
            )

        candidate = workflow.copy()
        candidate.tasks = [t for t in candidate.tasks if t.name != task_name]
        self._workflows[workflow_name] = candidate
        logger.debug(f"Removed task '{task_name}' from '{workflow_name}'")

    def update_task(
        self, workflow_name: str, task_name: str, task: Task | Callable[..., Any]
    ) -> None:
        """
        Replace a task in place (keeps its position in the tie-break order).

        Raises:
            NotFoundError: Unknown workflow or task
            AlreadyExistsError: Renamed onto another task's name
            InvalidParamError: The resulting graph is invalid
        """
        task = task_of(task)
        workflow = self._get(workflow_name)
        index = workflow.index_of(task_name)
        if index < 0:
            raise NotFoundError(f"Workflow '{workflow_name}' has no task '{task_name}'")

        candidate = workflow.copy()
        candidate.tasks[index] = task
        build_graph(candidate)

        self._workflows[workflow_name] = candidate
        logger.debug(f"Updated task '{task_name}' in '{workflow_name}'")

    def set_enabled(self, workflow_name: str, enabled: bool) -> None:
        """Enable or disable new starts (running executions are unaffected)."""
        self._get(workflow_name).enabled = enabled
        logger.info(f"Workflow '{workflow_name}' {'enabled' if enabled else 'disabled'}")

    def delete_workflow(self, workflow_name: str) -> None:
        """
        Remove a definition and its schedule.

        Raises:
            NotFoundError: Unknown workflow
        """
        self._get(workflow_name)
        del self._workflows[workflow_name]
        self._schedules.pop(workflow_name, None)
        logger.info(f"Deleted workflow '{workflow_name}'")

    def get_info(self, workflow_name: str) -> Workflow:
        """
        Return a copy of a definition.

        Raises:
            NotFoundError: Unknown workflow
        """
        return self._get(workflow_name).copy()

    def list(self) -> list[str]:
        """Registered workflow names in registration order."""
        return [name for name in self._workflows]

    def validate_dependencies(self, workflow_name: str) -> TaskGraph:
        """
        Build the graph of a definition.

        Raises:
            NotFoundError: Unknown workflow
            InvalidParamError: Invalid graph (CycleError, UnknownDependencyError)
        """
        return build_graph(self._get(workflow_name))

    def _get(self, workflow_name: str) -> Workflow:
        workflow = self._workflows.get(workflow_name)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_name}")
        return workflow

    # ========================================================================
    # Handlers
    # ========================================================================

    def register_handler(self, name: str, executable: Executable) -> None:
        """
        Register a named executable.

        Tasks that carry `handler=name` but no executable (imported from
        JSON, recovered from a store) are bound to it when they start.
        """
        if not name:
            raise InvalidParamError("Handler name must be a non-empty string")
        if not callable(executable) and not hasattr(executable, "execute"):
            raise InvalidParamError(f"Handler '{name}' is not callable: {executable!r}")
        self._handlers[name] = executable
        logger.debug(f"Registered handler '{name}'")

    def get_handler(self, name: str) -> Executable | None:
        return self._handlers.get(name)

    def bind(self, workflow: Workflow) -> Workflow:
        """
        Attach executables to every task of a snapshot (in place).

        A task keeps its own executable; otherwise the registered definition
        with the same name and version provides one; otherwise its handler.

        Raises:
            InvalidParamError: If some task cannot be bound
        """
        registered = self._workflows.get(workflow.name)
        same_version = registered is not None and registered.version == workflow.version

        unbound = []
        for i, task in enumerate(workflow.tasks):
            if task.executable is not None:
                continue
            executable = None
            if same_version:
                source = registered.get_task(task.name)
                if source is not None:
                    executable = source.executable
            if executable is None and task.handler:
                executable = self._handlers.get(task.handler)
            if executable is None:
                unbound.append(task.name)
                continue
            workflow.tasks[i] = task.with_changes(executable=executable)

        if unbound:
            raise InvalidParamError(
                f"Workflow '{workflow.name}' has tasks without an executable "
                f"or a registered handler: {unbound}"
            )
        return workflow

    # ========================================================================
    # Schedules
    # ========================================================================

    def set_schedule(self, workflow_name: str, policy: str, data: str = "") -> None:
        """Attach an opaque scheduling policy (interpreted by an external scheduler)."""
        self._get(workflow_name)
        if not policy:
            raise InvalidParamError("Schedule policy must be a non-empty string")
        schedule = SchedulePolicy(policy=policy, data=data)
        if not schedule.is_known:
            logger.debug(f"Workflow '{workflow_name}': custom schedule policy '{policy}'")
        self._schedules[workflow_name] = schedule

    def get_schedule(self, workflow_name: str) -> SchedulePolicy | None:
        self._get(workflow_name)
        return self._schedules.get(workflow_name)

    # ========================================================================
    # Persistence (JSON)
    # ========================================================================

    def export_json(self, workflow_name: str) -> str:
        """Serialize a definition (and its schedule) to a JSON document."""
        workflow = self._get(workflow_name)
        schedule = self._schedules.get(workflow_name)
        document = {
            "format": DOCUMENT_FORMAT,
            "format_version": DOCUMENT_FORMAT_VERSION,
            "workflow": workflow.to_dict(),
            "schedule": schedule.to_dict() if schedule else None,
        }
        return json.dumps(document, indent=2)

    def import_json(self, text: str, replace: bool = False) -> str:
        """
        Register a definition from a JSON document.

        Executables are not part of the document; tasks are bound through
        their handler names at start time.

        Returns:
            The workflow name

        Raises:
            InvalidParamError: Malformed document or invalid graph
            AlreadyExistsError: Name taken and replace is False
        """
        try:
            document = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            raise InvalidParamError(f"Workflow document is not valid JSON: {e}") from e

        if not isinstance(document, dict) or document.get("format") != DOCUMENT_FORMAT:
            raise InvalidParamError(f"Not a {DOCUMENT_FORMAT} document")
        version = document.get("format_version")
        if version != DOCUMENT_FORMAT_VERSION:
            raise InvalidParamError(f"Unsupported {DOCUMENT_FORMAT} format_version: {version!r}")

        workflow = Workflow.from_dict(document.get("workflow"))
        schedule = document.get("schedule")
        if schedule is not None and (not isinstance(schedule, dict) or "policy" not in schedule):
            raise InvalidParamError(f"Malformed schedule in document: {schedule!r}")

        self.add_workflow(workflow, replace=replace)
        if schedule is not None:
            self._schedules[workflow.name] = SchedulePolicy(
                policy=schedule["policy"], data=schedule.get("data") or ""
            )
        elif replace:
            self._schedules.pop(workflow.name, None)
        return workflow.name

    def save(self, workflow_name: str, filename: str | Path) -> None:
        """Write `export_json()` to a file."""
        text = self.export_json(workflow_name)
        try:
            Path(filename).write_text(text, encoding="utf-8")
        except OSError as e:
            raise TaxisError(f"Failed to save workflow '{workflow_name}' to {filename}: {e}") from e
        logger.info(f"Saved workflow '{workflow_name}' to {filename}")

    def load(self, filename: str | Path, replace: bool = False) -> str:
        """
        Register a definition from a file written by `save()`.

        Raises:
            NotFoundError: File does not exist
        """
        try:
            text = Path(filename).read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise NotFoundError(f"Workflow file not found: {filename}") from e
        except OSError as e:
            raise TaxisError(f"Failed to read workflow file {filename}: {e}") from e
        name = self.import_json(text, replace=replace)
        logger.info(f"Loaded workflow '{name}' from {filename}")
        return name

    # ========================================================================
    # Templates
    # ========================================================================

    def create_template(self, template_name: str, workflow_name: str) -> None:
        """
        Store a registered definition as a template.

        Names, dependencies, handlers and descriptions may contain
        `${param}` placeholders, filled in by `instantiate_template()`.
        """
        if template_name in self._templates:
            raise AlreadyExistsError(f"Template already exists: {template_name}")
        self._templates[template_name] = self._get(workflow_name).copy()
        logger.debug(f"Created template '{template_name}' from '{workflow_name}'")

    def instantiate_template(
        self,
        template_name: str,
        new_name: str,
        parameters: Mapping[str, Any] | str | None = None,
    ) -> Workflow:
        """
        Register a new workflow from a template.

        Args:
            template_name: Template to instantiate
            new_name: Name of the new workflow
            parameters: Mapping or JSON object string of `${param}` values

        Returns:
            A copy of the registered workflow

        Raises:
            NotFoundError: Unknown template
            AlreadyExistsError: new_name is taken
            InvalidParamError: Missing parameter, bad parameters or invalid graph
        """
        template = self._templates.get(template_name)
        if template is None:
            raise NotFoundError(f"Template not found: {template_name}")
        if new_name in self._workflows:
            raise AlreadyExistsError(f"Workflow already exists: {new_name}")

        values = _parse_parameters(parameters)

        def fill(text: str) -> str:
            try:
                return Template(text).substitute(values)
            except KeyError as e:
                raise InvalidParamError(
                    f"Template '{template_name}' needs parameter {e.args[0]!r}"
                ) from e
            except ValueError as e:
                raise InvalidParamError(f"Template '{template_name}': {e}") from e

        tasks = [
            Task(
                name=fill(t.name),
                dependencies=tuple(fill(d) for d in t.dependencies),
                executable=t.executable,
                timeout_seconds=t.timeout_seconds,
                retry_count=t.retry_count,
                description=fill(t.description),
                handler=fill(t.handler) if t.handler else None,
            )
            for t in template.tasks
        ]
        workflow = Workflow(
            name=new_name,
            tasks=tasks,
            version=template.version,
            enabled=template.enabled,
            description=fill(template.description),
        )
        try:
            self.add_workflow(workflow)
        except AlreadyExistsError as e:
            # new_name is free, so this is two tasks filled in with one name
            raise InvalidParamError(f"Template '{template_name}': {e}") from e
        return workflow.copy()

    def list_templates(self) -> list[str]:
        return [name for name in self._templates]

    def delete_template(self, template_name: str) -> None:
        if self._templates.pop(template_name, None) is None:
            raise NotFoundError(f"Template not found: {template_name}")


def _parse_parameters(parameters: Mapping[str, Any] | str | None) -> dict[str, str]:
    if parameters is None:
        return {}
    if isinstance(parameters, str):
        try:
            parameters = json.loads(parameters) if parameters.strip() else {}
        except json.JSONDecodeError as e:
            raise InvalidParamError(f"Template parameters are not valid JSON: {e}") from e
    if not isinstance(parameters, Mapping):
        raise InvalidParamError("Template parameters must be a JSON object or a mapping")
    return {str(k): str(v) for k, v in parameters.items()}


__all__ = ["Registry", "DOCUMENT_FORMAT", "DOCUMENT_FORMAT_VERSION"]
