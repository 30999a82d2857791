"""
Execution Controller: the public façade for running workflows.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"How executions are created, driven, tracked and recovered"**

Callers never see dispatchers, graphs or worker pools. They start a
workflow by name, get back an execution id, and use that id for every
control call and query.

Configuration follows a builder style:
- `.with_max_workers(n)` - capacity shared by every execution (None = unbounded)
- `.with_history_limit(n)` - keep the newest n finished executions per workflow
- `.with_default_timeout(s)` - deadline for tasks that declare none
- `.from_env()` - read PYTAXIS_MAX_WORKERS / PYTAXIS_HISTORY_LIMIT /
  PYTAXIS_DEFAULT_TIMEOUT

Example:
    ```python
    store = SqliteExecutionStore("executions.db")
    await store.connect()

    controller = Controller(registry, store).with_max_workers(8).from_env()
    await controller.recover()

    execution_id = await controller.start("ingest", user_data={"day": "2024-01-15"})
    result = await controller.wait(execution_id)
    print(result.summary)
    ```
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from uuid_extensions import uuid7

from pytaxis.errors import InvalidParamError, InvalidStateError, NotFoundError, TaxisError
from pytaxis.executor.dispatcher import Dispatcher
from pytaxis.executor.graph import TaskGraph, build_graph
from pytaxis.executor.pool import WorkerPool
from pytaxis.models import (
    Execution,
    ExecutionStatus,
    WorkflowContext,
    WorkflowResult,
)
from pytaxis.storage.base import ExecutionStore

if TYPE_CHECKING:
    from pytaxis.registry import Registry

logger = logging.getLogger(__name__)

ENV_MAX_WORKERS = "PYTAXIS_MAX_WORKERS"
ENV_HISTORY_LIMIT = "PYTAXIS_HISTORY_LIMIT"
ENV_DEFAULT_TIMEOUT = "PYTAXIS_DEFAULT_TIMEOUT"


class Controller:
    """
    Starts, controls and queries executions of registered workflows.

    One Controller owns one WorkerPool and the live Dispatcher of every
    execution it started or recovered. Everything else lives in the store.
    """

    def __init__(self, registry: Registry, store: ExecutionStore):
        """
        From Dave Cheney: "Avoid package level state"
        Registry and store are passed explicitly, not accessed via globals.

        Args:
            registry: Source of workflow definitions and handlers
            store: Execution store (connected)
        """
        self._registry = registry
        self._store = store
        self._pool = WorkerPool()
        self._history_limit: int | None = None
        self._default_timeout: float | None = None
        self._dispatchers: dict[str, Dispatcher] = {}
        self._shut_down = False

    def __repr__(self) -> str:
        return (
            f"Controller(store={self._store!r}, max_workers={self._pool.max_workers}, "
            f"live={len(self._dispatchers)})"
        )

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def store(self) -> ExecutionStore:
        return self._store

    @property
    def max_workers(self) -> int | None:
        return self._pool.max_workers

    @property
    def history_limit(self) -> int | None:
        return self._history_limit

    @property
    def default_timeout(self) -> float | None:
        return self._default_timeout

    # ========================================================================
    # Configuration (builder style)
    # ========================================================================

    def with_max_workers(self, max_workers: int | None) -> Controller:
        """
        Bound the number of attempts running at once across all executions.

        Must be configured before executions are started.
        """
        if self._dispatchers:
            raise InvalidParamError(
                "Cannot change max_workers while executions are live"
            )
        self._pool = WorkerPool(max_workers)
        return self

    def with_history_limit(self, limit: int | None) -> Controller:
        """Keep only the newest `limit` finished executions per workflow (None = all)."""
        if limit is not None and (isinstance(limit, bool) or limit < 1):
            raise InvalidParamError(f"history limit must be >= 1 or None, got {limit!r}")
        self._history_limit = limit
        return self

    def with_default_timeout(self, seconds: float | None) -> Controller:
        """Deadline for tasks without their own timeout (None or 0 = none)."""
        if seconds is not None and seconds < 0:
            raise InvalidParamError(f"default timeout must be >= 0, got {seconds!r}")
        self._default_timeout = seconds or None
        return self

    def from_env(self) -> Controller:
        """
        Configure from PYTAXIS_* environment variables.

        Unset (or empty) variables leave the current setting unchanged.

        Raises:
            InvalidParamError: If a variable is set to an invalid value
        """
        max_workers = _env_number(ENV_MAX_WORKERS, int)
        if max_workers is not None:
            self.with_max_workers(max_workers)
        history_limit = _env_number(ENV_HISTORY_LIMIT, int)
        if history_limit is not None:
            self.with_history_limit(history_limit)
        default_timeout = _env_number(ENV_DEFAULT_TIMEOUT, float)
        if default_timeout is not None:
            self.with_default_timeout(default_timeout)
        return self

    # ========================================================================
    # Execution lifecycle
    # ========================================================================

    async def start(self, workflow_name: str, user_data: Any = None) -> str:
        """
        Start an execution of a registered, enabled workflow.

        Graph validation and handler binding happen before anything is
        written, so a rejected start leaves no execution record.

        Returns:
            The new execution id (uuid7 string)

        Raises:
            NotFoundError: Unknown or disabled workflow
            InvalidParamError: Invalid graph or a task without executable
        """
        if self._shut_down:
            raise TaxisError("Controller has been shut down")

        workflow = self._registry.get_info(workflow_name)
        if not workflow.enabled:
            raise NotFoundError(f"Workflow is disabled: {workflow_name}")
        self._registry.bind(workflow)
        graph = build_graph(workflow)

        execution = Execution(
            execution_id=str(uuid7()),
            workflow_name=workflow.name,
            workflow_version=workflow.version,
            workflow=workflow,
            user_data=user_data,
        )
        await self._store.create_execution(execution)
        await self._launch(execution, graph)
        return execution.execution_id

    async def stop(self, execution_id: str) -> None:
        """Cooperatively cancel an execution (RUNNING/PAUSED -> STOPPING -> CANCELLED)."""
        dispatcher = await self._live(execution_id, "stop")
        await dispatcher.stop()

    async def pause(self, execution_id: str) -> None:
        """Stop dispatching new attempts (RUNNING -> PAUSED)."""
        dispatcher = await self._live(execution_id, "pause")
        await dispatcher.pause()

    async def resume(self, execution_id: str) -> None:
        """Continue dispatching (PAUSED -> RUNNING)."""
        dispatcher = await self._live(execution_id, "resume")
        await dispatcher.resume()

    async def wait(self, execution_id: str, timeout: float | None = None) -> WorkflowResult:
        """
        Wait until an execution is terminal and return its result.

        Raises:
            NotFoundError: Unknown execution
            TimeoutError: If timeout elapses first
        """
        dispatcher = self._dispatchers.get(execution_id)
        if dispatcher is not None:
            await dispatcher.wait(timeout)
        else:
            await self._get_execution(execution_id)
            await self._store.wait_for_terminal(execution_id, timeout)
        return await self.get_result(execution_id)

    async def purge(self, execution_id: str) -> None:
        """
        Delete a finished execution and its TaskResults.

        Raises:
            NotFoundError: Unknown execution
            InvalidStateError: The execution is still active
        """
        execution = await self._get_execution(execution_id)
        if not execution.is_terminal:
            raise InvalidStateError(execution_id, execution.status, "purge")
        await self._store.delete_execution(execution_id)
        logger.debug(f"Purged execution {execution_id}")

    async def recover(self) -> list[str]:
        """
        Resume every non-terminal execution that has no live dispatcher.

        Executables are re-bound from the registry. Attempts that were in
        flight when the previous process died are recorded as failed
        ("interrupted") and follow the normal retry rules. PAUSED executions
        stay paused; STOPPING ones finish cancelling. An execution whose
        definition can no longer be bound ends FAILED with a diagnostic.

        Returns:
            Ids of the executions now driven by this controller
        """
        recovered = []
        for execution in await self._store.get_incomplete_executions():
            if execution.execution_id in self._dispatchers:
                continue

            try:
                self._registry.bind(execution.workflow)
                graph = build_graph(execution.workflow)
            except TaxisError as e:
                logger.error(f"Execution {execution.execution_id} cannot be recovered: {e}")
                execution.status = ExecutionStatus.FAILED
                execution.end_time = datetime.now(UTC)
                execution.error = f"recovery failed: {e}"
                execution.dispatched.clear()
                await self._store.update_execution(execution)
                continue

            results = await self._store.get_task_results(execution.execution_id)
            await self._launch(execution, graph, results)
            recovered.append(execution.execution_id)
            logger.info(
                f"Recovered execution {execution.execution_id} of "
                f"'{execution.workflow_name}' ({execution.status}, {len(results)} results)"
            )
        return recovered

    async def shutdown(self, cancel_running: bool = True) -> None:
        """
        Stop driving executions.

        Args:
            cancel_running: Stop every live execution and wait for it to
                drain. When False, control loops and in-flight attempts are
                abandoned without writing anything, so a later `recover()`
                resumes them.
        """
        self._shut_down = True
        dispatchers = list(self._dispatchers.values())

        if cancel_running:
            for dispatcher in dispatchers:
                try:
                    await dispatcher.stop()
                except InvalidStateError:
                    # Already stopping or finished
                    pass
            await asyncio.gather(*(d.wait() for d in dispatchers), return_exceptions=True)
        else:
            await asyncio.gather(*(d.abandon() for d in dispatchers))

        self._dispatchers.clear()
        logger.info(
            f"Controller shut down ({len(dispatchers)} executions "
            f"{'cancelled' if cancel_running else 'abandoned'})"
        )

    async def _launch(
        self, execution: Execution, graph: TaskGraph, results: list | None = None
    ) -> Dispatcher:
        dispatcher = Dispatcher(
            execution,
            graph,
            self._store,
            self._pool,
            default_timeout=self._default_timeout,
            on_terminal=self._on_terminal,
        )
        self._dispatchers[execution.execution_id] = dispatcher
        try:
            if results is not None:
                await dispatcher.restore(results)
            await dispatcher.start()
        except BaseException:
            self._dispatchers.pop(execution.execution_id, None)
            raise
        return dispatcher

    async def _on_terminal(self, dispatcher: Dispatcher) -> None:
        self._dispatchers.pop(dispatcher.execution_id, None)
        if self._history_limit is not None:
            deleted = await self._store.trim_history(
                self._history_limit, dispatcher.execution.workflow_name
            )
            if deleted:
                logger.debug(
                    f"Trimmed {deleted} old executions of '{dispatcher.execution.workflow_name}'"
                )

    async def _live(self, execution_id: str, requested: str) -> Dispatcher:
        """Dispatcher for a control call; validates the target first."""
        dispatcher = self._dispatchers.get(execution_id)
        if dispatcher is not None:
            return dispatcher

        execution = await self._get_execution(execution_id)
        if execution.is_terminal:
            raise InvalidStateError(execution_id, execution.status, requested)
        raise NotFoundError(
            f"Execution {execution_id} is {execution.status} but not driven by this "
            "controller (call recover())"
        )

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_status(self, execution_id: str) -> WorkflowContext:
        """
        Current status, in-flight tasks and user data of an execution.

        Read from the store, so it reflects the latest committed transition
        and never one still being written.
        """
        return WorkflowContext.from_execution(await self._get_execution(execution_id))

    async def get_result(self, execution_id: str) -> WorkflowResult:
        """WorkflowResult from the committed record and TaskResults (also while active)."""
        execution = await self._get_execution(execution_id)
        results = await self._store.get_task_results(execution_id)
        return WorkflowResult.from_execution(execution, results)

    async def list_running(self) -> list[str]:
        """Ids of non-terminal executions, oldest first."""
        executions = await self._store.get_incomplete_executions()
        return [e.execution_id for e in executions]

    async def get_history(
        self, workflow_name: str, start_time: datetime, end_time: datetime
    ) -> list[WorkflowResult]:
        """Results of executions started within [start_time, end_time], oldest first."""
        history = []
        for execution in await self._store.get_history(workflow_name, start_time, end_time):
            results = await self._store.get_task_results(execution.execution_id)
            history.append(WorkflowResult.from_execution(execution, results))
        return history

    def validate_dependencies(self, workflow_name: str) -> TaskGraph:
        """Validate a registered definition; raises CycleError / UnknownDependencyError."""
        return self._registry.validate_dependencies(workflow_name)

    async def _get_execution(self, execution_id: str) -> Execution:
        execution = await self._store.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        return execution


def _env_number(name: str, kind: type) -> Any:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return kind(raw)
    except ValueError as e:
        raise InvalidParamError(f"{name} must be a {kind.__name__}, got {raw!r}") from e


__all__ = ["Controller", "ENV_MAX_WORKERS", "ENV_HISTORY_LIMIT", "ENV_DEFAULT_TIMEOUT"]
