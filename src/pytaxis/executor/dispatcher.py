"""
Dispatcher: drives one execution of a workflow to a terminal status.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"When a task runs, and what happens after it ends"**

The controller creates one Dispatcher per execution and only talks to it
through `start()`, `pause()`, `resume()`, `stop()` and `wait()`.

**How It Works**:
1. A control loop (one asyncio.Task) re-evaluates the execution whenever it
   is woken: at start, when an attempt ends, when worker capacity frees up
   and on every control call. There is no polling.
2. Every decision and every store write for the execution happens under
   the execution's asyncio.Lock.
3. Each attempt runs in its own asyncio.Task, with its own TaskContext set
   in the TASK_CONTEXT context variable.
4. A failed attempt is retried while `attempt <= retry_count` and the error
   is retryable; otherwise the task fails and every transitive dependent is
   recorded SKIPPED.

**Write ordering** (what recovery relies on):
- The dispatched set is written before an attempt starts.
- When an attempt ends, its TaskResult and the removal of its name from the
  dispatched set are committed together (`ExecutionStore.record_attempt`),
  so a name in the persisted dispatched set always means "attempt N+1 was
  running", N being its recorded attempts.

**Deadlines**: a missed deadline expires the attempt's context. Async bodies
are also cancelled; synchronous bodies cannot be interrupted, so their
worker slot stays taken (and no retry starts) until the thread returns.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from pytaxis.core.context import TASK_CONTEXT, TaskContext
from pytaxis.errors import (
    InvalidStateError,
    ResultCode,
    TaskCancelledError,
    TaskError,
    TaxisError,
)
from pytaxis.executor.graph import TaskGraph
from pytaxis.executor.pool import WorkerPool
from pytaxis.models import (
    Execution,
    ExecutionStatus,
    Task,
    TaskExecutable,
    TaskOutcome,
    TaskResult,
    latest_results,
)
from pytaxis.storage.base import ExecutionStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "interrupted"
CANCELLED_MESSAGE = "cancelled"


class _AttemptOutcome:
    """What one invocation of an executable produced."""

    __slots__ = ("outcome", "code", "message", "value", "retryable")

    def __init__(
        self,
        outcome: TaskOutcome,
        code: ResultCode = ResultCode.SUCCESS,
        message: str = "",
        value: Any = None,
        retryable: bool = True,
    ):
        self.outcome = outcome
        self.code = code
        self.message = message
        self.value = value
        self.retryable = retryable


class Dispatcher:
    """
    Control loop of one execution.

    Holds the live Execution (with executables bound) and the bookkeeping
    derived from its TaskResults. The store always has the committed copy.

    Usage:
        dispatcher = Dispatcher(execution, graph, store, pool)
        await dispatcher.start()        # PENDING -> RUNNING, loop running
        await dispatcher.pause()
        await dispatcher.resume()
        await dispatcher.wait()         # until COMPLETED/FAILED/CANCELLED
    """

    def __init__(
        self,
        execution: Execution,
        graph: TaskGraph,
        store: ExecutionStore,
        pool: WorkerPool,
        default_timeout: float | None = None,
        on_terminal: Callable[[Dispatcher], Awaitable[None]] | None = None,
    ):
        """
        All dependencies passed explicitly, no globals.

        Args:
            execution: Live execution record (workflow snapshot with executables)
            graph: Validated graph of the snapshot
            store: Store every transition is written through
            pool: Worker capacity shared with other executions
            default_timeout: Deadline for tasks that have none
            on_terminal: Awaited once the execution is terminal
        """
        self.execution = execution
        self._graph = graph
        self._store = store
        self._pool = pool
        self._default_timeout = default_timeout
        self._on_terminal = on_terminal

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._cancel_event = asyncio.Event()

        self._loop_task: asyncio.Task | None = None
        # Keep references so attempts are not garbage collected mid-run
        self._attempt_tasks: set[asyncio.Task] = set()
        self._internal_error: BaseException | None = None
        self._finished = False

        self._attempts: dict[str, int] = {name: 0 for name in graph.names()}
        self._succeeded: set[str] = set()
        self._failed: set[str] = set()
        self._skipped: set[str] = set()
        self._cancelled: set[str] = set()
        self._retry_queue: list[str] = []

    def __repr__(self) -> str:
        return f"Dispatcher({self.execution!r})"

    @property
    def execution_id(self) -> str:
        return self.execution.execution_id

    @property
    def is_done(self) -> bool:
        """True once the control loop has exited."""
        return self._loop_task is not None and self._loop_task.done()

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """
        Move PENDING to RUNNING (written through) and start the control loop.

        Executions restored by recovery keep their status (PAUSED stays
        paused, STOPPING finishes cancelling).
        """
        if self._loop_task is not None:
            raise RuntimeError(f"Dispatcher for {self.execution_id} already started")

        async with self._lock:
            if self.execution.status is ExecutionStatus.PENDING:
                await self._transition(ExecutionStatus.RUNNING, "start")
                logger.info(
                    f"Execution {self.execution_id} of '{self.execution.workflow_name}' "
                    f"started ({len(self._graph)} tasks)"
                )

        self._pool.add_listener(self._wake)
        self._wake.set()
        self._loop_task = asyncio.create_task(
            self._run(), name=f"pytaxis-dispatcher-{self.execution_id}"
        )

    async def restore(self, results: list[TaskResult]) -> None:
        """
        Rebuild bookkeeping from committed TaskResults (recovery).

        Names still in the persisted dispatched set had an attempt running
        when the previous process died: each gets a FAILURE result with
        message "interrupted" and follows the normal retry rules.
        """
        async with self._lock:
            for result in results:
                self._attempts[result.task_name] = max(
                    self._attempts.get(result.task_name, 0), result.attempt
                )

            for name, result in latest_results(results).items():
                if name not in self._graph or name in self.execution.dispatched:
                    continue
                if result.outcome is TaskOutcome.SUCCESS:
                    self._succeeded.add(name)
                elif result.outcome is TaskOutcome.SKIPPED:
                    self._skipped.add(name)
                elif result.outcome is TaskOutcome.CANCELLED:
                    self._cancelled.add(name)
                elif self._should_retry(self._graph.tasks[name], result):
                    self._retry_queue.append(name)
                else:
                    self._failed.add(name)

            now = datetime.now(UTC)
            for name in sorted(self._failed, key=self._graph.order_of):
                await self._skip_dependents(name, now)

            # Each name leaves the dispatched set together with its result
            interrupted = [n for n in self._graph.names() if n in self.execution.dispatched]
            self.execution.dispatched.intersection_update(interrupted)

            for name in interrupted:
                attempt = self._attempts[name] + 1
                self._attempts[name] = attempt
                logger.warning(
                    f"Execution {self.execution_id}: task '{name}' attempt {attempt} "
                    "was interrupted"
                )
                await self._record(
                    name,
                    attempt,
                    _AttemptOutcome(TaskOutcome.FAILURE, ResultCode.ERROR, INTERRUPTED_MESSAGE),
                    start_time=now,
                    end_time=now,
                )

    async def wait(self, timeout: float | None = None) -> None:
        """Wait for the control loop to exit (shielded from caller cancellation)."""
        if self._loop_task is None:
            raise RuntimeError(f"Dispatcher for {self.execution_id} not started")
        await asyncio.wait_for(asyncio.shield(self._loop_task), timeout)

    async def abandon(self) -> None:
        """
        Cancel the control loop and every in-flight attempt, recording nothing.

        The store keeps the execution as it was last written (non-terminal),
        exactly as if the process had died; `Controller.recover()` resumes it.
        """
        self._finished = True
        tasks = [t for t in (self._loop_task, *self._attempt_tasks) if t is not None and not t.done()]
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pool.remove_listener(self._wake)
        logger.info(f"Execution {self.execution_id} abandoned ({self.execution.status})")

    # ========================================================================
    # Control calls (each one a validated, written-through transition)
    # ========================================================================

    async def pause(self) -> None:
        """RUNNING -> PAUSED. In-flight attempts finish naturally."""
        async with self._lock:
            await self._transition(ExecutionStatus.PAUSED, "pause")
        logger.info(f"Execution {self.execution_id} paused")

    async def resume(self) -> None:
        """PAUSED -> RUNNING; dispatch continues where it stopped."""
        async with self._lock:
            await self._transition(ExecutionStatus.RUNNING, "resume")
        self._wake.set()
        logger.info(f"Execution {self.execution_id} resumed")

    async def stop(self) -> None:
        """
        Request cooperative cancellation: -> STOPPING, drain, -> CANCELLED.

        Running attempts are never cancelled; their context reports
        `cancelled` and they are expected to give up on their own.
        """
        async with self._lock:
            await self._transition(ExecutionStatus.STOPPING, "stop")
            self._cancel_event.set()
        self._wake.set()
        logger.info(
            f"Execution {self.execution_id} stopping "
            f"({len(self.execution.dispatched)} attempts draining)"
        )

    async def _transition(self, target: ExecutionStatus, requested: str) -> None:
        """Apply a status change under the lock, reverting if the write fails."""
        current = self.execution.status
        if not current.can_transition_to(target):
            raise InvalidStateError(self.execution_id, current, requested)

        self.execution.status = target
        if target.is_terminal:
            self.execution.end_time = datetime.now(UTC)
        try:
            await self._store.update_execution(self.execution)
        except BaseException:
            self.execution.status = current
            if target.is_terminal:
                self.execution.end_time = None
            raise

    # ========================================================================
    # Control loop (Template Method: wake -> decide -> sleep)
    # ========================================================================

    async def _run(self) -> None:
        try:
            while True:
                self._wake.clear()
                async with self._lock:
                    if self._internal_error is not None:
                        raise self._internal_error
                    if await self._step():
                        break
                await self._wake.wait()
        except asyncio.CancelledError:
            logger.warning(f"Execution {self.execution_id}: control loop cancelled")
            raise
        except Exception as e:
            logger.exception(f"Execution {self.execution_id}: internal failure: {e}")
            await self._fail_internal(e)
        finally:
            self._finished = True
            self._pool.remove_listener(self._wake)

        if self._on_terminal is not None:
            try:
                await self._on_terminal(self)
            except Exception as e:
                logger.warning(f"Execution {self.execution_id}: terminal hook failed: {e}")

    async def _step(self) -> bool:
        """One decision pass. Returns True once the execution is terminal."""
        status = self.execution.status

        if status is ExecutionStatus.STOPPING:
            if self.execution.dispatched:
                return False
            await self._finish_cancelled()
            return True

        if self._all_terminal():
            if status is ExecutionStatus.RUNNING:
                await self._finish()
                return True
            # PAUSED: the terminal status is reached on resume
            return False

        if status is not ExecutionStatus.RUNNING:
            return False

        ready = self._ready_pool()
        if not ready and not self.execution.dispatched:
            raise RuntimeError(
                f"No task can make progress but {self._pending_names()} are not terminal"
            )

        await self._dispatch(ready)
        return False

    def _ready_pool(self) -> list[Task]:
        """Fresh ready tasks plus retries, in workflow insertion order."""
        exclude = (
            {name for name, count in self._attempts.items() if count > 0}
            | self.execution.dispatched
            | self._terminal_names()
        )
        ready = self._graph.ready_set(self._succeeded | self._skipped, exclude)
        ready.extend(self._graph.tasks[name] for name in self._retry_queue)
        return sorted(ready, key=lambda t: self._graph.order_of(t.name))

    async def _dispatch(self, ready: list[Task]) -> None:
        """Take worker slots for ready tasks in order; the rest stays ready."""
        batch: list[tuple[Task, int]] = []
        for task in ready:
            if task.name in self.execution.dispatched:
                continue
            if not self._pool.try_acquire():
                logger.debug(
                    f"Execution {self.execution_id}: no worker capacity, "
                    f"{len(ready) - len(batch)} ready tasks waiting"
                )
                break
            batch.append((task, self._attempts[task.name] + 1))

        if not batch:
            return

        for task, attempt in batch:
            self.execution.dispatched.add(task.name)
            if task.name in self._retry_queue:
                self._retry_queue.remove(task.name)
            self._attempts[task.name] = attempt

        try:
            await self._store.update_execution(self.execution)
        except BaseException:
            for task, attempt in batch:
                self.execution.dispatched.discard(task.name)
                self._attempts[task.name] = attempt - 1
                self._pool.release()
            raise

        for task, attempt in batch:
            logger.debug(
                f"Execution {self.execution_id}: dispatching '{task.name}' attempt {attempt}"
            )
            attempt_task = asyncio.create_task(
                self._run_attempt(task, attempt),
                name=f"pytaxis-{self.execution_id}-{task.name}-{attempt}",
            )
            self._attempt_tasks.add(attempt_task)
            attempt_task.add_done_callback(self._attempt_tasks.discard)

    # ========================================================================
    # Attempts
    # ========================================================================

    async def _run_attempt(self, task: Task, attempt: int) -> None:
        start_time = datetime.now(UTC)
        timeout = task.timeout_seconds or self._default_timeout
        context = TaskContext(
            execution_id=self.execution_id,
            workflow_name=self.execution.workflow_name,
            task_name=task.name,
            attempt=attempt,
            deadline=start_time + timedelta(seconds=timeout) if timeout else None,
            user_data=self.execution.user_data,
            _cancel_event=self._cancel_event,
        )

        token = TASK_CONTEXT.set(context)
        try:
            outcome = await self._invoke(task, context, timeout)
            if outcome.outcome is TaskOutcome.TIMEOUT and context.deadline is not None:
                end_time = context.deadline
            else:
                end_time = datetime.now(UTC)
            async with self._lock:
                if not self._finished:
                    try:
                        await self._record(task.name, attempt, outcome, start_time, end_time)
                    except Exception as e:
                        self._internal_error = e
        finally:
            TASK_CONTEXT.reset(token)
            self._pool.release()
            self._wake.set()

    async def _invoke(
        self, task: Task, context: TaskContext, timeout: float | None
    ) -> _AttemptOutcome:
        """Run the executable once and translate whatever happens."""
        try:
            fn, threaded = _entry(task)
            call = asyncio.ensure_future(_call(fn, threaded, context))
            try:
                await asyncio.wait_for(asyncio.shield(call), timeout or None)
            except TimeoutError:
                if not call.done():
                    logger.warning(
                        f"Execution {self.execution_id}: task '{task.name}' attempt "
                        f"{context.attempt} timed out after {timeout}s"
                    )
                    await self._outlive(task, context, call, threaded)
                    return _AttemptOutcome(
                        TaskOutcome.TIMEOUT, ResultCode.TIMEOUT, f"timed out after {timeout}s"
                    )
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    call.cancel()
                    raise
            value = call.result()
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return _AttemptOutcome(
                TaskOutcome.CANCELLED, ResultCode.ERROR, CANCELLED_MESSAGE, retryable=False
            )
        except TaskCancelledError as e:
            return _AttemptOutcome(
                TaskOutcome.CANCELLED, e.code, str(e) or CANCELLED_MESSAGE, retryable=False
            )
        except TaskError as e:
            return _AttemptOutcome(
                TaskOutcome.FAILURE, e.code, str(e), retryable=e.is_retryable()
            )
        except TaxisError as e:
            return _AttemptOutcome(TaskOutcome.FAILURE, e.code, str(e))
        except Exception as e:
            retryable = not (hasattr(e, "is_retryable") and not e.is_retryable())
            return _AttemptOutcome(
                TaskOutcome.FAILURE,
                ResultCode.ERROR,
                f"{type(e).__name__}: {e}",
                retryable=retryable,
            )

        if isinstance(value, ResultCode) and not value.is_success:
            return _AttemptOutcome(
                TaskOutcome.FAILURE, value, f"task returned {value}", value=value
            )
        return _AttemptOutcome(TaskOutcome.SUCCESS, value=value)

    async def _outlive(
        self, task: Task, context: TaskContext, call: asyncio.Future, threaded: bool
    ) -> None:
        """
        Expire a late attempt and wait until its body has really returned.

        The worker slot and the dispatched entry are held meanwhile, so a
        body that ignores its deadline can never overlap its own retry.
        """
        context.expire()
        if threaded:
            logger.warning(
                f"Execution {self.execution_id}: task '{task.name}' attempt "
                f"{context.attempt} runs in a thread that cannot be interrupted; "
                "holding its worker until it returns"
            )
        else:
            call.cancel()
        try:
            await call
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        except Exception as e:
            logger.debug(
                f"Execution {self.execution_id}: late attempt {context.attempt} of "
                f"'{task.name}' ended with {type(e).__name__}: {e}"
            )

    async def _record(
        self,
        name: str,
        attempt: int,
        outcome: _AttemptOutcome,
        start_time: datetime,
        end_time: datetime,
    ) -> None:
        """Commit one attempt outcome and apply its consequences (lock held)."""
        stopping = self.execution.status is ExecutionStatus.STOPPING
        kind = outcome.outcome
        message = outcome.message
        if stopping and kind is not TaskOutcome.SUCCESS:
            kind = TaskOutcome.CANCELLED
            if message != CANCELLED_MESSAGE:
                message = f"{CANCELLED_MESSAGE}: {message}" if message else CANCELLED_MESSAGE
        elif kind is TaskOutcome.CANCELLED:
            # Cooperative cancellation only means something while stopping
            kind = TaskOutcome.FAILURE

        result = TaskResult(
            task_name=name,
            attempt=attempt,
            outcome=kind,
            code=outcome.code,
            message=message,
            start_time=start_time,
            end_time=end_time,
            value=outcome.value if kind is TaskOutcome.SUCCESS else None,
            retryable=outcome.retryable,
        )

        self.execution.dispatched.discard(name)
        await self._store.record_attempt(self.execution, result)

        task = self._graph.tasks[name]
        if kind is TaskOutcome.SUCCESS:
            self._succeeded.add(name)
            logger.debug(f"Execution {self.execution_id}: task '{name}' succeeded")
        elif kind is TaskOutcome.CANCELLED:
            self._cancelled.add(name)
        elif self._should_retry(task, result):
            self._retry_queue.append(name)
            logger.warning(
                f"Execution {self.execution_id}: task '{name}' attempt {attempt} "
                f"failed ({result.code}: {result.message}), retrying "
                f"({attempt}/{task.retry_count} retries used)"
            )
        else:
            self._failed.add(name)
            logger.warning(
                f"Execution {self.execution_id}: task '{name}' failed after "
                f"{attempt} attempt(s): {result.code}: {result.message}"
            )
            await self._skip_dependents(name, end_time)

    def _should_retry(self, task: Task, result: TaskResult) -> bool:
        return (
            result.outcome.is_failure
            and result.retryable
            and result.attempt <= task.retry_count
            and self.execution.status is not ExecutionStatus.STOPPING
        )

    async def _skip_dependents(self, failed: str, when: datetime) -> None:
        for name in self._graph.transitive_dependents(failed):
            if name in self._terminal_names():
                continue
            self._skipped.add(name)
            logger.warning(
                f"Execution {self.execution_id}: skipping '{name}', "
                f"dependency '{failed}' failed"
            )
            await self._store.append_task_result(
                self.execution_id,
                TaskResult(
                    task_name=name,
                    attempt=0,
                    outcome=TaskOutcome.SKIPPED,
                    code=ResultCode.ERROR,
                    message=f"dependency '{failed}' failed",
                    start_time=when,
                    end_time=when,
                ),
            )

    # ========================================================================
    # Terminal states
    # ========================================================================

    def _terminal_names(self) -> set[str]:
        return self._succeeded | self._failed | self._skipped | self._cancelled

    def _pending_names(self) -> list[str]:
        terminal = self._terminal_names()
        return [name for name in self._graph.names() if name not in terminal]

    def _all_terminal(self) -> bool:
        return not self.execution.dispatched and not self._pending_names()

    async def _finish(self) -> None:
        target = ExecutionStatus.FAILED if self._failed else ExecutionStatus.COMPLETED
        await self._transition(target, "finish")
        logger.info(
            f"Execution {self.execution_id} of '{self.execution.workflow_name}' {target} "
            f"({len(self._succeeded)} succeeded, {len(self._failed)} failed, "
            f"{len(self._skipped)} skipped)"
        )

    async def _finish_cancelled(self) -> None:
        now = datetime.now(UTC)
        for name in self._pending_names():
            self._skipped.add(name)
            await self._store.append_task_result(
                self.execution_id,
                TaskResult(
                    task_name=name,
                    attempt=0,
                    outcome=TaskOutcome.SKIPPED,
                    code=ResultCode.ERROR,
                    message=CANCELLED_MESSAGE,
                    start_time=now,
                    end_time=now,
                ),
            )
        self._retry_queue.clear()
        await self._transition(ExecutionStatus.CANCELLED, "cancel")
        logger.info(f"Execution {self.execution_id} of '{self.execution.workflow_name}' cancelled")

    async def _fail_internal(self, error: Exception) -> None:
        """Abort with FAILED and a diagnostic, if the store still accepts writes."""
        async with self._lock:
            self._finished = True
            if self.execution.status.is_terminal:
                return
            self.execution.error = f"{type(error).__name__}: {error}"
            self.execution.status = ExecutionStatus.FAILED
            self.execution.end_time = datetime.now(UTC)
            self.execution.dispatched.clear()
            try:
                await self._store.update_execution(self.execution)
            except Exception as e:
                logger.error(f"Execution {self.execution_id}: could not record failure: {e}")


def _entry(task: Task) -> tuple[Callable[..., Any], bool]:
    """The callable to invoke and whether it has to run in a worker thread."""
    executable = task.executable
    if executable is None:
        raise TaskError(
            f"Task '{task.name}' has no executable bound",
            code=ResultCode.NOT_FOUND,
            retryable=False,
        )

    fn = executable.execute if isinstance(executable, TaskExecutable) else executable
    is_async = inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(
        getattr(fn, "__call__", None)
    )
    return fn, not is_async


async def _call(fn: Callable[..., Any], threaded: bool, context: TaskContext) -> Any:
    """Invoke any accepted executable form with the context."""
    if not threaded:
        return await fn(context)

    # Sync bodies run in a thread, which cannot be interrupted
    result = await asyncio.to_thread(fn, context)
    if inspect.isawaitable(result):
        return await result
    return result


__all__ = [
    "Dispatcher",
    "INTERRUPTED_MESSAGE",
    "CANCELLED_MESSAGE",
]
