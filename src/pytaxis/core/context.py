"""Task-local execution context handed to task executables.

Provides TaskContext, the single argument every executable receives, and a
context variable so helper code deep inside a task body can find the
current context without threading it through every call.

Design: Task-Local State (contextvars)
    Each attempt runs in its own asyncio task with its own context value,
    so concurrent attempts never see each other's context.
"""

from __future__ import annotations

import asyncio
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pytaxis.errors import TaskCancelledError

TASK_CONTEXT: ContextVar[Optional["TaskContext"]] = ContextVar("task_context", default=None)
"""Context of the task attempt running in the current asyncio task.

Usage:
    ```python
    token = TASK_CONTEXT.set(ctx)
    try:
        await run_body()
    finally:
        TASK_CONTEXT.reset(token)
    ```
"""


@dataclass
class TaskContext:
    """What a task body knows about the attempt it is running.

    Cancellation is cooperative. ``stop`` sets the execution's cancel event
    and a missed deadline sets the attempt's own expiry event; long-running
    bodies are expected to check ``cancelled`` or await ``wait_cancelled()``
    and give up.

    Attributes:
        execution_id: Execution this attempt belongs to
        workflow_name: Name of the workflow
        task_name: Name of the task being run
        attempt: 1-based attempt number
        deadline: Wall-clock deadline, None when the task has no timeout
        user_data: Opaque data passed to Controller.start
    """

    execution_id: str
    workflow_name: str
    task_name: str
    attempt: int
    deadline: datetime | None = None
    user_data: Any = None
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _expired_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        """True once the execution has been asked to stop or the deadline passed."""
        return self._cancel_event.is_set() or self._expired_event.is_set()

    @property
    def expired(self) -> bool:
        """True once this attempt has missed its deadline."""
        return self._expired_event.is_set()

    def expire(self) -> None:
        """Mark the deadline as missed (called by the dispatcher)."""
        self._expired_event.set()

    async def wait_cancelled(self) -> None:
        """Block until the execution is asked to stop or the deadline passes."""
        waiters = [
            asyncio.ensure_future(self._cancel_event.wait()),
            asyncio.ensure_future(self._expired_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    def raise_if_cancelled(self) -> None:
        """Raise TaskCancelledError if the execution is stopping or the deadline passed."""
        if self.expired:
            raise TaskCancelledError(
                f"Task '{self.task_name}' attempt {self.attempt} missed its deadline"
            )
        if self.cancelled:
            raise TaskCancelledError(
                f"Execution {self.execution_id} is stopping; task '{self.task_name}' abandoned"
            )


def current_task_context() -> TaskContext | None:
    """Return the context of the running attempt, None outside a task body."""
    return TASK_CONTEXT.get()
