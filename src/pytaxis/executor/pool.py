"""
Worker capacity shared by all executions of one Controller.

Backpressure: a dispatcher takes a slot before it starts an attempt and
gives it back when the attempt ends. When no slot is free the ready task
simply stays ready; the dispatcher is woken on the next release instead of
polling.

Unlike a blocking semaphore, acquisition is non-blocking: a dispatch pass
holds its execution's lock and must never wait on another execution.
"""

from __future__ import annotations

import asyncio
import logging

from pytaxis.errors import InvalidParamError

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Counting slot pool with release notifications.

    Usage:
        pool = WorkerPool(max_workers=4)
        wake = asyncio.Event()
        pool.add_listener(wake)

        if pool.try_acquire():
            try:
                await run_attempt()
            finally:
                pool.release()      # sets `wake` (and every other listener)
    """

    def __init__(self, max_workers: int | None = None):
        """
        Args:
            max_workers: Concurrent attempts allowed; None means unbounded
        """
        if max_workers is not None and (isinstance(max_workers, bool) or max_workers < 1):
            raise InvalidParamError(f"max_workers must be >= 1 or None, got {max_workers!r}")
        self._max_workers = max_workers
        self._in_use = 0
        self._listeners: set[asyncio.Event] = set()

    def __repr__(self) -> str:
        limit = "unbounded" if self._max_workers is None else self._max_workers
        return f"WorkerPool(in_use={self._in_use}, max_workers={limit})"

    @property
    def max_workers(self) -> int | None:
        return self._max_workers

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int | None:
        """Free slots, None when unbounded."""
        if self._max_workers is None:
            return None
        return self._max_workers - self._in_use

    def try_acquire(self) -> bool:
        """Take a slot if one is free. Never blocks."""
        if self._max_workers is not None and self._in_use >= self._max_workers:
            return False
        self._in_use += 1
        return True

    def release(self) -> None:
        """Give a slot back and wake every listener."""
        if self._in_use <= 0:
            raise RuntimeError("WorkerPool.release() called more times than try_acquire()")
        self._in_use -= 1
        for event in list(self._listeners):
            event.set()

    def add_listener(self, event: asyncio.Event) -> None:
        self._listeners.add(event)

    def remove_listener(self, event: asyncio.Event) -> None:
        self._listeners.discard(event)
