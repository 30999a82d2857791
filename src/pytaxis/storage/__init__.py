"""Storage backends for execution state.

Provides multiple storage implementations behind a common interface:
    - ExecutionStore: Abstract interface
    - InMemoryExecutionStore: In-memory storage for tests and single processes
    - SqliteExecutionStore: SQLite-backed durable storage
    - RedisExecutionStore: Redis-backed storage

Design: Adapter Pattern + Dependency Inversion
    All storage implementations adapt to the ExecutionStore interface.
    The executor depends on the abstraction, so backends can be swapped
    without touching it.
"""

from pytaxis.storage.base import ExecutionStore, StorageError, StoreSnapshot

# Backends are imported lazily so that `redis` (and `aiosqlite`) are only
# needed by code that actually uses them.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name == "InMemoryExecutionStore":
        from pytaxis.storage.memory import InMemoryExecutionStore

        return InMemoryExecutionStore
    elif name == "RedisExecutionStore":
        from pytaxis.storage.redis import RedisExecutionStore

        return RedisExecutionStore
    elif name == "SqliteExecutionStore":
        from pytaxis.storage.sqlite import SqliteExecutionStore

        return SqliteExecutionStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ExecutionStore",
    "StorageError",
    "StoreSnapshot",
    "InMemoryExecutionStore",
    "SqliteExecutionStore",
    "RedisExecutionStore",
]
