"""
Pytest configuration and fixtures for pytaxis tests.

Provides reusable fixtures for storage backends, registries, controllers,
test workflows, and Hypothesis strategies.
"""

import asyncio
import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
from hypothesis import strategies as st

from pytaxis import Controller, Registry, Task, Workflow
from pytaxis.storage import InMemoryExecutionStore, SqliteExecutionStore


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    import os

    # In CI environments only, force exit to prevent hanging
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


@pytest.fixture
async def memory_store() -> AsyncGenerator[InMemoryExecutionStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryExecutionStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteExecutionStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = await SqliteExecutionStore.in_memory()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_store(temp_db_path: Path) -> AsyncGenerator[SqliteExecutionStore, None]:
    """Async SQLite file-based store fixture with automatic cleanup."""
    store = SqliteExecutionStore(str(temp_db_path))
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def registry() -> Registry:
    return Registry()


@pytest.fixture
async def controller(
    registry: Registry, memory_store: InMemoryExecutionStore
) -> AsyncGenerator[Controller, None]:
    """Controller over the in-memory store, shut down after the test."""
    controller = Controller(registry, memory_store)
    yield controller
    await controller.shutdown()


# Sample workflows for reuse across tests


class Recorder:
    """Executable factory that records start/end order of every attempt."""

    def __init__(self):
        self.events: list[tuple[str, str]] = []
        self.calls: dict[str, int] = {}

    def ok(self, name: str, delay: float = 0.001, value=None):
        async def body(ctx):
            self.calls[name] = self.calls.get(name, 0) + 1
            self.events.append(("start", name))
            await asyncio.sleep(delay)
            self.events.append(("end", name))
            return value if value is not None else f"{name}-done"

        return body

    def failing(self, name: str, exc: type[Exception] = ValueError):
        async def body(ctx):
            self.calls[name] = self.calls.get(name, 0) + 1
            self.events.append(("start", name))
            await asyncio.sleep(0.001)
            self.events.append(("end", name))
            raise exc(f"{name} failed on attempt {ctx.attempt}")

        return body

    def index(self, kind: str, name: str) -> int:
        return self.events.index((kind, name))


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


def diamond(recorder: Recorder, name: str = "w1", **overrides) -> Workflow:
    """A; B<-A; C<-A; D<-B,C. `overrides` maps a task name to its executable."""
    specs = [("A", ()), ("B", ("A",)), ("C", ("A",)), ("D", ("B", "C"))]
    return Workflow(
        name=name,
        tasks=[
            Task(n, dependencies=deps, executable=overrides.get(n) or recorder.ok(n))
            for n, deps in specs
        ],
    )


# Hypothesis strategies for property-based testing


@st.composite
def dag_strategy(draw, max_tasks: int = 8):
    """
    Random valid DAG as (names, dependencies) in insertion order.

    Each task may only depend on tasks inserted before it, so the graph is
    acyclic by construction.
    """
    count = draw(st.integers(min_value=1, max_value=max_tasks))
    names = [f"t{i}" for i in range(count)]
    dependencies = {}
    for i, name in enumerate(names):
        if i == 0:
            dependencies[name] = ()
            continue
        deps = draw(st.lists(st.sampled_from(names[:i]), max_size=3, unique=True))
        dependencies[name] = tuple(deps)
    return names, dependencies


# Register strategies for easy import
pytest.dag_strategy = dag_strategy
