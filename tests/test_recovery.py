"""
Tests for resuming executions persisted by a previous process.

A "crash" is simulated with `Controller.shutdown(cancel_running=False)`,
which abandons control loops and attempts without writing anything, then
a fresh store connection and a fresh Controller call `recover()`.
"""

import asyncio

import pytest
from uuid_extensions import uuid7

from pytaxis import (
    Controller,
    Execution,
    ExecutionStatus,
    Registry,
    Task,
    TaskOutcome,
    Workflow,
)
from pytaxis.storage import InMemoryExecutionStore, SqliteExecutionStore


def _w1(a_body, a_retries: int = 0) -> Workflow:
    async def quick(ctx):
        return ctx.task_name

    return Workflow(
        name="w1",
        tasks=[
            Task("A", executable=a_body, retry_count=a_retries),
            Task("B", dependencies=("A",), executable=quick),
            Task("C", dependencies=("A",), executable=quick),
            Task("D", dependencies=("B", "C"), executable=quick),
        ],
    )


async def _crash_mid_run(temp_db_path, retries: int = 0, pause: bool = False) -> str:
    """Start W1, abandon it while A runs, and return the execution id."""
    started = asyncio.Event()

    async def hangs(ctx):
        started.set()
        await asyncio.sleep(3600)

    store = SqliteExecutionStore(str(temp_db_path))
    await store.connect()
    registry = Registry()
    registry.add_workflow(_w1(hangs, retries))
    controller = Controller(registry, store)

    execution_id = await controller.start("w1")
    await started.wait()
    if pause:
        await controller.pause(execution_id)
    await controller.shutdown(cancel_running=False)
    await store.close()
    return execution_id


async def _restart(temp_db_path, registry: Registry) -> tuple[Controller, SqliteExecutionStore]:
    store = SqliteExecutionStore(str(temp_db_path))
    await store.connect()
    return Controller(registry, store), store


async def _succeeds(ctx):
    return "recovered"


@pytest.mark.asyncio
async def test_abandoned_execution_is_left_running_with_dispatched_task(temp_db_path):
    execution_id = await _crash_mid_run(temp_db_path)

    store = SqliteExecutionStore(str(temp_db_path))
    await store.connect()
    try:
        execution = await store.get_execution(execution_id)
        assert execution.status is ExecutionStatus.RUNNING
        assert execution.dispatched == {"A"}
        assert await store.get_task_results(execution_id) == []
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_interrupted_attempt_is_retried_after_recovery(temp_db_path):
    execution_id = await _crash_mid_run(temp_db_path, retries=1)

    registry = Registry()
    registry.add_workflow(_w1(_succeeds, a_retries=1))
    controller, store = await _restart(temp_db_path, registry)
    try:
        assert await controller.recover() == [execution_id]
        result = await controller.wait(execution_id, timeout=5)
    finally:
        await controller.shutdown()
        await store.close()

    a_results = result.results_for("A")
    assert [(r.attempt, r.outcome) for r in a_results] == [
        (1, TaskOutcome.FAILURE),
        (2, TaskOutcome.SUCCESS),
    ]
    assert a_results[0].message == "interrupted"
    assert a_results[1].value == "recovered"
    assert result.status is ExecutionStatus.COMPLETED
    assert len(result.task_results) == 5


@pytest.mark.asyncio
async def test_interrupted_attempt_without_retries_fails_execution(temp_db_path):
    execution_id = await _crash_mid_run(temp_db_path, retries=0)

    registry = Registry()
    registry.add_workflow(_w1(_succeeds))
    controller, store = await _restart(temp_db_path, registry)
    try:
        await controller.recover()
        result = await controller.wait(execution_id, timeout=5)
    finally:
        await controller.shutdown()
        await store.close()

    assert result.status is ExecutionStatus.FAILED
    assert result.final_outcomes() == {
        "A": TaskOutcome.FAILURE,
        "B": TaskOutcome.SKIPPED,
        "C": TaskOutcome.SKIPPED,
        "D": TaskOutcome.SKIPPED,
    }


@pytest.mark.asyncio
async def test_paused_execution_stays_paused_after_recovery(temp_db_path):
    execution_id = await _crash_mid_run(temp_db_path, retries=1, pause=True)

    registry = Registry()
    registry.add_workflow(_w1(_succeeds, a_retries=1))
    controller, store = await _restart(temp_db_path, registry)
    try:
        await controller.recover()
        await asyncio.sleep(0.05)
        assert (await controller.get_status(execution_id)).status is ExecutionStatus.PAUSED

        await controller.resume(execution_id)
        result = await controller.wait(execution_id, timeout=5)
    finally:
        await controller.shutdown()
        await store.close()

    assert result.status is ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_unbindable_definition_fails_execution(temp_db_path):
    execution_id = await _crash_mid_run(temp_db_path, retries=1)

    # Only a different version is registered now, and the snapshot names no handlers
    registry = Registry()
    registry.add_workflow(Workflow("w1", version="2.0", tasks=[Task("A", executable=_succeeds)]))

    controller, store = await _restart(temp_db_path, registry)
    try:
        recovered = await controller.recover()
        execution = await store.get_execution(execution_id)
    finally:
        await controller.shutdown()
        await store.close()

    assert recovered == []
    assert execution.status is ExecutionStatus.FAILED
    assert execution.error.startswith("recovery failed:")


@pytest.mark.asyncio
async def test_pending_record_is_started_by_recovery(sqlite_file_store):
    registry = Registry()
    registry.register_handler("ok", _succeeds)
    workflow = Workflow("h", tasks=[Task("a", handler="ok"), Task("b", ("a",), handler="ok")])
    registry.add_workflow(workflow)

    execution = Execution(
        execution_id=str(uuid7()),
        workflow_name="h",
        workflow_version="1.0",
        workflow=workflow.copy(),
    )
    await sqlite_file_store.create_execution(execution)

    controller = Controller(registry, sqlite_file_store)
    try:
        assert await controller.recover() == [execution.execution_id]
        result = await controller.wait(execution.execution_id, timeout=5)
    finally:
        await controller.shutdown()

    assert result.status is ExecutionStatus.COMPLETED
    assert [r.value for r in result.task_results] == ["recovered", "recovered"]


@pytest.mark.asyncio
async def test_recover_skips_executions_already_driven(controller, registry):
    gate = asyncio.Event()

    async def gated(ctx):
        await gate.wait()

    registry.add_workflow(Workflow("g", tasks=[Task("a", executable=gated)]))
    execution_id = await controller.start("g")

    assert await controller.recover() == []

    gate.set()
    result = await controller.wait(execution_id, timeout=5)
    assert result.status is ExecutionStatus.COMPLETED


class StalledRecordStore(InMemoryExecutionStore):
    """Store whose attempt writes never complete while `stalled` is set."""

    def __init__(self):
        super().__init__()
        self.stalled = True
        self.entered = asyncio.Event()

    async def record_attempt(self, execution, result):
        if self.stalled:
            self.entered.set()
            await asyncio.Event().wait()
        await super().record_attempt(execution, result)


@pytest.mark.asyncio
async def test_attempt_lost_mid_write_counts_against_retries():
    runs = []

    async def body(ctx):
        runs.append(ctx.attempt)
        return "done"

    registry = Registry()
    registry.add_workflow(Workflow("w", tasks=[Task("a", executable=body, retry_count=1)]))
    store = StalledRecordStore()

    # Die while attempt 1's outcome is being written
    controller = Controller(registry, store)
    execution_id = await controller.start("w")
    await store.entered.wait()
    await controller.shutdown(cancel_running=False)

    execution = await store.get_execution(execution_id)
    assert execution.dispatched == {"a"}
    assert await store.get_task_results(execution_id) == []

    store.stalled = False
    controller = Controller(registry, store)
    try:
        assert await controller.recover() == [execution_id]
        result = await controller.wait(execution_id, timeout=5)
    finally:
        await controller.shutdown()

    assert runs == [1, 2]
    assert [(r.attempt, r.outcome, r.message) for r in result.task_results] == [
        (1, TaskOutcome.FAILURE, "interrupted"),
        (2, TaskOutcome.SUCCESS, ""),
    ]
    assert result.status is ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_attempt_lost_mid_write_without_retries_fails():
    runs = []

    async def body(ctx):
        runs.append(ctx.attempt)

    registry = Registry()
    registry.add_workflow(Workflow("w", tasks=[Task("a", executable=body)]))
    store = StalledRecordStore()

    controller = Controller(registry, store)
    execution_id = await controller.start("w")
    await store.entered.wait()
    await controller.shutdown(cancel_running=False)

    store.stalled = False
    controller = Controller(registry, store)
    try:
        await controller.recover()
        result = await controller.wait(execution_id, timeout=5)
    finally:
        await controller.shutdown()

    assert runs == [1]
    assert [(r.attempt, r.outcome) for r in result.task_results] == [(1, TaskOutcome.FAILURE)]
    assert result.status is ExecutionStatus.FAILED
