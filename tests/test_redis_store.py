"""
Tests for the Redis execution store.

These need a running Redis server and are skipped unless REDIS_URL is set,
e.g. REDIS_URL=redis://localhost:6379/15 pytest tests/test_redis_store.py
"""

import asyncio
import os
from datetime import UTC, datetime

import pytest
from uuid_extensions import uuid7

from pytaxis import (
    AlreadyExistsError,
    Controller,
    Execution,
    ExecutionStatus,
    Registry,
    ResultCode,
    StorageError,
    Task,
    TaskOutcome,
    TaskResult,
    Workflow,
)
from pytaxis.storage import RedisExecutionStore

REDIS_URL = os.environ.get("REDIS_URL")

pytestmark = pytest.mark.skipif(not REDIS_URL, reason="REDIS_URL not set")


@pytest.fixture
async def redis_store():
    store = RedisExecutionStore(REDIS_URL)
    await store.connect()
    await store.reset()
    yield store
    await store.reset()
    await store.close()


def _execution(status=ExecutionStatus.PENDING) -> Execution:
    workflow = Workflow("w", tasks=[Task("a", handler="a"), Task("b", ("a",))])
    return Execution(
        execution_id=str(uuid7()),
        workflow_name="w",
        workflow_version="1.0",
        workflow=workflow,
        status=status,
    )


@pytest.mark.asyncio
async def test_roundtrip(redis_store):
    execution = _execution()
    execution.user_data = {"batch": 7}
    await redis_store.create_execution(execution)

    loaded = await redis_store.get_execution(execution.execution_id)
    assert loaded.workflow == execution.workflow
    assert loaded.user_data == {"batch": 7}
    assert loaded.status is ExecutionStatus.PENDING

    with pytest.raises(AlreadyExistsError):
        await redis_store.create_execution(execution)


@pytest.mark.asyncio
async def test_results_keep_append_order(redis_store):
    execution = _execution(ExecutionStatus.RUNNING)
    await redis_store.create_execution(execution)

    now = datetime.now(UTC)
    for attempt, outcome in ((1, TaskOutcome.FAILURE), (2, TaskOutcome.SUCCESS)):
        await redis_store.append_task_result(
            execution.execution_id,
            TaskResult(
                task_name="a",
                attempt=attempt,
                outcome=outcome,
                code=ResultCode.SUCCESS if outcome is TaskOutcome.SUCCESS else ResultCode.ERROR,
                message="",
                start_time=now,
                end_time=now,
                value=attempt,
            ),
        )

    results = await redis_store.get_task_results(execution.execution_id)
    assert [(r.attempt, r.value) for r in results] == [(1, 1), (2, 2)]


@pytest.mark.asyncio
async def test_append_to_unknown_execution(redis_store):
    now = datetime.now(UTC)
    result = TaskResult("a", 1, TaskOutcome.SUCCESS, ResultCode.SUCCESS, "", now, now)
    with pytest.raises(StorageError):
        await redis_store.append_task_result("missing", result)


@pytest.mark.asyncio
async def test_incomplete_and_trim(redis_store):
    done = [_execution(ExecutionStatus.COMPLETED) for _ in range(3)]
    running = _execution(ExecutionStatus.RUNNING)
    for execution in [*done, running]:
        await redis_store.create_execution(execution)

    incomplete = await redis_store.get_incomplete_executions()
    assert [e.execution_id for e in incomplete] == [running.execution_id]

    assert await redis_store.trim_history(1) == 2
    remaining = await redis_store.list_executions()
    assert {e.execution_id for e in remaining} == {done[-1].execution_id, running.execution_id}


@pytest.mark.asyncio
async def test_controller_runs_on_redis(redis_store):
    async def step(ctx):
        await asyncio.sleep(0)
        return ctx.task_name

    registry = Registry()
    registry.add_workflow(
        Workflow("w", tasks=[Task("a", executable=step), Task("b", ("a",), executable=step)])
    )
    controller = Controller(registry, redis_store)
    try:
        execution_id = await controller.start("w")
        result = await controller.wait(execution_id, timeout=5)
    finally:
        await controller.shutdown()

    assert result.status is ExecutionStatus.COMPLETED
    assert [r.value for r in result.task_results] == ["a", "b"]


@pytest.mark.asyncio
async def test_record_attempt_is_one_transaction(redis_store):
    execution = _execution(ExecutionStatus.RUNNING)
    execution.dispatched = {"a"}
    await redis_store.create_execution(execution)

    execution.dispatched.clear()
    now = datetime.now(UTC)
    await redis_store.record_attempt(
        execution, TaskResult("a", 1, TaskOutcome.SUCCESS, ResultCode.SUCCESS, "", now, now, "v")
    )

    stored = await redis_store.get_execution(execution.execution_id)
    assert stored.dispatched == set()
    assert [r.value for r in await redis_store.get_task_results(execution.execution_id)] == ["v"]
