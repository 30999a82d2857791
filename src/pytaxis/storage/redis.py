"""Redis-based execution store implementation.

Provides a Redis backend so execution state outlives the process and can
be inspected from other machines.

Data Structures:
- pytaxis:execution:{id} (HASH): Execution record fields
- pytaxis:results:{id} (LIST): Pickled TaskResult fields, record order
- pytaxis:executions (ZSET): All execution ids (score = start time, µs)

Key Features:
- Atomic operations: MULTI/EXEC pipelines for multi-key writes
- Connection pooling: redis-py connection pool for concurrent access

Status notifications are process-local: `wait_for_terminal()` wakes for
transitions written by this process only.

Design: Adapter Pattern
Implements ExecutionStore for Redis, adapting the key-value store to the
ExecutionStore interface.
"""

from __future__ import annotations

import json
import pickle
from collections.abc import Iterable
from datetime import UTC, datetime

try:
    import redis.asyncio as redis
except ImportError:
    raise ImportError(
        "redis-py is required for RedisExecutionStore. Install with: pip install redis"
    )

from pytaxis.errors import AlreadyExistsError, ResultCode
from pytaxis.models import Execution, ExecutionStatus, TaskOutcome, TaskResult
from pytaxis.storage.base import ExecutionStore, StorageError
from pytaxis.storage.serialization import (
    dump_user_data,
    dump_value,
    dump_workflow,
    from_micros,
    load_blob,
    load_workflow,
    to_micros,
)

_INDEX_KEY = "pytaxis:executions"


class RedisExecutionStore(ExecutionStore):
    """Redis execution store using connection pooling.

    All dependencies (Redis URL, pool size) passed explicitly.

    Usage:
        store = RedisExecutionStore("redis://localhost:6379")
        await store.connect()
        await store.create_execution(execution)
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", max_connections: int = 16):
        """Initialize Redis execution store.

        Default redis_url works for local development.

        Args:
            redis_url: Redis connection URL
            max_connections: Maximum pool size
        """
        super().__init__()
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._redis: redis.Redis | None = None

    def __repr__(self) -> str:
        return f"RedisExecutionStore({self._redis_url})"

    async def connect(self) -> None:
        """Establish Redis connection pool."""
        if self._redis is not None:
            return
        self._redis = redis.from_url(
            self._redis_url,
            decode_responses=False,  # Pickled blobs are binary
            max_connections=self._max_connections,
        )

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> None:
        """Raise immediately if not connected."""
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")

    @staticmethod
    def _execution_key(execution_id: str) -> str:
        return f"pytaxis:execution:{execution_id}"

    @staticmethod
    def _results_key(execution_id: str) -> str:
        return f"pytaxis:results:{execution_id}"

    async def create_execution(self, execution: Execution) -> None:
        self._check_connected()

        key = self._execution_key(execution.execution_id)
        start = to_micros(execution.start_time)
        fields = self._execution_fields(execution)
        fields["execution_id"] = execution.execution_id
        fields["workflow_name"] = execution.workflow_name
        fields["workflow_version"] = execution.workflow_version
        fields["workflow"] = dump_workflow(execution.workflow)
        fields["start_time"] = str(start)
        fields["user_data"] = dump_user_data(execution.user_data)

        try:
            created = await self._redis.hsetnx(key, "execution_id", execution.execution_id)
            if not created:
                raise AlreadyExistsError(
                    f"Execution already exists: execution_id={execution.execution_id}"
                )
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=fields)
                pipe.zadd(_INDEX_KEY, {execution.execution_id: start})
                await pipe.execute()
        except redis.RedisError as e:
            raise StorageError(f"Failed to create execution {execution.execution_id}: {e}") from e

        self.notify_status()

    async def get_execution(self, execution_id: str) -> Execution | None:
        self._check_connected()

        data = await self._redis.hgetall(self._execution_key(execution_id))
        if not data or b"workflow" not in data:
            return None
        return self._parse_execution(data)

    async def update_execution(self, execution: Execution) -> None:
        self._check_connected()

        key = self._execution_key(execution.execution_id)
        try:
            old_status = await self._redis.hget(key, "status")
            if old_status is None:
                raise StorageError(
                    f"Execution not found: execution_id={execution.execution_id}"
                )
            await self._redis.hset(key, mapping=self._execution_fields(execution))
        except redis.RedisError as e:
            raise StorageError(f"Failed to update execution {execution.execution_id}: {e}") from e

        if old_status.decode() != execution.status.value:
            self.notify_status()

    async def list_executions(
        self,
        workflow_name: str | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        self._check_connected()

        wanted = set(statuses) if statuses is not None else None
        ids = await self._redis.zrange(_INDEX_KEY, 0, -1)
        if not ids:
            return []

        async with self._redis.pipeline(transaction=False) as pipe:
            for raw_id in ids:
                pipe.hgetall(self._execution_key(raw_id.decode()))
            rows = await pipe.execute()

        executions = []
        for data in rows:
            if not data or b"workflow" not in data:
                continue
            if workflow_name is not None and data[b"workflow_name"].decode() != workflow_name:
                continue
            execution = self._parse_execution(data)
            if wanted is None or execution.status in wanted:
                executions.append(execution)
        return sorted(executions, key=lambda e: (e.start_time, e.execution_id))

    async def delete_execution(self, execution_id: str) -> bool:
        self._check_connected()

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._execution_key(execution_id))
            pipe.delete(self._results_key(execution_id))
            pipe.zrem(_INDEX_KEY, execution_id)
            deleted, _, _ = await pipe.execute()
        return bool(deleted)

    async def append_task_result(self, execution_id: str, result: TaskResult) -> None:
        self._check_connected()

        if not await self._redis.exists(self._execution_key(execution_id)):
            raise StorageError(f"Execution not found: execution_id={execution_id}")

        try:
            await self._redis.rpush(self._results_key(execution_id), _encode_result(result))
        except redis.RedisError as e:
            raise StorageError(
                f"Failed to append result of '{result.task_name}' to {execution_id}: {e}"
            ) from e

    async def record_attempt(self, execution: Execution, result: TaskResult) -> None:
        """HSET of the execution and RPUSH of the result in one MULTI/EXEC."""
        self._check_connected()

        key = self._execution_key(execution.execution_id)
        record = _encode_result(result)
        try:
            old_status = await self._redis.hget(key, "status")
            if old_status is None:
                raise StorageError(
                    f"Execution not found: execution_id={execution.execution_id}"
                )
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=self._execution_fields(execution))
                pipe.rpush(self._results_key(execution.execution_id), record)
                await pipe.execute()
        except redis.RedisError as e:
            raise StorageError(
                f"Failed to record attempt {result.attempt} of '{result.task_name}' "
                f"in {execution.execution_id}: {e}"
            ) from e

        if old_status.decode() != execution.status.value:
            self.notify_status()

    async def get_task_results(self, execution_id: str) -> list[TaskResult]:
        self._check_connected()

        records = await self._redis.lrange(self._results_key(execution_id), 0, -1)
        results = []
        for record in records:
            name, attempt, outcome, code, message, start, end, value, retryable = pickle.loads(
                record
            )
            results.append(
                TaskResult(
                    task_name=name,
                    attempt=attempt,
                    outcome=TaskOutcome(outcome),
                    code=ResultCode(code),
                    message=message,
                    start_time=from_micros(start),
                    end_time=from_micros(end),
                    value=load_blob(value),
                    retryable=retryable,
                )
            )
        return results

    async def reset(self) -> None:
        """Delete every pytaxis key (for tests and demos)."""
        self._check_connected()

        keys = [key async for key in self._redis.scan_iter(match="pytaxis:*")]
        if keys:
            await self._redis.delete(*keys)

    def _execution_fields(self, execution: Execution) -> dict[str, str | bytes]:
        """Mutable fields written on every update."""
        end = to_micros(execution.end_time)
        return {
            "status": execution.status.value,
            "end_time": "" if end is None else str(end),
            "dispatched": json.dumps(sorted(execution.dispatched)),
            "error": execution.error or "",
            "updated_at": str(to_micros(datetime.now(UTC))),
        }

    def _parse_execution(self, data: dict[bytes, bytes]) -> Execution:
        """Parse a Redis hash into an Execution."""
        end = data.get(b"end_time", b"")
        error = data.get(b"error", b"").decode()
        return Execution(
            execution_id=data[b"execution_id"].decode(),
            workflow_name=data[b"workflow_name"].decode(),
            workflow_version=data[b"workflow_version"].decode(),
            workflow=load_workflow(data[b"workflow"]),
            status=ExecutionStatus(data[b"status"].decode()),
            start_time=from_micros(int(data[b"start_time"])),
            end_time=from_micros(int(end)) if end else None,
            dispatched=set(json.loads(data[b"dispatched"])),
            user_data=load_blob(data.get(b"user_data")),
            error=error or None,
            updated_at=from_micros(int(data[b"updated_at"])),
        )


def _encode_result(result: TaskResult) -> bytes:
    """Pickled field tuple stored in the results list."""
    return pickle.dumps(
        (
            result.task_name,
            result.attempt,
            result.outcome.value,
            int(result.code),
            result.message,
            to_micros(result.start_time),
            to_micros(result.end_time),
            dump_value(result.value, result.task_name),
            result.retryable,
        )
    )
