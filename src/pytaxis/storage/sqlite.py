"""SQLite-backed storage implementation for pytaxis.

Design Pattern: Adapter Pattern
SqliteExecutionStore adapts a SQLite database to the ExecutionStore
interface.

Database logic is isolated here, not scattered across the executor.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- Integer microsecond timestamps (exact, sortable)
- Indexes on (workflow_name, start_time) and (status) for history and
  recovery queries
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

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

_EXECUTION_COLUMNS = """
    execution_id, workflow_name, workflow_version, workflow, status,
    start_time, end_time, dispatched, user_data, error, updated_at
"""


class SqliteExecutionStore(ExecutionStore):
    """SQLite-backed durable storage.

    After __init__, the instance is not yet usable. Call connect() first
    (no async work in __init__).

    Usage:
        store = SqliteExecutionStore("executions.db")
        await store.connect()
        try:
            await store.create_execution(execution)
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        """Initialize storage (connection not opened yet).

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        super().__init__()
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize multi-statement writes

    @classmethod
    async def in_memory(cls) -> SqliteExecutionStore:
        """
        Create an in-memory SQLite store for testing.

        Returns:
            Connected in-memory store

        Example:
            store = await SqliteExecutionStore.in_memory()
        """
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteExecutionStore(in-memory)"
        return f"SqliteExecutionStore({self.db_path})"

    async def connect(self) -> None:
        """Open database connection and initialize schema.

        Pattern: Template Method
        Fixed initialization sequence:
        1. Open connection
        2. Enable WAL mode
        3. Create tables and indexes
        """
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit; explicit BEGIN for multi-statement writes
        )

        # In-memory databases answer "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result:
            mode = result[0].upper()
            if mode not in ("WAL", "MEMORY"):
                raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._connection.execute("PRAGMA foreign_keys=ON")

        await self._create_schema()

    async def _create_schema(self) -> None:
        """Create database tables and indexes.

        Schema design:
        - executions: one row per execution, workflow snapshot as JSON
        - task_results: append-only, seq gives record order per execution
        """
        statuses = ",".join(f"'{s.value}'" for s in ExecutionStatus)
        outcomes = ",".join(f"'{o.value}'" for o in TaskOutcome)

        await self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                workflow_version TEXT NOT NULL,
                workflow TEXT NOT NULL,
                status TEXT CHECK( status IN ({statuses}) ) NOT NULL,
                start_time INTEGER NOT NULL,
                end_time INTEGER,
                dispatched TEXT NOT NULL DEFAULT '[]',
                user_data BLOB,
                error TEXT,
                updated_at INTEGER NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_workflow
            ON executions(workflow_name, start_time)
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_status
            ON executions(status)
        """)

        await self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS task_results (
                execution_id TEXT NOT NULL
                    REFERENCES executions(execution_id) ON DELETE CASCADE,
                seq INTEGER NOT NULL,
                task_name TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                outcome TEXT CHECK( outcome IN ({outcomes}) ) NOT NULL,
                code INTEGER NOT NULL,
                message TEXT NOT NULL DEFAULT '',
                start_time INTEGER NOT NULL,
                end_time INTEGER NOT NULL,
                value BLOB,
                retryable INTEGER NOT NULL DEFAULT 1,
                PRIMARY KEY (execution_id, seq)
            )
        """)

    async def create_execution(self, execution: Execution) -> None:
        self._check_connected()

        row = (
            execution.execution_id,
            execution.workflow_name,
            execution.workflow_version,
            dump_workflow(execution.workflow),
            execution.status.value,
            to_micros(execution.start_time),
            to_micros(execution.end_time),
            json.dumps(sorted(execution.dispatched)),
            dump_user_data(execution.user_data),
            execution.error,
            to_micros(datetime.now(UTC)),
        )
        try:
            async with self._lock:
                await self._connection.execute(
                    f"INSERT INTO executions ({_EXECUTION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    row,
                )
        except sqlite3.IntegrityError as e:
            raise AlreadyExistsError(
                f"Execution already exists: execution_id={execution.execution_id}"
            ) from e
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create execution {execution.execution_id}: {e}") from e

        self.notify_status()

    async def get_execution(self, execution_id: str) -> Execution | None:
        """Returns None when not found (not an error condition)."""
        self._check_connected()

        cursor = await self._connection.execute(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions WHERE execution_id = ?",
            (execution_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()

        if row is None:
            return None
        return self._row_to_execution(row)

    async def update_execution(self, execution: Execution) -> None:
        self._check_connected()

        try:
            async with self._lock:
                old_status = await self._write_execution(execution)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to update execution {execution.execution_id}: {e}") from e

        if old_status != execution.status.value:
            self.notify_status()

    async def _write_execution(self, execution: Execution) -> str:
        """UPDATE the mutable fields (lock held). Returns the previous status."""
        cursor = await self._connection.execute(
            "SELECT status FROM executions WHERE execution_id = ?",
            (execution.execution_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            raise StorageError(f"Execution not found: execution_id={execution.execution_id}")

        await self._connection.execute(
            """
            UPDATE executions
            SET status = ?, end_time = ?, dispatched = ?, error = ?, updated_at = ?
            WHERE execution_id = ?
            """,
            (
                execution.status.value,
                to_micros(execution.end_time),
                json.dumps(sorted(execution.dispatched)),
                execution.error,
                to_micros(datetime.now(UTC)),
                execution.execution_id,
            ),
        )
        return row[0]

    async def list_executions(
        self,
        workflow_name: str | None = None,
        statuses: Iterable[ExecutionStatus] | None = None,
    ) -> list[Execution]:
        self._check_connected()

        clauses: list[str] = []
        params: list[object] = []
        if workflow_name is not None:
            clauses.append("workflow_name = ?")
            params.append(workflow_name)
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({','.join('?' for _ in values)})")
            params.extend(values)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._connection.execute(
            f"SELECT {_EXECUTION_COLUMNS} FROM executions {where} "
            "ORDER BY start_time, execution_id",
            params,
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_execution(row) for row in rows]

    async def get_history(
        self, workflow_name: str, start_time: datetime, end_time: datetime
    ) -> list[Execution]:
        """Range query on the (workflow_name, start_time) index."""
        self._check_connected()

        cursor = await self._connection.execute(
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM executions
            WHERE workflow_name = ? AND start_time BETWEEN ? AND ?
            ORDER BY start_time, execution_id
            """,
            (workflow_name, to_micros(start_time), to_micros(end_time)),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_execution(row) for row in rows]

    async def delete_execution(self, execution_id: str) -> bool:
        self._check_connected()

        async with self._lock:
            cursor = await self._connection.execute(
                "DELETE FROM executions WHERE execution_id = ?", (execution_id,)
            )
        return cursor.rowcount > 0

    async def append_task_result(self, execution_id: str, result: TaskResult) -> None:
        self._check_connected()

        try:
            async with self._lock:
                await self._connection.execute("BEGIN IMMEDIATE")
                try:
                    await self._insert_result(execution_id, result)
                except BaseException:
                    await self._connection.execute("ROLLBACK")
                    raise
                await self._connection.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to append result of '{result.task_name}' to {execution_id}: {e}"
            ) from e

    async def record_attempt(self, execution: Execution, result: TaskResult) -> None:
        """Result row and execution UPDATE in one transaction."""
        self._check_connected()

        try:
            async with self._lock:
                await self._connection.execute("BEGIN IMMEDIATE")
                try:
                    old_status = await self._write_execution(execution)
                    await self._insert_result(execution.execution_id, result)
                except BaseException:
                    await self._connection.execute("ROLLBACK")
                    raise
                await self._connection.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageError(
                f"Failed to record attempt {result.attempt} of '{result.task_name}' "
                f"in {execution.execution_id}: {e}"
            ) from e

        if old_status != execution.status.value:
            self.notify_status()

    async def _insert_result(self, execution_id: str, result: TaskResult) -> None:
        """INSERT the next result row (lock held, inside a transaction)."""
        cursor = await self._connection.execute(
            """
            SELECT (SELECT COUNT(*) FROM executions WHERE execution_id = ?),
                   COALESCE(MAX(seq), 0)
            FROM task_results WHERE execution_id = ?
            """,
            (execution_id, execution_id),
        )
        exists, last_seq = await cursor.fetchone()
        await cursor.close()
        if not exists:
            raise StorageError(f"Execution not found: execution_id={execution_id}")

        await self._connection.execute(
            """
            INSERT INTO task_results (
                execution_id, seq, task_name, attempt, outcome, code,
                message, start_time, end_time, value, retryable
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution_id,
                last_seq + 1,
                result.task_name,
                result.attempt,
                result.outcome.value,
                int(result.code),
                result.message,
                to_micros(result.start_time),
                to_micros(result.end_time),
                dump_value(result.value, result.task_name),
                1 if result.retryable else 0,
            ),
        )

    async def get_task_results(self, execution_id: str) -> list[TaskResult]:
        self._check_connected()

        cursor = await self._connection.execute(
            """
            SELECT task_name, attempt, outcome, code, message, start_time, end_time, value,
                   retryable
            FROM task_results
            WHERE execution_id = ?
            ORDER BY seq
            """,
            (execution_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [
            TaskResult(
                task_name=row[0],
                attempt=row[1],
                outcome=TaskOutcome(row[2]),
                code=ResultCode(row[3]),
                message=row[4],
                start_time=from_micros(row[5]),
                end_time=from_micros(row[6]),
                value=load_blob(row[7]),
                retryable=bool(row[8]),
            )
            for row in rows
        ]

    async def reset(self) -> None:
        """Clear all data. After reset, the store is empty but functional."""
        self._check_connected()

        async with self._lock:
            await self._connection.execute("DELETE FROM task_results")
            await self._connection.execute("DELETE FROM executions")

    async def close(self) -> None:
        """Close the connection (explicit cleanup, not relying on GC)."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> None:
        """Guard clause: ensure connection is open."""
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")

    def _row_to_execution(self, row: tuple) -> Execution:
        """Convert a database row to an Execution.

        Row format (matches _EXECUTION_COLUMNS):
        0:execution_id, 1:workflow_name, 2:workflow_version, 3:workflow,
        4:status, 5:start_time, 6:end_time, 7:dispatched, 8:user_data,
        9:error, 10:updated_at
        """
        return Execution(
            execution_id=row[0],
            workflow_name=row[1],
            workflow_version=row[2],
            workflow=load_workflow(row[3]),
            status=ExecutionStatus(row[4]),
            start_time=from_micros(row[5]),
            end_time=from_micros(row[6]),
            dispatched=set(json.loads(row[7])),
            user_data=load_blob(row[8]),
            error=row[9],
            updated_at=from_micros(row[10]),
        )
