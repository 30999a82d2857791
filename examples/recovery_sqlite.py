"""
Recovery with SQLite

Simulates a process that dies while a task is running:

1. Start a workflow on a SQLite store and abandon it mid-run
   (shutdown(cancel_running=False) writes nothing).
2. Open the same database with a new Controller and call recover().
3. The interrupted attempt is recorded as a failure and retried.

Run:
    python examples/recovery_sqlite.py
"""

import asyncio
import os
import tempfile

from pytaxis import Controller, Registry, Task, Workflow
from pytaxis.storage import SqliteExecutionStore


async def slow_download(ctx):
    print(f"[download] attempt {ctx.attempt}: started, will hang")
    await asyncio.sleep(3600)


async def fast_download(ctx):
    print(f"[download] attempt {ctx.attempt}: finished")
    return "archive.tar"


async def unpack(ctx):
    print("[unpack] done")
    return "files"


def make_registry(download) -> Registry:
    registry = Registry()
    registry.add_workflow(
        Workflow(
            "fetch",
            tasks=[
                Task("download", executable=download, retry_count=1),
                Task("unpack", dependencies=("download",), executable=unpack),
            ],
        )
    )
    return registry


async def main():
    db_path = os.path.join(tempfile.mkdtemp(), "pytaxis.db")

    # First process
    store = SqliteExecutionStore(db_path)
    await store.connect()
    controller = Controller(make_registry(slow_download), store)
    execution_id = await controller.start("fetch")
    await asyncio.sleep(0.2)
    await controller.shutdown(cancel_running=False)
    await store.close()

    print(f"\nProcess 'crashed', execution {execution_id} left RUNNING\n")

    # Second process
    store = SqliteExecutionStore(db_path)
    await store.connect()
    controller = Controller(make_registry(fast_download), store)
    recovered = await controller.recover()
    print(f"Recovered: {recovered}")

    result = await controller.wait(execution_id, timeout=10)
    for r in result.task_results:
        print(f"  {r.task_name:<8} attempt={r.attempt} {r.outcome} {r.message}")
    print(result.summary)

    await controller.shutdown()
    await store.close()


if __name__ == "__main__":
    asyncio.run(main())
