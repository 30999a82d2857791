"""
Simple Workflow

A small ETL pipeline as a diamond DAG:

    extract -> clean  -> load
            -> enrich ->

clean and enrich run in parallel once extract succeeds; load waits for both.
enrich fails on its first attempt and is retried once.
"""

import asyncio

from pytaxis import Controller, Registry, build_workflow, task
from pytaxis.storage import InMemoryExecutionStore

attempts = {"enrich": 0}


@task
async def extract(ctx):
    """Read raw rows."""
    print(f"[{ctx.task_name}] reading batch {ctx.user_data['batch']}")
    await asyncio.sleep(0.1)
    return [3, 1, 2]


@task(depends_on="extract")
async def clean(ctx):
    print(f"[{ctx.task_name}] dropping bad rows")
    await asyncio.sleep(0.2)
    return 3


@task(depends_on="extract", retries=1, timeout=5)
async def enrich(ctx):
    attempts["enrich"] += 1
    print(f"[{ctx.task_name}] attempt {ctx.attempt}")
    if attempts["enrich"] == 1:
        raise ConnectionError("lookup service unavailable")
    await asyncio.sleep(0.1)
    return "enriched"


@task(depends_on=["clean", "enrich"])
def load(ctx):
    """Synchronous bodies run in a worker thread."""
    print(f"[{ctx.task_name}] writing to warehouse")
    return "loaded"


async def main():
    registry = Registry()
    registry.add_workflow(build_workflow("etl", [extract, clean, enrich, load]))
    print(registry.validate_dependencies("etl").level_graph())

    controller = Controller(registry, InMemoryExecutionStore()).with_max_workers(2)

    execution_id = await controller.start("etl", user_data={"batch": 42})
    result = await controller.wait(execution_id, timeout=10)

    print(f"\nExecution {execution_id}: {result.status}")
    for r in result.task_results:
        print(f"  {r.task_name:<8} attempt={r.attempt} {r.outcome} {r.message}")
    print(result.summary)

    await controller.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
