"""
Task Graph: validated dependency DAG of one workflow.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"How dependencies are resolved and checked"**

Callers hand in a Workflow and get back a TaskGraph (or a precise error);
the dispatcher only ever asks the graph which tasks are ready and who
depends on whom.

**How It Works**:
1. Task names are indexed in workflow insertion order
2. Every dependency name must resolve to a task of the same workflow
3. A depth-first traversal with three-color marking finds cycles; the
   first edge into an in-progress node is reported with the full path
4. `ready_set()` is a pure query the dispatcher calls as state evolves

**Example**:
```python
graph = build_graph(workflow)
graph.ready_set(satisfied=set(), exclude=set())           # roots
graph.ready_set(satisfied={"a"}, exclude={"a"})           # a's dependents
graph.transitive_dependents("a")                          # everything under a
print(graph.level_graph())
```
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from pytaxis.errors import AlreadyExistsError, CycleError, UnknownDependencyError
from pytaxis.models import Task, Workflow


class _Color(Enum):
    UNVISITED = 0
    IN_PROGRESS = 1
    DONE = 2


@dataclass
class GraphSummary:
    """
    Summary information about a task graph.

    **Attributes**:
        total_tasks: Number of tasks
        root_count: Tasks with no dependencies
        leaf_count: Tasks nothing depends on
        max_depth: Longest dependency chain (roots are depth 0)
        roots: Root task names
        leaves: Leaf task names
    """

    total_tasks: int
    root_count: int
    leaf_count: int
    max_depth: int
    roots: list[str]
    leaves: list[str]


class TaskGraph:
    """
    Validated dependency graph of one workflow.

    Built by `build_graph()`; never constructed half-valid. Holds the tasks
    of the workflow snapshot it was built from, so it can be shared by the
    dispatcher for the lifetime of one execution.
    """

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        self.tasks: dict[str, Task] = {t.name: t for t in workflow.tasks}
        self._order: dict[str, int] = {t.name: i for i, t in enumerate(workflow.tasks)}
        self._dependents: dict[str, list[str]] = {name: [] for name in self.tasks}
        for task in workflow.tasks:
            for dep in task.dependencies:
                if dep in self._dependents:
                    self._dependents[dep].append(task.name)

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, name: object) -> bool:
        return name in self.tasks

    def __repr__(self) -> str:
        return f"TaskGraph({self.workflow.name!r}, tasks={list(self.tasks)!r})"

    def names(self) -> list[str]:
        """Task names in insertion order."""
        return list(self.tasks)

    def order_of(self, name: str) -> int:
        """Insertion index, used as the dispatch tie-break."""
        return self._order[name]

    def dependencies(self, name: str) -> tuple[str, ...]:
        return self.tasks[name].dependencies

    def dependents(self, name: str) -> list[str]:
        """Direct dependents, insertion ordered."""
        return list(self._dependents[name])

    def transitive_dependents(self, name: str) -> list[str]:
        """All tasks reachable through dependents, insertion ordered."""
        seen: set[str] = set()
        stack = list(self._dependents[name])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return sorted(seen, key=self._order.__getitem__)

    def ready_set(self, satisfied: Iterable[str], exclude: Iterable[str]) -> list[Task]:
        """
        Tasks whose dependencies are all satisfied and which are not excluded.

        Pure: no side effects, safe to call repeatedly as state evolves.

        **Args**:
            satisfied: Names that completed (or were skipped)
            exclude: Names already attempted, dispatched or terminal

        **Returns**:
            Ready tasks in workflow insertion order
        """
        done = set(satisfied)
        skip = set(exclude)
        return [
            task
            for task in self.workflow.tasks
            if task.name not in skip and all(dep in done for dep in task.dependencies)
        ]

    def roots(self) -> list[str]:
        return [t.name for t in self.workflow.tasks if not t.dependencies]

    def leaves(self) -> list[str]:
        return [name for name in self.tasks if not self._dependents[name]]

    def topological_order(self) -> list[str]:
        """Dependencies first; ties broken by insertion order."""
        order: list[str] = []
        placed: set[str] = set()
        while len(order) < len(self.tasks):
            for task in self.ready_set(placed, placed):
                order.append(task.name)
                placed.add(task.name)
        return order

    def depths(self) -> dict[str, int]:
        """
        Depth of each task (distance from a root).

        Root tasks have depth 0, their dependents depth 1, and so on along
        the longest chain.
        """
        depths: dict[str, int] = {}
        for name in self.topological_order():
            deps = self.tasks[name].dependencies
            depths[name] = max((depths[d] for d in deps), default=-1) + 1
        return depths

    def summary(self) -> GraphSummary:
        roots = self.roots()
        leaves = self.leaves()
        depths = self.depths()
        return GraphSummary(
            total_tasks=len(self.tasks),
            root_count=len(roots),
            leaf_count=len(leaves),
            max_depth=max(depths.values()) if depths else 0,
            roots=roots,
            leaves=leaves,
        )

    def level_graph(self) -> str:
        """
        Level-based view showing which tasks can run in parallel.

        **Example output**:
        ```
        Workflow 'w1' levels (4 tasks):

        Level 0: [a]
                 ↓
        Level 1: [b] [c] (2 parallel tasks)
                 ↓
        Level 2: [d]
        ```
        """
        depths = self.depths()
        max_level = max(depths.values()) if depths else 0
        levels: list[list[str]] = [[] for _ in range(max_level + 1)]
        for name in self.tasks:
            levels[depths[name]].append(name)

        output = f"Workflow '{self.workflow.name}' levels ({len(self.tasks)} tasks):\n\n"
        for level, names in enumerate(levels):
            if not names:
                continue
            parallel_note = f" ({len(names)} parallel tasks)" if len(names) > 1 else ""
            output += f"Level {level}: [{'] ['.join(names)}]{parallel_note}\n"
            if level < max_level:
                output += "         ↓\n"
        return output


def build_graph(workflow: Workflow) -> TaskGraph:
    """
    Build and validate the dependency graph of a workflow.

    **Raises**:
        AlreadyExistsError: If two tasks share a name
        UnknownDependencyError: If a dependency names no task of the workflow
        CycleError: If the dependency relation has a cycle (with full path)
    """
    names: set[str] = set()
    for task in workflow.tasks:
        if task.name in names:
            raise AlreadyExistsError(
                f"Workflow '{workflow.name}' has more than one task named '{task.name}'"
            )
        names.add(task.name)

    for task in workflow.tasks:
        for dep in task.dependencies:
            if dep not in names:
                raise UnknownDependencyError(task.name, dep)

    graph = TaskGraph(workflow)
    _check_acyclic(graph)
    return graph


def _check_acyclic(graph: TaskGraph) -> None:
    """Three-color DFS over dependency edges (iterative, no recursion limit)."""
    color = {name: _Color.UNVISITED for name in graph.tasks}

    for start in graph.tasks:
        if color[start] is not _Color.UNVISITED:
            continue

        path: list[str] = [start]
        stack: list[Iterable[str]] = [iter(graph.dependencies(start))]
        color[start] = _Color.IN_PROGRESS

        while stack:
            dep = next(stack[-1], None)
            if dep is None:
                color[path.pop()] = _Color.DONE
                stack.pop()
                continue

            if color[dep] is _Color.IN_PROGRESS:
                cycle = path[path.index(dep) :] + [dep]
                raise CycleError(cycle)
            if color[dep] is _Color.UNVISITED:
                color[dep] = _Color.IN_PROGRESS
                path.append(dep)
                stack.append(iter(graph.dependencies(dep)))


def ready_set(graph: TaskGraph, satisfied: Iterable[str], exclude: Iterable[str]) -> list[Task]:
    """Module-level form of `TaskGraph.ready_set`."""
    return graph.ready_set(satisfied, exclude)


__all__ = [
    "TaskGraph",
    "GraphSummary",
    "build_graph",
    "ready_set",
]
