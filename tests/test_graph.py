"""
Tests for task graph validation and ready-set computation.

Tests cover:
- Cycle detection with the full cycle path
- Unknown dependencies and duplicate names
- ready_set ordering and exclusion
- Graph queries (dependents, topological order, summary, level view)
"""

import pytest

from pytaxis import (
    AlreadyExistsError,
    CycleError,
    InvalidParamError,
    Task,
    UnknownDependencyError,
    Workflow,
    build_graph,
    ready_set,
)


def _workflow(*specs, name="w") -> Workflow:
    return Workflow(name=name, tasks=[Task(n, dependencies=deps) for n, deps in specs])


@pytest.fixture
def w1_graph():
    return build_graph(_workflow(("A", ()), ("B", ("A",)), ("C", ("A",)), ("D", ("B", "C"))))


# ============================================================================
# Validation
# ============================================================================


def test_two_node_cycle_reports_full_path():
    workflow = _workflow(("a", ("b",)), ("b", ("a",)))

    with pytest.raises(CycleError) as exc_info:
        build_graph(workflow)

    assert exc_info.value.cycle == ["a", "b", "a"]
    assert "a -> b -> a" in str(exc_info.value)


def test_longer_cycle_behind_acyclic_prefix():
    workflow = _workflow(("root", ()), ("x", ("root", "z")), ("y", ("x",)), ("z", ("y",)))

    with pytest.raises(CycleError) as exc_info:
        build_graph(workflow)

    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"x", "y", "z"}
    assert "root" not in cycle


def test_cycle_error_is_invalid_param():
    with pytest.raises(InvalidParamError):
        build_graph(_workflow(("a", ("b",)), ("b", ("a",))))


def test_unknown_dependency_names_task_and_missing():
    with pytest.raises(UnknownDependencyError) as exc_info:
        build_graph(_workflow(("a", ()), ("b", ("ghost",))))

    assert exc_info.value.task_name == "b"
    assert exc_info.value.missing == "ghost"


def test_duplicate_task_names_rejected():
    with pytest.raises(AlreadyExistsError):
        build_graph(_workflow(("a", ()), ("a", ())))


def test_self_dependency_rejected_at_task_construction():
    with pytest.raises(InvalidParamError):
        Task("a", dependencies=("a",))


def test_empty_workflow_builds():
    graph = build_graph(Workflow(name="empty"))
    assert len(graph) == 0
    assert graph.topological_order() == []
    assert graph.summary().total_tasks == 0


def test_deep_chain_does_not_hit_recursion_limit():
    specs = [("t0", ())] + [(f"t{i}", (f"t{i - 1}",)) for i in range(1, 3000)]
    graph = build_graph(_workflow(*specs))
    assert graph.summary().max_depth == 2999


# ============================================================================
# Ready set
# ============================================================================


def test_ready_set_initially_roots(w1_graph):
    assert [t.name for t in ready_set(w1_graph, set(), set())] == ["A"]


def test_ready_set_insertion_order(w1_graph):
    ready = ready_set(w1_graph, {"A"}, {"A"})
    assert [t.name for t in ready] == ["B", "C"]


def test_ready_set_waits_for_all_dependencies(w1_graph):
    ready = w1_graph.ready_set({"A", "B"}, {"A", "B"})
    assert [t.name for t in ready] == ["C"]

    ready = w1_graph.ready_set({"A", "B", "C"}, {"A", "B", "C"})
    assert [t.name for t in ready] == ["D"]


def test_ready_set_is_pure(w1_graph):
    satisfied = {"A"}
    exclude = {"A"}
    first = w1_graph.ready_set(satisfied, exclude)
    second = w1_graph.ready_set(satisfied, exclude)
    assert first == second
    assert satisfied == {"A"} and exclude == {"A"}


# ============================================================================
# Queries
# ============================================================================


def test_dependents_and_transitive_dependents(w1_graph):
    assert w1_graph.dependents("A") == ["B", "C"]
    assert w1_graph.transitive_dependents("A") == ["B", "C", "D"]
    assert w1_graph.transitive_dependents("B") == ["D"]
    assert w1_graph.transitive_dependents("D") == []


def test_topological_order_respects_dependencies(w1_graph):
    order = w1_graph.topological_order()
    assert order == ["A", "B", "C", "D"]


def test_roots_leaves_summary(w1_graph):
    summary = w1_graph.summary()
    assert summary.roots == ["A"]
    assert summary.leaves == ["D"]
    assert summary.total_tasks == 4
    assert summary.max_depth == 2


def test_level_graph_shows_parallel_levels(w1_graph):
    text = w1_graph.level_graph()
    assert "Workflow 'w' levels (4 tasks):" in text
    assert "Level 0: [A]" in text
    assert "Level 1: [B] [C] (2 parallel tasks)" in text
    assert "Level 2: [D]" in text
