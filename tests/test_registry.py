"""
Tests for the workflow registry.

Tests cover:
- CRUD and validation on add_task / update_task / remove_task
- Snapshot isolation of get_info
- Handlers and binding
- Schedules
- JSON export/import and save/load
- Templates
"""

import json

import pytest

from pytaxis import (
    AlreadyExistsError,
    CycleError,
    InvalidParamError,
    NotFoundError,
    Registry,
    Task,
    UnknownDependencyError,
    Workflow,
    task,
)


async def _noop(ctx):
    return None


@pytest.fixture
def pipeline(registry: Registry) -> Registry:
    registry.create_workflow("etl", description="extract, transform, load")
    registry.add_task("etl", Task("extract", executable=_noop, handler="extract"))
    registry.add_task(
        "etl", Task("transform", dependencies=("extract",), executable=_noop, retry_count=2)
    )
    registry.add_task(
        "etl", Task("load", dependencies=("transform",), executable=_noop, timeout_seconds=5)
    )
    return registry


# ============================================================================
# CRUD
# ============================================================================


def test_create_and_list(registry):
    registry.create_workflow("a")
    registry.create_workflow("b", version="2.0")

    assert registry.list() == ["a", "b"]
    assert registry.get_info("b").version == "2.0"
    assert len(registry) == 2
    assert "a" in registry


def test_create_duplicate_rejected(registry):
    registry.create_workflow("a")
    with pytest.raises(AlreadyExistsError):
        registry.create_workflow("a")


def test_get_info_unknown(registry):
    with pytest.raises(NotFoundError):
        registry.get_info("missing")


def test_get_info_returns_copy(pipeline):
    info = pipeline.get_info("etl")
    info.tasks.clear()
    info.description = "changed"

    again = pipeline.get_info("etl")
    assert again.task_names() == ["extract", "transform", "load"]
    assert again.description == "extract, transform, load"


def test_add_task_unknown_workflow(registry):
    with pytest.raises(NotFoundError):
        registry.add_task("missing", Task("a"))


def test_add_task_duplicate_name(pipeline):
    with pytest.raises(AlreadyExistsError):
        pipeline.add_task("etl", Task("load"))


def test_add_task_unknown_dependency_leaves_definition_unchanged(pipeline):
    before = pipeline.get_info("etl")

    with pytest.raises(UnknownDependencyError):
        pipeline.add_task("etl", Task("report", dependencies=("publish",)))

    assert pipeline.get_info("etl") == before


def test_update_task_introducing_cycle_rejected(pipeline):
    before = pipeline.get_info("etl")

    with pytest.raises(CycleError):
        pipeline.update_task("etl", "extract", Task("extract", dependencies=("load",)))

    assert pipeline.get_info("etl") == before


def test_update_task_keeps_position(pipeline):
    pipeline.update_task(
        "etl", "transform", Task("transform", dependencies=("extract",), retry_count=5)
    )
    info = pipeline.get_info("etl")
    assert info.task_names() == ["extract", "transform", "load"]
    assert info.get_task("transform").retry_count == 5


def test_update_task_rename_breaking_dependents_rejected(pipeline):
    with pytest.raises(UnknownDependencyError):
        pipeline.update_task("etl", "transform", Task("reshape", dependencies=("extract",)))


def test_update_unknown_task(pipeline):
    with pytest.raises(NotFoundError):
        pipeline.update_task("etl", "ghost", Task("ghost"))


def test_remove_task_with_dependents_rejected(pipeline):
    with pytest.raises(InvalidParamError):
        pipeline.remove_task("etl", "transform")


def test_remove_leaf_task(pipeline):
    pipeline.remove_task("etl", "load")
    assert pipeline.get_info("etl").task_names() == ["extract", "transform"]


def test_remove_unknown_task(pipeline):
    with pytest.raises(NotFoundError):
        pipeline.remove_task("etl", "ghost")


def test_delete_workflow(pipeline):
    pipeline.set_schedule("etl", "scheduled", "0 2 * * *")
    pipeline.delete_workflow("etl")

    assert pipeline.list() == []
    with pytest.raises(NotFoundError):
        pipeline.delete_workflow("etl")


def test_set_enabled(pipeline):
    pipeline.set_enabled("etl", False)
    assert pipeline.get_info("etl").enabled is False


def test_add_workflow_validates_graph(registry):
    bad = Workflow("bad", tasks=[Task("a", dependencies=("b",)), Task("b", dependencies=("a",))])
    with pytest.raises(CycleError):
        registry.add_workflow(bad)
    assert registry.list() == []


def test_add_task_accepts_decorated_function(registry):
    @task(retries=1, timeout=2)
    async def fetch(ctx):
        """Fetch raw rows."""
        return []

    registry.create_workflow("w")
    registry.add_task("w", fetch)

    stored = registry.get_info("w").get_task("fetch")
    assert stored.retry_count == 1
    assert stored.timeout_seconds == 2
    assert stored.description == "Fetch raw rows."
    assert stored.executable is fetch


def test_validate_dependencies(pipeline):
    graph = pipeline.validate_dependencies("etl")
    assert graph.topological_order() == ["extract", "transform", "load"]


# ============================================================================
# Handlers
# ============================================================================


def test_bind_uses_handler_for_unbound_tasks(registry):
    registry.register_handler("extract", _noop)
    workflow = Workflow("w", tasks=[Task("extract", handler="extract")])

    registry.bind(workflow)

    assert workflow.tasks[0].executable is _noop


def test_bind_without_executable_or_handler_rejected(registry):
    workflow = Workflow("w", tasks=[Task("a")])
    with pytest.raises(InvalidParamError):
        registry.bind(workflow)


def test_bind_prefers_registered_definition_of_same_version(pipeline):
    snapshot = pipeline.get_info("etl")
    stripped = Workflow.from_dict(snapshot.to_dict())

    pipeline.bind(stripped)

    assert all(t.executable is _noop for t in stripped.tasks)


def test_register_handler_rejects_non_callable(registry):
    with pytest.raises(InvalidParamError):
        registry.register_handler("x", 42)


# ============================================================================
# Schedules
# ============================================================================


def test_schedule_roundtrip(pipeline):
    assert pipeline.get_schedule("etl") is None
    pipeline.set_schedule("etl", "scheduled", "0 2 * * *")

    schedule = pipeline.get_schedule("etl")
    assert schedule.policy == "scheduled"
    assert schedule.data == "0 2 * * *"


def test_schedule_unknown_workflow(registry):
    with pytest.raises(NotFoundError):
        registry.set_schedule("missing", "immediate")


# ============================================================================
# JSON persistence
# ============================================================================


def test_export_document_shape(pipeline):
    pipeline.set_schedule("etl", "immediate")
    document = json.loads(pipeline.export_json("etl"))

    assert document["format"] == "pytaxis.workflow"
    assert document["format_version"] == 1
    assert document["workflow"]["name"] == "etl"
    assert [t["name"] for t in document["workflow"]["tasks"]] == ["extract", "transform", "load"]
    assert document["schedule"] == {"policy": "immediate", "data": ""}


def test_import_into_fresh_registry_is_structurally_equal(pipeline):
    text = pipeline.export_json("etl")
    fresh = Registry()

    name = fresh.import_json(text)

    assert name == "etl"
    assert fresh.get_info("etl") == pipeline.get_info("etl")


def test_import_existing_requires_replace(pipeline):
    text = pipeline.export_json("etl")
    with pytest.raises(AlreadyExistsError):
        pipeline.import_json(text)
    assert pipeline.import_json(text, replace=True) == "etl"


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        json.dumps({"format": "other", "format_version": 1, "workflow": {"name": "x"}}),
        json.dumps({"format": "pytaxis.workflow", "format_version": 99, "workflow": {"name": "x"}}),
        json.dumps({"format": "pytaxis.workflow", "format_version": 1, "workflow": []}),
    ],
)
def test_import_malformed_documents(registry, text):
    with pytest.raises(InvalidParamError):
        registry.import_json(text)


def test_import_cyclic_document_rejected(registry):
    document = {
        "format": "pytaxis.workflow",
        "format_version": 1,
        "workflow": {
            "name": "loop",
            "tasks": [
                {"name": "a", "dependencies": ["b"]},
                {"name": "b", "dependencies": ["a"]},
            ],
        },
        "schedule": None,
    }
    with pytest.raises(CycleError):
        registry.import_json(json.dumps(document))
    assert "loop" not in registry


def test_save_and_load(pipeline, tmp_path):
    path = tmp_path / "etl.json"
    pipeline.set_schedule("etl", "conditional", "queue>100")
    pipeline.save("etl", path)

    fresh = Registry()
    assert fresh.load(path) == "etl"
    assert fresh.get_info("etl") == pipeline.get_info("etl")
    assert fresh.get_schedule("etl").data == "queue>100"


def test_load_missing_file(registry, tmp_path):
    with pytest.raises(NotFoundError):
        registry.load(tmp_path / "missing.json")


# ============================================================================
# Templates
# ============================================================================


@pytest.fixture
def templated(registry: Registry) -> Registry:
    registry.create_workflow("ingest-template", description="ingest ${source}")
    registry.add_task("ingest-template", Task("fetch-${source}", executable=_noop))
    registry.add_task(
        "ingest-template",
        Task(
            "store-${source}",
            dependencies=("fetch-${source}",),
            executable=_noop,
            description="store into ${table}",
        ),
    )
    registry.create_template("ingest", "ingest-template")
    return registry


def test_instantiate_template_with_mapping(templated):
    workflow = templated.instantiate_template(
        "ingest", "ingest-orders", {"source": "orders", "table": "raw_orders"}
    )

    assert workflow.name == "ingest-orders"
    assert workflow.description == "ingest orders"
    assert workflow.task_names() == ["fetch-orders", "store-orders"]
    assert workflow.get_task("store-orders").dependencies == ("fetch-orders",)
    assert workflow.get_task("store-orders").description == "store into raw_orders"
    assert "ingest-orders" in templated.list()


def test_instantiate_template_with_json_parameters(templated):
    workflow = templated.instantiate_template(
        "ingest", "ingest-users", '{"source": "users", "table": "raw_users"}'
    )
    assert workflow.task_names() == ["fetch-users", "store-users"]


def test_instantiate_template_missing_parameter(templated):
    with pytest.raises(InvalidParamError):
        templated.instantiate_template("ingest", "ingest-x", {"source": "x"})
    assert "ingest-x" not in templated.list()


def test_instantiate_template_collapsing_names_rejected(registry):
    registry.create_workflow("t")
    registry.add_task("t", Task("${a}", executable=_noop))
    registry.add_task("t", Task("${b}", executable=_noop))
    registry.create_template("pair", "t")

    with pytest.raises(InvalidParamError):
        registry.instantiate_template("pair", "same", {"a": "x", "b": "x"})


def test_template_listing_and_deletion(templated):
    assert templated.list_templates() == ["ingest"]
    with pytest.raises(AlreadyExistsError):
        templated.create_template("ingest", "ingest-template")

    templated.delete_template("ingest")
    assert templated.list_templates() == []
    with pytest.raises(NotFoundError):
        templated.instantiate_template("ingest", "x", {})
