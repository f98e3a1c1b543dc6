import logging
import sqlite3

import pytest

from quote_aggregator.db import connect, init_db
from quote_aggregator.errors import ConflictError, DuplicateKeyError, NotFoundError, ValidationError
from quote_aggregator.field_schema import FieldSchemaStore, slugify_key


def make_store(tmp_path) -> FieldSchemaStore:
    db = tmp_path / "quotes.db"
    init_db(db)
    return FieldSchemaStore(connect(db))


def field_count(store: FieldSchemaStore) -> int:
    return store.conn.execute("SELECT COUNT(*) FROM category_fields").fetchone()[0]


def specs_parent() -> dict:
    return {"service_category_id": 1, "name": "Specs", "key": "specs", "field_type": "group"}


def test_slugify_key_collapses_separators() -> None:
    assert slugify_key("Flow Rate (L/min)") == "flow_rate_l_min"
    assert slugify_key("  Colour  ") == "colour"
    assert slugify_key("__A--B__") == "a_b"


def test_create_field_rejects_duplicate_key(tmp_path) -> None:
    store = make_store(tmp_path)
    store.create_field({"service_category_id": 1, "name": "Boiler Type", "key": "boiler_type", "field_type": "select"})

    with pytest.raises(DuplicateKeyError):
        store.create_field(
            {"service_category_id": 1, "name": "Another Type", "key": "boiler_type", "field_type": "text"}
        )

    fields = store.list_fields(1)
    assert [item.name for item in fields] == ["Boiler Type"]


def test_create_field_requires_core_attributes(tmp_path) -> None:
    store = make_store(tmp_path)
    with pytest.raises(ValidationError) as excinfo:
        store.create_field({"service_category_id": 1, "name": "Warranty"})
    assert "key" in str(excinfo.value)


def test_container_fields_drop_options_and_multi(tmp_path) -> None:
    store = make_store(tmp_path)
    created = store.create_field(
        {
            "service_category_id": 1,
            "name": "Gallery",
            "key": "gallery",
            "field_type": "repeater",
            "is_multi": True,
            "options": ["a", "b"],
        }
    )
    assert created.is_multi is False
    assert created.options is None
    assert created.field_group_type == "repeater"


def test_create_with_children_derives_child_keys(tmp_path) -> None:
    store = make_store(tmp_path)
    result = store.create_field_with_children(specs_parent(), [{"name": "Color", "key": "color", "field_type": "text"}])

    parent = result["parent"]
    child = result["children"][0]
    assert child.key == "specs_color"
    assert child.parent_field_id == parent.field_id
    assert child.field_group_type == "group_child"
    assert child.display_order == 1
    assert "1 child fields" in result["message"]


def test_grandchildren_point_at_real_children(tmp_path) -> None:
    store = make_store(tmp_path)
    result = store.create_field_with_children(
        {"service_category_id": 1, "name": "Radiators", "key": "radiators", "field_type": "repeater"},
        [
            {"name": "Room", "field_type": "text"},
            {
                "name": "Dimensions",
                "field_type": "group",
                "childFields": [
                    {"name": "Width", "field_type": "number"},
                    {"name": "Height", "field_type": "number"},
                ],
            },
        ],
    )

    child_ids = {child.field_id for child in result["children"]}
    assert [child.key for child in result["children"]] == ["radiators_room", "radiators_dimensions"]
    assert [item.key for item in result["grandchildren"]] == [
        "radiators_dimensions_width",
        "radiators_dimensions_height",
    ]
    for grandchild in result["grandchildren"]:
        assert grandchild.parent_field_id in child_ids
        assert store.get_field(grandchild.parent_field_id).parent_field_id == result["parent"].field_id
        assert grandchild.field_group_type == "group_child"

    tree = store.field_tree(1)
    assert len(tree) == 1
    assert [len(child.children) for child in tree[0].children] == [0, 2]


def test_child_insert_failure_removes_parent(tmp_path, monkeypatch) -> None:
    store = make_store(tmp_path)
    original = store._insert_rows
    calls = []

    def failing_insert(rows):
        calls.append(rows)
        if len(calls) == 2:
            raise sqlite3.OperationalError("disk I/O error")
        return original(rows)

    monkeypatch.setattr(store, "_insert_rows", failing_insert)

    with pytest.raises(sqlite3.OperationalError):
        store.create_field_with_children(specs_parent(), [{"name": "Color", "field_type": "text"}])

    assert field_count(store) == 0


def test_grandchild_insert_failure_removes_children_and_parent(tmp_path, monkeypatch) -> None:
    store = make_store(tmp_path)
    original = store._insert_rows
    calls = []

    def failing_insert(rows):
        calls.append(rows)
        if len(calls) == 3:
            raise sqlite3.IntegrityError("constraint failed")
        return original(rows)

    monkeypatch.setattr(store, "_insert_rows", failing_insert)

    with pytest.raises(sqlite3.IntegrityError):
        store.create_field_with_children(
            specs_parent(),
            [{"name": "Size", "field_type": "group", "childFields": [{"name": "Width", "field_type": "number"}]}],
        )

    assert field_count(store) == 0


def test_compensation_failure_is_logged_and_original_error_raised(tmp_path, monkeypatch, caplog) -> None:
    store = make_store(tmp_path)
    original = store._insert_rows
    calls = []

    def failing_insert(rows):
        calls.append(rows)
        if len(calls) == 2:
            raise sqlite3.OperationalError("children failed")
        return original(rows)

    def failing_delete(field_ids):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "_insert_rows", failing_insert)
    monkeypatch.setattr(store, "_delete_committed", failing_delete)

    with caplog.at_level(logging.WARNING, logger="quote_aggregator.field_schema"):
        with pytest.raises(sqlite3.OperationalError, match="children failed"):
            store.create_field_with_children(specs_parent(), [{"name": "Color", "field_type": "text"}])

    assert any(record.getMessage() == "field_hierarchy_compensation_failed" for record in caplog.records)


def test_invalid_child_is_rejected_before_any_write(tmp_path) -> None:
    store = make_store(tmp_path)
    with pytest.raises(ValidationError, match="Child field 2"):
        store.create_field_with_children(
            specs_parent(),
            [{"name": "Color", "field_type": "text"}, {"name": "Finish"}],
        )
    assert field_count(store) == 0

    with pytest.raises(ValidationError, match="At least one child"):
        store.create_field_with_children(specs_parent(), [])


def test_duplicate_child_keys_are_rejected(tmp_path) -> None:
    store = make_store(tmp_path)
    with pytest.raises(DuplicateKeyError):
        store.create_field_with_children(
            specs_parent(),
            [{"name": "Color", "field_type": "text"}, {"name": "colour", "key": "color", "field_type": "text"}],
        )
    assert field_count(store) == 0


def test_update_field_keeps_key_immutable_and_checks_version(tmp_path) -> None:
    store = make_store(tmp_path)
    created = store.create_field(
        {"service_category_id": 1, "name": "Fuel", "key": "fuel_type", "field_type": "select", "options": "Gas, LPG"}
    )
    assert created.options == ["Gas", "LPG"]

    with pytest.raises(ValidationError):
        store.update_field(created.field_id, {"key": "fuel"})

    updated = store.update_field(created.field_id, {"name": "Fuel Type", "options": ["Gas", "LPG", "Oil"]}, 1)
    assert updated.name == "Fuel Type"
    assert updated.version == 2
    assert updated.key == "fuel_type"

    with pytest.raises(ConflictError):
        store.update_field(created.field_id, {"name": "Stale"}, expected_version=1)


def test_delete_field_cascade_is_explicit(tmp_path) -> None:
    store = make_store(tmp_path)
    result = store.create_field_with_children(
        specs_parent(),
        [{"name": "Size", "field_type": "group", "childFields": [{"name": "Width", "field_type": "number"}]}],
    )
    parent_id = result["parent"].field_id

    deleted = store.delete_field(parent_id, cascade=True)
    assert len(deleted) == 3
    assert deleted[-1] == parent_id
    assert field_count(store) == 0

    with pytest.raises(NotFoundError):
        store.delete_field(parent_id)


def test_update_with_children_replaces_descendants(tmp_path) -> None:
    store = make_store(tmp_path)
    created = store.create_field_with_children(specs_parent(), [{"name": "Color", "field_type": "text"}])
    parent_id = created["parent"].field_id

    result = store.update_field_with_children(
        parent_id,
        {"name": "Specifications", "key": "ignored"},
        [{"name": "Weight", "field_type": "number"}, {"name": "Finish", "field_type": "select", "options": ["Matt"]}],
    )

    assert result["parent"].name == "Specifications"
    assert result["parent"].key == "specs"
    tree = store.field_tree(1)
    assert [child.key for child in tree[0].children] == ["specs_weight", "specs_finish"]


def test_update_with_children_restores_previous_tree_on_failure(tmp_path, monkeypatch) -> None:
    store = make_store(tmp_path)
    created = store.create_field_with_children(specs_parent(), [{"name": "Color", "field_type": "text"}])
    parent_id = created["parent"].field_id
    previous_child = created["children"][0]

    def failing_insert(rows):
        raise sqlite3.OperationalError("disk full")

    monkeypatch.setattr(store, "_insert_rows", failing_insert)

    with pytest.raises(sqlite3.OperationalError):
        store.update_field_with_children(parent_id, {"name": "Specs"}, [{"name": "Weight", "field_type": "number"}])

    restored = store.field_tree(1)[0].children
    assert [(child.field_id, child.key) for child in restored] == [(previous_child.field_id, "specs_color")]


def test_reorder_fields_updates_display_order(tmp_path) -> None:
    store = make_store(tmp_path)
    first = store.create_field({"service_category_id": 1, "name": "A", "key": "a", "field_type": "text"})
    second = store.create_field({"service_category_id": 1, "name": "B", "key": "b", "field_type": "text"})

    store.reorder_fields(
        [{"field_id": first.field_id, "display_order": 2}, {"field_id": second.field_id, "display_order": 1}]
    )
    assert [item.key for item in store.list_fields(1)] == ["b", "a"]

    with pytest.raises(ValidationError):
        store.reorder_fields([])


def test_nested_fields_need_a_container_child(tmp_path) -> None:
    store = make_store(tmp_path)
    with pytest.raises(ValidationError, match="cannot have nested fields"):
        store.create_field_with_children(
            specs_parent(),
            [{"name": "Colour", "field_type": "text", "childFields": [{"name": "Shade", "field_type": "text"}]}],
        )
    assert field_count(store) == 0
