"""Tests for the entity normalizer."""

import pytest

from task_cache.errors import MalformedEntity
from task_cache.models import RealId, TempId
from task_cache.normalizer import (
    RelationDirectory,
    normalize,
    normalize_changes,
    related_fields,
    wire_fields,
)


def test_nested_and_flat_shapes_normalize_identically() -> None:
    nested = {
        "id": 5,
        "title": "Launch post",
        "project_id": 10,
        "projects": {"id": 10, "name": "Blog", "color": "#f00"},
        "project_status_id": 100,
        "project_statuses": {"id": 100, "name": "todo", "color": "#ccc"},
        "assigned_to_id": 1,
        "assigned_user": {"id": 1, "full_name": "Ada Lovelace"},
        "content_types": [{"id": 3, "title": "Article"}],
        "content_type_id": 3,
    }
    flat = {
        "id": "5",
        "title": "Launch post",
        "project_id": 10,
        "project_name": "Blog",
        "project_color": "#f00",
        "project_status_id": 100,
        "project_status_name": "todo",
        "project_status_color": "#ccc",
        "assigned_to_id": 1,
        "assigned_to_name": "Ada Lovelace",
        "content_type_id": 3,
        "content_type_title": "Article",
    }
    assert normalize(nested) == normalize(flat)


def test_normalize_is_deterministic() -> None:
    raw = {"id": 1, "title": "a", "channels": "web"}
    assert normalize(raw) == normalize(dict(raw))
    assert normalize(raw).get("channels") == ["web"]


def test_nested_relation_supplies_missing_foreign_key() -> None:
    entity = normalize({"id": 1, "title": "a", "projects": {"id": 11, "name": "Docs"}})
    assert entity.get("project_id") == 11
    assert entity.get("project_name") == "Docs"


def test_legacy_aliases() -> None:
    entity = normalize({"id": 1, "title": "a", "project_id_int": "10", "parent_task_id_int": 4, "metaTitle": "m"})
    assert entity.get("project_id") == 10
    assert entity.get("parent_id") == RealId(4)
    assert entity.get("meta_title") == "m"


def test_partial_shape_falls_back_to_previous_for_same_key() -> None:
    previous = normalize({"id": 1, "title": "a", "notes": "keep", "project_id": 10, "project_name": "Blog"})
    entity = normalize({"id": 1, "title": "b", "project_id": 10}, previous=previous)
    assert entity.get("notes") == "keep"
    assert entity.get("project_name") == "Blog"
    assert entity.get("title") == "b"


def test_null_denormalized_value_does_not_blank_previous_name() -> None:
    previous = normalize({"id": 1, "title": "a", "project_id": 10, "project_name": "Blog", "project_color": "#f00"})
    entity = normalize({"id": 1, "title": "a", "project_id": 10, "project_name": None}, previous=previous)
    assert entity.get("project_name") == "Blog"
    assert entity.get("project_color") == "#f00"


def test_changed_foreign_key_does_not_reuse_previous_name(directory: RelationDirectory) -> None:
    previous = normalize({"id": 1, "title": "a", "project_id": 10, "project_name": "Blog"})
    entity = normalize({"id": 1, "title": "a", "project_id": 11}, previous=previous)
    assert entity.get("project_name") is None

    entity = normalize({"id": 1, "title": "a", "project_id": 11}, previous=previous, directory=directory)
    assert entity.get("project_name") == "Docs"
    assert entity.get("project_color") == "#00ff00"


def test_required_title_may_come_from_previous() -> None:
    previous = normalize({"id": 1, "title": "a"})
    assert normalize({"id": 1, "notes": "n"}, previous=previous).get("title") == "a"


@pytest.mark.parametrize(
    "raw",
    [
        {"title": "no id"},
        {"id": "", "title": "empty id"},
        {"id": "abc", "title": "bad id"},
        {"id": 1},
        {"id": 1, "title": None},
    ],
)
def test_malformed_entities_raise(raw: dict) -> None:
    with pytest.raises(MalformedEntity):
        normalize(raw)


def test_temp_ids_survive_normalization() -> None:
    temp = TempId.new()
    entity = normalize({"id": temp, "title": "draft", "parent_id": temp})
    assert entity.id == temp
    assert entity.get("parent_id") == temp


def test_normalize_changes_recomputes_denormalized_fields(directory: RelationDirectory) -> None:
    current = normalize({"id": 1, "title": "a", "project_status_id": 100}, directory=directory)
    assert current.get("project_status_name") == "todo"

    changes = normalize_changes({"project_status_id": 101}, current, directory)
    assert changes == {"project_status_id": 101, "project_status_name": "done", "project_status_color": "#333333"}


def test_normalize_changes_prefers_hints_over_directory(directory: RelationDirectory) -> None:
    hints = normalize({"id": 1, "title": "a", "project_status_id": 101, "project_status_name": "Shipped"})
    changes = normalize_changes({"project_status_id": 101}, None, directory, hints=hints)
    assert changes["project_status_name"] == "Shipped"


def test_normalize_changes_drops_view_only_fields() -> None:
    assert normalize_changes({"id": 3, "project_name": "x", "title": "t"}) == {"title": "t"}


def test_related_fields_groups_foreign_key_with_its_shadows() -> None:
    group = related_fields("project_status_name")
    assert group == {"project_status_id", "project_status_name", "project_status_color"}
    assert related_fields("title") == {"title"}


def test_wire_fields_strips_view_only_fields() -> None:
    wire = wire_fields({"id": 1, "title": "a", "project_id": 10, "project_name": "Blog", "created_at": "x"})
    assert wire == {"title": "a", "project_id": 10}
