"""Tests for temp-id reconciliation."""

import pytest

from task_cache.broadcaster import Broadcaster
from task_cache.models import RealId, TempId, ViewEntity
from task_cache.normalizer import normalize
from task_cache.reconciler import TempIdReconciler
from task_cache.registry import SelectionState, ViewCacheRegistry
from task_cache.views import GroupBy, board_view, list_view


@pytest.fixture
def registry() -> ViewCacheRegistry:
    return ViewCacheRegistry()


@pytest.fixture
def broadcaster(registry: ViewCacheRegistry) -> Broadcaster:
    return Broadcaster(registry)


@pytest.fixture
def reconciler(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> TempIdReconciler:
    return TempIdReconciler(registry, broadcaster)


def draft(temp: TempId, title: str = "draft", **fields: object) -> ViewEntity:
    return normalize({"id": temp, "title": title, "created_at": "2024-05-01", **fields})


def test_reconcile_swaps_id_in_every_view(
    registry: ViewCacheRegistry, broadcaster: Broadcaster, reconciler: TempIdReconciler
) -> None:
    listing = registry.register(list_view())
    board = registry.register(board_view(GroupBy.STATUS))
    temp = TempId.new()
    broadcaster.apply(draft(temp), created=True)

    entity = reconciler.reconcile(temp, normalize({"id": 42, "title": "draft"}, previous=registry.entities[temp]))

    assert entity.id == RealId(42)
    for handle in (listing, board):
        assert [e.id for e in handle.rows()] == [RealId(42)]
    assert temp not in registry.entities
    assert reconciler.resolve(temp) == RealId(42)


def test_subscribers_never_see_both_ids(
    registry: ViewCacheRegistry, broadcaster: Broadcaster, reconciler: TempIdReconciler
) -> None:
    handle = registry.register(list_view())
    temp = TempId.new()
    broadcaster.apply(draft(temp), created=True)
    seen = []
    handle.subscribe(lambda rows: seen.append([e.id for e in rows]))

    reconciler.reconcile(temp, normalize({"id": 42, "title": "draft"}))

    assert seen == [[RealId(42)]]


def test_realtime_echo_is_not_duplicated(
    registry: ViewCacheRegistry, broadcaster: Broadcaster, reconciler: TempIdReconciler
) -> None:
    handle = registry.register(list_view())
    temp = TempId.new()
    broadcaster.apply(draft(temp), created=True)
    broadcaster.apply(normalize({"id": 42, "title": "draft", "created_at": "2024-05-01"}), commit=True)
    assert len(handle.rows()) == 2

    reconciler.reconcile(temp, normalize({"id": 42, "title": "draft"}))
    assert [e.id for e in handle.rows()] == [RealId(42)]


def test_references_and_indexes_are_rewritten(
    registry: ViewCacheRegistry, broadcaster: Broadcaster, reconciler: TempIdReconciler
) -> None:
    registry.register(list_view())
    selection = SelectionState()
    registry.add_index(selection)
    parent, child = TempId.new(), TempId.new()
    broadcaster.apply(draft(parent, "parent"), created=True)
    broadcaster.apply(draft(child, "child", parent_id=parent), created=True)
    selection.select(parent)

    reconciler.reconcile(parent, normalize({"id": 7, "title": "parent"}))

    assert registry.entities[child].get("parent_id") == RealId(7)
    assert selection.selected == [RealId(7)]


def test_conflict_upserts_real_entity(registry: ViewCacheRegistry, reconciler: TempIdReconciler) -> None:
    handle = registry.register(list_view())
    entity = reconciler.reconcile(TempId.new(), normalize({"id": 42, "title": "late"}))
    assert entity.id == RealId(42)
    assert [e.id for e in handle.rows()] == [RealId(42)]


def test_rollback_removes_temp_entity_everywhere(
    registry: ViewCacheRegistry, broadcaster: Broadcaster, reconciler: TempIdReconciler
) -> None:
    handle = registry.register(list_view())
    selection = SelectionState()
    registry.add_index(selection)
    temp = TempId.new()
    broadcaster.apply(draft(temp), created=True)
    selection.activate(temp)

    reconciler.rollback(temp)

    assert handle.rows() == ()
    assert temp not in registry.entities
    assert selection.active is None
