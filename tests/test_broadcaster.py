"""Tests for the cache coherence broadcaster."""

import pytest

from task_cache.broadcaster import Broadcaster, BroadcastOp
from task_cache.models import RealId, ViewEntity
from task_cache.normalizer import normalize
from task_cache.registry import ViewCacheRegistry
from task_cache.search import InMemorySearchIndex
from task_cache.views import NO_GROUP, GroupBy, SortOrder, ViewSpec, board_view, list_view


def task(entity_id: int, title: str, **fields: object) -> ViewEntity:
    return normalize({"id": entity_id, "title": title, **fields})


@pytest.fixture
def registry() -> ViewCacheRegistry:
    return ViewCacheRegistry()


@pytest.fixture
def index() -> InMemorySearchIndex:
    return InMemorySearchIndex()


@pytest.fixture
def broadcaster(registry: ViewCacheRegistry, index: InMemorySearchIndex) -> Broadcaster:
    return Broadcaster(registry, index)


def load(registry: ViewCacheRegistry, spec: ViewSpec, entities: list[ViewEntity]):
    handle = registry.register(spec)
    for entity in entities:
        registry.entities[entity.id] = entity
    handle.cache.load(entities)
    return handle


def test_created_entity_goes_to_head_of_recency_sorted_views(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    handle = load(registry, list_view(), [task(1, "a", created_at="2024-01-02"), task(2, "b", created_at="2024-01-01")])
    broadcaster.apply(task(3, "c", created_at="2023-01-01"), created=True)
    assert handle.rows()[0].id == RealId(3)


def test_insert_uses_sort_position_with_nulls_last(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    handle = load(
        registry,
        list_view(sort_field="delivery_date", sort_order=SortOrder.ASC),
        [task(1, "a", delivery_date="2024-01-01"), task(2, "b", delivery_date="2024-03-01"), task(3, "c")],
    )
    broadcaster.apply(task(4, "d", delivery_date="2024-02-01"))
    assert [e.id.value for e in handle.rows()] == [1, 4, 2, 3]


def test_update_replaces_in_place_when_sort_value_unchanged(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    handle = load(registry, list_view(sort_field="title", sort_order=SortOrder.ASC), [task(1, "a"), task(2, "b")])
    broadcaster.apply(ViewEntity(id=RealId(1), fields={"notes": "hello"}))
    assert [e.id.value for e in handle.rows()] == [1, 2]
    assert handle.rows()[0].get("notes") == "hello"
    assert handle.rows()[0].get("title") == "a"


def test_update_repositions_when_sort_value_changes(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    handle = load(registry, list_view(sort_field="title", sort_order=SortOrder.ASC), [task(1, "a"), task(2, "b")])
    broadcaster.apply(ViewEntity(id=RealId(1), fields={"title": "z"}))
    assert [e.id.value for e in handle.rows()] == [2, 1]


def test_entity_leaves_views_whose_filter_it_no_longer_matches(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    handle = load(registry, list_view(filters={"project_id": 10}), [task(1, "a", project_id=10)])
    broadcaster.apply(ViewEntity(id=RealId(1), fields={"project_id": 11}))
    assert handle.rows() == ()


def test_board_moves_entity_between_columns_and_prunes_empty_ones(
    registry: ViewCacheRegistry, broadcaster: Broadcaster
) -> None:
    handle = load(registry, board_view(GroupBy.STATUS), [task(1, "a", project_status_name="todo")])
    broadcaster.apply(ViewEntity(id=RealId(1), fields={"project_status_name": "done"}))
    assert list(handle.columns()) == ["done"]


def test_multi_valued_grouping_places_entity_once_per_column(
    registry: ViewCacheRegistry, broadcaster: Broadcaster
) -> None:
    handle = load(registry, board_view(GroupBy.CHANNELS), [])
    broadcaster.apply(task(1, "a", channels=["web", "print", "web"]))
    assert {key: [e.id.value for e in column] for key, column in handle.columns().items()} == {
        "print": [1],
        "web": [1],
    }
    broadcaster.apply(ViewEntity(id=RealId(1), fields={"channels": []}))
    assert list(handle.columns()) == [NO_GROUP]


def test_stale_later_page_entry_is_not_duplicated_on_first_page(
    registry: ViewCacheRegistry, broadcaster: Broadcaster
) -> None:
    entities = [task(i, f"t{i}") for i in range(1, 4)]
    handle = load(registry, list_view(sort_field="title", sort_order=SortOrder.ASC, page_size=2), entities)
    broadcaster.apply(ViewEntity(id=RealId(3), fields={"title": "a-first"}))
    assert [e.id.value for e in handle.rows()] == [1, 2, 3]
    assert handle.snapshot()["page:2"][0].get("title") == "t3"


def test_remove_clears_every_page(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    entities = [task(i, f"t{i}") for i in range(1, 4)]
    handle = load(registry, list_view(sort_field="title", sort_order=SortOrder.ASC, page_size=2), entities)
    broadcaster.apply(ViewEntity(id=RealId(3)), BroadcastOp.REMOVE)
    assert [e.id.value for e in handle.rows()] == [1, 2]
    assert RealId(3) not in registry.entities


def test_only_registered_views_are_patched(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    handle = load(registry, list_view(), [task(1, "a")])
    cache = handle.cache
    handle.close()
    broadcaster.apply(task(2, "b"))
    assert [e.id.value for e in cache.rows()] == [1]


def test_failing_predicate_is_isolated(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    def explode(entity: ViewEntity) -> bool:
        raise RuntimeError("boom")

    broken = load(registry, ViewSpec(name="broken", predicate=explode), [])
    healthy = load(registry, list_view(), [])
    broadcaster.apply(task(1, "a"))
    assert broken.rows() == ()
    assert [e.id.value for e in healthy.rows()] == [1]


def test_each_changed_view_is_notified_once(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    handle = load(registry, board_view(GroupBy.CHANNELS), [])
    seen = []
    handle.subscribe(seen.append)
    broadcaster.apply(task(1, "a", channels=["web", "print"]))
    assert len(seen) == 1


def test_apply_is_idempotent(registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
    handle = load(registry, list_view(), [task(1, "a")])
    broadcaster.apply(task(2, "b"), commit=True)
    once = registry.snapshot()
    broadcaster.apply(task(2, "b"), commit=True)
    assert registry.snapshot() == once
    assert len(handle.rows()) == 2


def test_search_index_only_sees_committed_changes(
    registry: ViewCacheRegistry, broadcaster: Broadcaster, index: InMemorySearchIndex
) -> None:
    broadcaster.apply(task(1, "optimistic"))
    assert index.documents == {}
    broadcaster.apply(task(1, "confirmed"), commit=True)
    assert index.query("conf")[0].id == RealId(1)
    broadcaster.remove(RealId(1), commit=True)
    assert index.documents == {}


def test_search_index_failures_are_swallowed(registry: ViewCacheRegistry) -> None:
    class BrokenIndex:
        def upsert(self, entity: ViewEntity) -> None:
            raise RuntimeError("index down")

        def remove(self, entity_id: RealId) -> None:
            raise RuntimeError("index down")

    broadcaster = Broadcaster(registry, BrokenIndex())
    assert broadcaster.apply(task(1, "a"), commit=True).id == RealId(1)
