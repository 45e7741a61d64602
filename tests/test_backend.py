"""Tests for backend interface."""

from typing import Any

import pytest

from task_cache.backend import Backend
from task_cache.engine import TaskCache
from task_cache.models import Committed, RealId, RolledBack, UserRef
from task_cache.views import list_view


class MockBackend(Backend):
    """Mock backend answering with flat shapes and not echoing updates."""

    def __init__(self) -> None:
        """Initialize mock backend."""
        self.entities: dict[int, dict[str, Any]] = {}
        self._next_id = 1

    async def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Create a new entity."""
        entity = {"id": self._next_id, **fields}
        self.entities[self._next_id] = entity
        self._next_id += 1
        return dict(entity)

    async def update(self, entity_id: int, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Update an entity without returning it."""
        self.entities[entity_id].update(fields)
        return None

    async def delete(self, entity_id: int) -> None:
        """Delete an entity."""
        del self.entities[entity_id]

    async def fetch_by_id(self, entity_id: int) -> dict[str, Any]:
        """Read an entity by ID."""
        return dict(self.entities[entity_id])

    async def list_entities(
        self,
        filters: dict[str, Any] | None = None,
        sort_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List entities."""
        entities = [dict(e) for e in self.entities.values()]
        return entities[offset : offset + limit] if limit else entities[offset:]


def test_backend_is_abstract() -> None:
    """Test that the interface cannot be instantiated."""
    with pytest.raises(TypeError):
        Backend()


@pytest.mark.asyncio
async def test_rpc_is_optional() -> None:
    """Test that backends without procedures refuse rpc calls."""
    with pytest.raises(NotImplementedError):
        await MockBackend().rpc("promote_task", {})


@pytest.mark.asyncio
async def test_create_through_flat_backend() -> None:
    """Test creating an entity through a backend returning flat shapes."""
    cache = TaskCache(MockBackend())
    handle = cache.register_view(list_view())

    result = await cache.create_task("Test Task", notes="Test description")

    assert isinstance(result, Committed)
    assert result.entity.id == RealId(1)
    assert result.entity.get("notes") == "Test description"
    assert [e.id for e in handle.rows()] == [RealId(1)]


@pytest.mark.asyncio
async def test_update_without_echo_keeps_optimistic_values() -> None:
    """Test updating an entity when the backend returns nothing."""
    backend = MockBackend()
    cache = TaskCache(backend)
    await cache.create_task("Old Title")

    result = await cache.update_task(RealId(1), title="New Title")

    assert result.ok
    assert result.entity.get("title") == "New Title"
    assert backend.entities[1]["title"] == "New Title"


@pytest.mark.asyncio
async def test_list_entities() -> None:
    """Test listing entities into a view."""
    backend = MockBackend()
    for title in ("Task 1", "Task 2", "Task 3"):
        await backend.create("task", {"title": title})
    cache = TaskCache(backend)
    handle = cache.register_view(list_view())

    rows = await cache.refresh(handle)

    assert len(rows) == 3


def test_threads_need_a_thread_backend() -> None:
    """Test that comment sessions require thread support."""
    cache = TaskCache(MockBackend())
    assert cache.thread_backend is None
    with pytest.raises(ValueError, match="no thread support"):
        cache.thread_session(RealId(1), UserRef(id=1))


@pytest.mark.asyncio
async def test_procedures_need_backend_support() -> None:
    """Test that a procedure call is rolled back when the backend has none."""
    cache = TaskCache(MockBackend())
    await cache.create_task("Task")

    result = await cache.move_task(RealId(1), 1)

    assert isinstance(result, RolledBack)
    assert isinstance(result.error.__cause__, NotImplementedError)
    assert "position" not in cache.registry.entities[RealId(1)]
