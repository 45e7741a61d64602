"""Cache coherence broadcaster: projects one entity change into every live view cache."""

import asyncio
import inspect
from enum import Enum
from typing import Any

import structlog

from task_cache.models import EntityId, ViewEntity
from task_cache.registry import ViewCache, ViewCacheRegistry
from task_cache.search import SearchIndexUpdater

logger = structlog.get_logger()


class BroadcastOp(str, Enum):
    UPSERT = "upsert"
    REMOVE = "remove"


class Broadcaster:
    """Applies entity upserts and removals to every registered cache.

    The registry keeps the canonical value of each entity; an upsert is a
    shallow merge onto it, and the merged entity is then placed, moved or
    dropped in each cache according to that cache's predicate and ordering.
    """

    def __init__(self, registry: ViewCacheRegistry, search_index: SearchIndexUpdater | None = None) -> None:
        self.registry = registry
        self.search_index = search_index
        self._background: set[asyncio.Task[Any]] = set()

    def apply(
        self,
        entity: ViewEntity,
        op: BroadcastOp = BroadcastOp.UPSERT,
        *,
        created: bool = False,
        commit: bool = False,
    ) -> ViewEntity | None:
        """Apply a change to all caches.

        Args:
            entity: Full or partial entity; partial fields merge onto the cached value
            op: Upsert or remove
            created: The entity was just created (recency-sorted caches put it first)
            commit: The change is server-confirmed; the search index is updated

        Returns:
            The merged canonical entity, or None for removals
        """
        if op is BroadcastOp.REMOVE:
            self.remove(entity.id, commit=commit)
            return None

        current = self.registry.entities.get(entity.id)
        merged = current.merged(entity.fields) if current is not None else entity
        self.registry.entities[entity.id] = merged

        with self.registry.batch():
            for cache in self.registry.caches():
                try:
                    changed = self._project(cache, merged, created)
                except Exception:
                    logger.exception("Failed to project entity into view", view=cache.spec.name, entity_id=str(entity.id))
                    continue
                if changed:
                    self.registry.mark_changed(cache)

        if commit:
            self._index("upsert", merged)
        return merged

    def remove(self, entity_id: EntityId, *, commit: bool = False) -> None:
        """Remove an entity from the canonical store and from every loaded page of every cache."""
        self.registry.entities.pop(entity_id, None)
        with self.registry.batch():
            for cache in self.registry.caches():
                if cache.discard(entity_id):
                    self.registry.mark_changed(cache)
        if commit:
            self._index("remove", entity_id)

    def _project(self, cache: ViewCache, entity: ViewEntity, created: bool) -> bool:
        spec = cache.spec
        # Later pages are left stale until the next fetch.
        if cache.in_later_pages(entity.id):
            return False

        keys = spec.group_keys(entity) if spec.matches(entity) else []
        changed = False

        for key, index in cache.find(entity.id):
            column = cache.groups[key]
            if key not in keys:
                del column[index]
                if not column:
                    del cache.groups[key]
                changed = True
                continue
            old = column[index]
            if old == entity:
                continue
            if spec.sort_value(old) != spec.sort_value(entity):
                rest = column[:index] + column[index + 1 :]
                position = spec.insertion_index(rest, entity)
                rest.insert(position, entity)
                column[:] = rest
            else:
                column[index] = entity
            changed = True

        for key in keys:
            column = cache.groups.setdefault(key, [])
            if any(item.id == entity.id for item in column):
                continue
            if created and spec.is_recency_sorted:
                column.insert(0, entity)
            else:
                column.insert(spec.insertion_index(column, entity), entity)
            changed = True
        return changed

    def _index(self, action: str, value: Any) -> None:
        if self.search_index is None:
            return
        try:
            result = getattr(self.search_index, action)(value)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._index_done)
        except Exception:
            logger.exception("Search index update failed", action=action)

    def _index_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Search index update failed", error=str(task.exception()))
