"""Registry of live view caches and the canonical entity store they project."""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Iterator, Protocol

import structlog

from task_cache.channels import EventChannel
from task_cache.models import EntityId, ViewEntity
from task_cache.views import ViewSpec

logger = structlog.get_logger()


class IdIndex(Protocol):
    """Auxiliary structure holding entity or thread ids (selection state, thread links...)."""

    def replace_id(self, old: EntityId, new: EntityId) -> None: ...

    def discard_id(self, entity_id: EntityId) -> None: ...


class ViewCache:
    """One parameterized cache instance: first page as columns, later pages as loaded."""

    def __init__(self, spec: ViewSpec) -> None:
        self.spec = spec
        self.groups: dict[str, list[ViewEntity]] = {}
        self.later_pages: list[list[ViewEntity]] = []
        self.refcount = 0
        self.channel: EventChannel[tuple[ViewEntity, ...]] = EventChannel(name=f"view:{spec.name}")

    def __repr__(self) -> str:
        return f"ViewCache({self.spec.name!r}, group_by={self.spec.group_by}, rows={len(self.rows())})"

    def column_keys(self) -> list[str]:
        return sorted(key for key, column in self.groups.items() if column)

    def columns(self) -> dict[str, tuple[ViewEntity, ...]]:
        """Non-empty columns of the first page, keyed and ordered by group key."""
        return {key: tuple(self.groups[key]) for key in self.column_keys()}

    def rows(self) -> tuple[ViewEntity, ...]:
        """Ordered collection: first-page columns followed by later pages."""
        out: list[ViewEntity] = []
        for key in self.column_keys():
            out.extend(self.groups[key])
        for page in self.later_pages:
            out.extend(page)
        return tuple(out)

    def ids(self) -> list[EntityId]:
        return [entity.id for entity in self.rows()]

    def find(self, entity_id: EntityId) -> list[tuple[str, int]]:
        """Positions of an entity within first-page columns."""
        found = []
        for key, column in self.groups.items():
            for i, entity in enumerate(column):
                if entity.id == entity_id:
                    found.append((key, i))
                    break
        return found

    def in_later_pages(self, entity_id: EntityId) -> bool:
        return any(entity.id == entity_id for page in self.later_pages for entity in page)

    def contains(self, entity_id: EntityId) -> bool:
        return bool(self.find(entity_id)) or self.in_later_pages(entity_id)

    def load(self, entities: Iterable[ViewEntity]) -> None:
        """Replace the cache contents with freshly fetched entities.

        Entities failing the view predicate are dropped; the first ``page_size``
        rows form the patchable first page.
        """
        spec = self.spec
        matching = [entity for entity in entities if spec.matches(entity)]
        seen: set[EntityId] = set()
        unique = []
        for entity in matching:
            if entity.id not in seen:
                seen.add(entity.id)
                unique.append(entity)
        ordered = spec.sort(unique)
        first, rest = (ordered, []) if spec.page_size is None else (ordered[: spec.page_size], ordered[spec.page_size :])
        self.groups = {}
        for entity in first:
            for key in spec.group_keys(entity):
                self.groups.setdefault(key, []).append(entity)
        self.later_pages = []
        if rest:
            size = spec.page_size or len(rest)
            self.later_pages = [rest[i : i + size] for i in range(0, len(rest), size)]

    def append_page(self, entities: Iterable[ViewEntity]) -> None:
        present = set(self.ids())
        page = [entity for entity in entities if self.spec.matches(entity) and entity.id not in present]
        if page:
            self.later_pages.append(page)

    def discard(self, entity_id: EntityId) -> bool:
        """Remove an entity from every column and page. Returns True if anything changed."""
        changed = False
        for key in list(self.groups):
            column = self.groups[key]
            kept = [entity for entity in column if entity.id != entity_id]
            if len(kept) != len(column):
                changed = True
                if kept:
                    self.groups[key] = kept
                else:
                    del self.groups[key]
        for i, page in enumerate(self.later_pages):
            kept = [entity for entity in page if entity.id != entity_id]
            if len(kept) != len(page):
                self.later_pages[i] = kept
                changed = True
        self.later_pages = [page for page in self.later_pages if page]
        return changed

    def snapshot(self) -> dict[str, tuple[ViewEntity, ...]]:
        snap = self.columns()
        for i, page in enumerate(self.later_pages, start=2):
            snap[f"page:{i}"] = tuple(page)
        return snap

    def emit(self) -> None:
        self.channel.publish(self.rows())


class ViewCacheHandle:
    """Handle returned to a subscribing view."""

    def __init__(self, registry: "ViewCacheRegistry", cache: ViewCache) -> None:
        self._registry = registry
        self._cache = cache
        # Relays the cache channel until this handle closes.
        self.channel: EventChannel[tuple[ViewEntity, ...]] = EventChannel(name=cache.channel.name)
        self._unsubscribe = cache.channel.subscribe(self.channel.publish)
        self.closed = False

    @property
    def spec(self) -> ViewSpec:
        return self._cache.spec

    @property
    def cache(self) -> ViewCache:
        return self._cache

    def rows(self) -> tuple[ViewEntity, ...]:
        return self._cache.rows()

    def columns(self) -> dict[str, tuple[ViewEntity, ...]]:
        return self._cache.columns()

    def snapshot(self) -> dict[str, tuple[ViewEntity, ...]]:
        return self._cache.snapshot()

    def subscribe(self, listener: Callable[[tuple[ViewEntity, ...]], None]) -> Callable[[], None]:
        """Receive the ordered collection after every change."""
        return self.channel.subscribe(listener)

    async def stream(self) -> AsyncIterator[tuple[ViewEntity, ...]]:
        """Iterate over the ordered collection after every change, until the view closes."""
        async for rows in self.channel.stream():
            yield rows

    def close(self) -> None:
        self._registry.unregister(self)

    def _detach(self) -> None:
        self._unsubscribe()
        self.channel.close()
        self.closed = True


@dataclass
class EntitySnapshot:
    """Where an entity sat in every cache, and its canonical value, at one instant."""

    entity_id: EntityId
    canonical: ViewEntity | None
    placements: dict[ViewSpec, list[tuple[str, int, ViewEntity]]] = field(default_factory=dict)
    stale: dict[ViewSpec, list[tuple[int, int, ViewEntity]]] = field(default_factory=dict)


class ViewCacheRegistry:
    """Explicit registry of every live cache instance.

    Caches are created when the first view registers a spec and dropped when
    the last one unregisters. Notifications raised inside ``batch()`` are
    delivered once, when the outermost batch exits.
    """

    def __init__(self) -> None:
        self._caches: dict[ViewSpec, ViewCache] = {}
        self.entities: dict[EntityId, ViewEntity] = {}
        self._indexes: list[IdIndex] = []
        self._batch_depth = 0
        self._dirty: dict[ViewSpec, ViewCache] = {}

    def register(self, spec: ViewSpec) -> ViewCacheHandle:
        cache = self._caches.get(spec)
        if cache is None:
            cache = ViewCache(spec)
            self._caches[spec] = cache
            logger.debug("View cache created", view=spec.name, group_by=spec.group_by, sort_field=spec.sort_field)
        cache.refcount += 1
        return ViewCacheHandle(self, cache)

    def unregister(self, handle: ViewCacheHandle) -> None:
        if handle.closed:
            return
        handle._detach()
        cache = handle.cache
        cache.refcount -= 1
        if cache.refcount <= 0 and self._caches.get(cache.spec) is cache:
            del self._caches[cache.spec]
            self._dirty.pop(cache.spec, None)
            logger.debug("View cache dropped", view=cache.spec.name)

    def caches(self) -> list[ViewCache]:
        return list(self._caches.values())

    def get(self, spec: ViewSpec) -> ViewCache | None:
        return self._caches.get(spec)

    def is_registered(self, cache: ViewCache) -> bool:
        return self._caches.get(cache.spec) is cache

    def add_index(self, index: IdIndex) -> None:
        if index not in self._indexes:
            self._indexes.append(index)

    def remove_index(self, index: IdIndex) -> None:
        if index in self._indexes:
            self._indexes.remove(index)

    def indexes(self) -> list[IdIndex]:
        return list(self._indexes)

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Defer change notifications until the outermost batch exits."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._flush()

    def mark_changed(self, cache: ViewCache) -> None:
        if not self.is_registered(cache):
            return
        if self._batch_depth:
            self._dirty[cache.spec] = cache
        else:
            cache.emit()

    def _flush(self) -> None:
        dirty, self._dirty = self._dirty, {}
        for cache in dirty.values():
            if self.is_registered(cache):
                cache.emit()

    def capture(self, entity_id: EntityId) -> EntitySnapshot:
        """Record the canonical value and every cache position of an entity."""
        snapshot = EntitySnapshot(entity_id=entity_id, canonical=self.entities.get(entity_id))
        for cache in self.caches():
            spots = [(key, i, cache.groups[key][i]) for key, i in cache.find(entity_id)]
            if spots:
                snapshot.placements[cache.spec] = spots
            stale = [
                (p, i, entity)
                for p, page in enumerate(cache.later_pages)
                for i, entity in enumerate(page)
                if entity.id == entity_id
            ]
            if stale:
                snapshot.stale[cache.spec] = stale
        return snapshot

    def restore(self, snapshot: EntitySnapshot) -> None:
        """Put an entity back exactly where a snapshot found it, in caches still registered."""
        entity_id = snapshot.entity_id
        with self.batch():
            if snapshot.canonical is None:
                self.entities.pop(entity_id, None)
            else:
                self.entities[entity_id] = snapshot.canonical
            for cache in self.caches():
                changed = cache.discard(entity_id)
                for key, i, entity in sorted(snapshot.placements.get(cache.spec, []), key=lambda s: s[1]):
                    column = cache.groups.setdefault(key, [])
                    column.insert(min(i, len(column)), entity)
                    changed = True
                for p, i, entity in snapshot.stale.get(cache.spec, []):
                    while len(cache.later_pages) <= p:
                        cache.later_pages.append([])
                    page = cache.later_pages[p]
                    page.insert(min(i, len(page)), entity)
                    changed = True
                if changed:
                    self.mark_changed(cache)

    def replace_index_ids(self, old: EntityId, new: EntityId) -> None:
        for index in self.indexes():
            index.replace_id(old, new)

    def discard_index_ids(self, entity_id: EntityId) -> None:
        for index in self.indexes():
            index.discard_id(entity_id)

    def snapshot(self) -> dict[ViewSpec, dict[str, tuple[ViewEntity, ...]]]:
        """State of every registered cache, for comparisons."""
        return {spec: cache.snapshot() for spec, cache in self._caches.items()}


class SelectionState:
    """Selected and active entity ids of a list surface."""

    def __init__(self) -> None:
        self.selected: list[EntityId] = []
        self.active: EntityId | None = None

    def select(self, entity_id: EntityId) -> None:
        if entity_id not in self.selected:
            self.selected.append(entity_id)

    def activate(self, entity_id: EntityId | None) -> None:
        self.active = entity_id

    def replace_id(self, old: EntityId, new: EntityId) -> None:
        self.selected = [new if eid == old else eid for eid in self.selected]
        if self.active == old:
            self.active = new

    def discard_id(self, entity_id: EntityId) -> None:
        self.selected = [eid for eid in self.selected if eid != entity_id]
        if self.active == entity_id:
            self.active = None
