"""TaskCache: the facade wiring registry, broadcaster, reconciler and orchestrator together."""

import asyncio
from typing import Any, Iterable, Mapping

import structlog

from task_cache.backend import Backend, ThreadBackend
from task_cache.broadcaster import Broadcaster
from task_cache.channels import EventChannel
from task_cache.composite import CompositeMutation, promote_task
from task_cache.config import Config
from task_cache.errors import MalformedEntity
from task_cache.models import EntityId, MutationIntent, MutationResult, UserRef, ViewEntity, parse_id
from task_cache.normalizer import FOREIGN_KEYS, PRIMARY_FIELDS, RelationDirectory, normalize
from task_cache.orchestrator import MutationOrchestrator, utc_now
from task_cache.realtime import RealtimeIngestor
from task_cache.reconciler import TempIdReconciler
from task_cache.registry import SelectionState, ViewCache, ViewCacheHandle, ViewCacheRegistry
from task_cache.search import InMemorySearchIndex, SearchIndexUpdater
from task_cache.threads import ThreadSession
from task_cache.views import SortOrder, ViewSpec

logger = structlog.get_logger()

# Fields a promoted task hands down to its new parent and sibling.
PROMOTED_FIELDS: tuple[str, ...] = ("project_id", "project_status_id", "assigned_to_id", "content_type_id", "language_id")


class TaskCache:
    """Client-side task cache with optimistic mutations.

    Views register a ViewSpec and get a handle whose rows stay coherent with
    every mutation, push event and fetch that goes through this object.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        thread_backend: ThreadBackend | None = None,
        directory: RelationDirectory | None = None,
        search_index: SearchIndexUpdater | None = None,
        debounce_ms: int = 400,
        page_size: int = 50,
        clock: Any = utc_now,
    ) -> None:
        self.backend = backend
        self.thread_backend = thread_backend if thread_backend is not None else self._thread_backend_of(backend)
        self.directory = directory
        self.page_size = page_size
        self.clock = clock
        self.search_index = search_index if search_index is not None else InMemorySearchIndex()
        self.registry = ViewCacheRegistry()
        self.broadcaster = Broadcaster(self.registry, self.search_index)
        self.reconciler = TempIdReconciler(self.registry, self.broadcaster)
        self.orchestrator = MutationOrchestrator(
            self.registry,
            self.broadcaster,
            self.reconciler,
            backend,
            directory=directory,
            clock=clock,
            debounce_ms=debounce_ms,
        )
        self.realtime = RealtimeIngestor(self.registry, self.broadcaster, self.orchestrator, directory)
        self.selection = SelectionState()
        self.registry.add_index(self.selection)
        self._threads: dict[EntityId, ThreadSession] = {}

    @staticmethod
    def _thread_backend_of(backend: Backend) -> ThreadBackend | None:
        return backend if isinstance(backend, ThreadBackend) else None

    @classmethod
    def from_config(cls, config: Config) -> "TaskCache":
        """Build a cache over the configured backend."""
        from task_cache.backends import get_backend

        backend = get_backend(config)
        directory = getattr(backend, "directory", None)
        return cls(
            backend,
            directory=directory,
            debounce_ms=config.get_int("debounce_ms"),
            page_size=config.get_int("page_size"),
        )

    @property
    def errors(self) -> EventChannel[Exception]:
        """Rollbacks and partial composite failures, as they happen."""
        return self.orchestrator.errors

    def register_view(self, spec: ViewSpec, entities: Iterable[ViewEntity | Mapping[str, Any]] | None = None) -> ViewCacheHandle:
        """Register a view; equal specs share one cache.

        Args:
            spec: View parameters
            entities: Optional initial contents, raw or already normalized

        Returns:
            Handle to read, subscribe to and close the view
        """
        handle = self.registry.register(spec)
        if entities is not None:
            self._load(handle.cache, self._normalize_all(entities))
        return handle

    def unregister_view(self, handle: ViewCacheHandle) -> None:
        self.registry.unregister(handle)

    async def refresh(self, handle: ViewCacheHandle) -> tuple[ViewEntity, ...]:
        """Fetch the first page of a view from the backend and load it."""
        spec = handle.spec
        raws = await self.backend.list_entities(
            filters=self._backend_filters(spec),
            sort_by=spec.sort_field,
            descending=spec.sort_order is SortOrder.DESC,
            limit=spec.page_size,
        )
        if handle.closed:
            return ()
        self._load(handle.cache, self._normalize_all(raws))
        logger.info("View refreshed", view=spec.name, rows=len(handle.rows()))
        return handle.rows()

    async def load_more(self, handle: ViewCacheHandle) -> tuple[ViewEntity, ...]:
        """Fetch the next page of a paginated view."""
        spec = handle.spec
        if spec.page_size is None:
            return handle.rows()
        raws = await self.backend.list_entities(
            filters=self._backend_filters(spec),
            sort_by=spec.sort_field,
            descending=spec.sort_order is SortOrder.DESC,
            limit=spec.page_size,
            offset=len(handle.rows()),
        )
        if handle.closed:
            return ()
        with self.registry.batch():
            handle.cache.append_page(self._apply_fetched(self._normalize_all(raws)))
            self.registry.mark_changed(handle.cache)
        return handle.rows()

    def _backend_filters(self, spec: ViewSpec) -> dict[str, Any] | None:
        # Only stored fields can be filtered server-side; the view predicate reapplies all of them.
        stored = FOREIGN_KEYS | set(PRIMARY_FIELDS)
        filters = {
            name: list(values) if len(values) > 1 else values[0] for name, values in spec.filters if name in stored
        }
        return filters or None

    def _normalize_all(self, entities: Iterable[ViewEntity | Mapping[str, Any]]) -> list[ViewEntity]:
        out = []
        for raw in entities:
            if isinstance(raw, ViewEntity):
                out.append(raw)
                continue
            try:
                entity_id = parse_id(raw.get("id"))
                out.append(normalize(raw, previous=self.registry.entities.get(entity_id), directory=self.directory))
            except (MalformedEntity, ValueError) as e:
                logger.warning("Skipping malformed entity", error=str(e))
        return out

    def _load(self, cache: ViewCache, entities: list[ViewEntity]) -> None:
        with self.registry.batch():
            cache.load(self._apply_fetched(entities))
            self.registry.mark_changed(cache)

    def _apply_fetched(self, entities: list[ViewEntity]) -> list[ViewEntity]:
        """Merge fetched entities into the canonical store; deleted ones are left out."""
        kept = []
        for entity in entities:
            accepted = self.orchestrator.accept_push(entity)
            if accepted is None:
                continue
            self.broadcaster.apply(accepted, commit=True)
            kept.append(self.registry.entities.get(accepted.id, accepted))
        return kept

    async def mutate(self, intent: MutationIntent) -> MutationResult:
        return await self.orchestrator.mutate(intent)

    async def mutate_composite(self, composite: CompositeMutation) -> MutationResult:
        return await self.orchestrator.mutate_composite(composite)

    async def create_task(self, title: str, **fields: Any) -> MutationResult:
        return await self.mutate(MutationIntent.create({"title": title, **fields}))

    async def update_task(self, entity_id: EntityId, **fields: Any) -> MutationResult:
        return await self.mutate(MutationIntent.update(entity_id, fields))

    async def reparent_task(self, entity_id: EntityId, parent_id: EntityId | None) -> MutationResult:
        return await self.mutate(MutationIntent.reparent(entity_id, parent_id))

    async def delete_task(self, entity_id: EntityId) -> MutationResult:
        return await self.mutate(MutationIntent.delete(entity_id))

    async def move_task(self, entity_id: EntityId, position: int) -> MutationResult:
        """Move a task to a 1-based position among its siblings.

        The ``move_task`` procedure renumbers the siblings server-side; the
        moved task shows its new position right away.
        """
        payload = {"task_id": entity_id, "position": position}
        return await self.mutate(MutationIntent.rpc(entity_id, "move_task", payload, {"position": position}))

    async def promote_task(
        self,
        task_id: EntityId,
        parent_fields: Mapping[str, Any] | None = None,
        child_fields: Mapping[str, Any] | None = None,
    ) -> MutationResult:
        """Turn a task into a parent with the original task and a new sibling under it.

        Parent and child default to the task's title and its project, status,
        assignee, content type and language.
        """
        task = self.registry.entities.get(self.reconciler.resolve(task_id))
        inherited: dict[str, Any] = {}
        if task is not None:
            inherited = {name: task.get(name) for name in ("title", *PROMOTED_FIELDS) if task.get(name) is not None}
        composite = promote_task(
            task_id,
            {**inherited, **(parent_fields or {})},
            {**inherited, **(child_fields or {})},
        )
        return await self.mutate_composite(composite)

    def edit_field(self, entity_id: EntityId, name: str, value: Any) -> "asyncio.Future[MutationResult]":
        return self.orchestrator.edit_field(entity_id, name, value)

    async def flush(self) -> None:
        await self.orchestrator.flush()

    def thread_session(
        self,
        entity_id: EntityId,
        acting_user: UserRef,
        default_participants: Iterable[UserRef] = (),
    ) -> ThreadSession:
        """Return the comment session of an entity, creating it on first use."""
        entity_id = self.reconciler.resolve(entity_id)
        # Sessions follow temp-to-real swaps, so match on their current entity id.
        for session in self._threads.values():
            if session.entity_id == entity_id:
                return session
        if self.thread_backend is None:
            raise ValueError(f"{type(self.backend).__name__} has no thread support")
        session = ThreadSession(
            self.thread_backend,
            self.registry,
            entity_id,
            acting_user,
            default_participants,
            resolve=self.reconciler.resolve,
            clock=self.clock,
        )
        self.registry.add_index(session)
        self._threads[entity_id] = session
        return session

    def close_thread_session(self, session: ThreadSession) -> None:
        self.registry.remove_index(session)
        session.changes.close()
        session.errors.close()
        self._threads = {key: value for key, value in self._threads.items() if value is not session}
