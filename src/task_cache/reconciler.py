"""Temp-id reconciler: swaps client placeholders for server-assigned ids everywhere at once."""

import structlog

from task_cache.broadcaster import Broadcaster, BroadcastOp
from task_cache.errors import ReconciliationConflict
from task_cache.models import EntityId, TempId, ViewEntity
from task_cache.normalizer import is_reference
from task_cache.registry import ViewCacheRegistry

logger = structlog.get_logger()


class TempIdReconciler:
    """Replaces a TempId with its real id in caches, references and auxiliary indexes.

    The whole swap runs inside one registry batch, so subscribers see either
    the temp row or the real row, never both.
    """

    def __init__(self, registry: ViewCacheRegistry, broadcaster: Broadcaster) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.resolved: dict[TempId, EntityId] = {}

    def resolve(self, entity_id: EntityId) -> EntityId:
        """Follow a reconciled temp id to its real id; other ids are returned as-is."""
        if isinstance(entity_id, TempId):
            return self.resolved.get(entity_id, entity_id)
        return entity_id

    def reconcile(self, temp_id: TempId, real_entity: ViewEntity) -> ViewEntity:
        """Swap ``temp_id`` for ``real_entity.id`` and upsert the authoritative entity.

        Args:
            temp_id: Placeholder used while the create was in flight
            real_entity: Normalized entity from the server response

        Returns:
            The canonical entity after the upsert
        """
        logger.debug("Reconciling temp id", temp_id=str(temp_id), entity_id=str(real_entity.id))
        self.resolved[temp_id] = real_entity.id
        with self.registry.batch():
            try:
                self._swap(temp_id, real_entity.id)
            except ReconciliationConflict as e:
                logger.warning(
                    "Temp id no longer cached, upserting real entity",
                    temp_id=str(temp_id),
                    entity_id=str(real_entity.id),
                    error=str(e),
                )
            self.registry.replace_index_ids(temp_id, real_entity.id)
            merged = self.broadcaster.apply(real_entity, commit=True)
        logger.info("Temp id reconciled", temp_id=str(temp_id), entity_id=str(real_entity.id))
        return merged

    def rollback(self, temp_id: TempId) -> None:
        """Remove an unconfirmed entity from every cache and index."""
        logger.info("Rolling back temp entity", temp_id=str(temp_id))
        with self.registry.batch():
            self.broadcaster.apply(ViewEntity(id=temp_id), BroadcastOp.REMOVE)
            self.registry.discard_index_ids(temp_id)

    def _swap(self, temp_id: TempId, real_id: EntityId) -> None:
        registry = self.registry
        temp_entity = registry.entities.pop(temp_id, None)
        caches = [cache for cache in registry.caches() if cache.contains(temp_id)]
        if temp_entity is None and not caches:
            raise ReconciliationConflict(f"No cached entity for {temp_id}")

        existing = registry.entities.get(real_id)
        if temp_entity is not None:
            base = temp_entity.with_id(real_id)
            registry.entities[real_id] = base.merged(existing.fields) if existing is not None else base
        swapped = registry.entities.get(real_id)

        for cache in caches:
            for key, column in list(cache.groups.items()):
                if not any(entity.id == temp_id for entity in column):
                    continue
                # A realtime echo may already have inserted the real row.
                column[:] = [entity for entity in column if entity.id != real_id]
                cache.groups[key] = [
                    (swapped or entity.with_id(real_id)) if entity.id == temp_id else entity for entity in column
                ]
            for i, page in enumerate(cache.later_pages):
                cache.later_pages[i] = [
                    (swapped or entity.with_id(real_id)) if entity.id == temp_id else entity for entity in page
                ]
            registry.mark_changed(cache)

        referencing = [
            entity
            for entity in registry.entities.values()
            if any(is_reference(value, temp_id) for value in entity.fields.values())
        ]
        for entity in referencing:
            changes = {name: real_id for name, value in entity.fields.items() if is_reference(value, temp_id)}
            self.broadcaster.apply(ViewEntity(id=entity.id, fields=changes, entity_type=entity.entity_type))
