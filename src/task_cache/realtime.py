"""Realtime push ingestion: server-side change events applied to the caches."""

from enum import Enum
from typing import Any, Mapping

import structlog

from task_cache.broadcaster import Broadcaster
from task_cache.errors import MalformedEntity
from task_cache.models import ViewEntity, parse_id
from task_cache.normalizer import RelationDirectory, normalize
from task_cache.orchestrator import MutationOrchestrator
from task_cache.registry import ViewCacheRegistry

logger = structlog.get_logger()


class ChangeEvent(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class RealtimeIngestor:
    """Applies backend push events as committed changes.

    Fields that a local mutation is still writing are stripped from the push,
    so an echo of an older state never clobbers an optimistic value.
    """

    def __init__(
        self,
        registry: ViewCacheRegistry,
        broadcaster: Broadcaster,
        orchestrator: MutationOrchestrator,
        directory: RelationDirectory | None = None,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.orchestrator = orchestrator
        self.directory = directory

    def handle(self, event: ChangeEvent | str, raw: Mapping[str, Any]) -> ViewEntity | None:
        """Apply one push event.

        Args:
            event: INSERT, UPDATE or DELETE
            raw: The new row, or for DELETE the old row (only ``id`` is needed)

        Returns:
            The canonical entity after the change, or None for deletes and dropped events
        """
        try:
            event = ChangeEvent(event.upper() if isinstance(event, str) else event)
        except ValueError:
            logger.warning("Unknown realtime event dropped", event=event)
            return None

        if event is ChangeEvent.DELETE:
            try:
                entity_id = parse_id(raw.get("id"))
            except ValueError as e:
                logger.warning("Malformed realtime delete dropped", error=str(e))
                return None
            logger.debug("Realtime delete", entity_id=str(entity_id))
            self.orchestrator.mark_deleted(entity_id)
            self.broadcaster.remove(entity_id, commit=True)
            return None

        try:
            entity_id = parse_id(raw.get("id"))
            previous = self.registry.entities.get(entity_id)
            entity = normalize(raw, previous=previous, directory=self.directory)
        except (MalformedEntity, ValueError) as e:
            logger.warning("Malformed realtime payload dropped", event=event.value, error=str(e))
            return None

        accepted = self.orchestrator.accept_push(entity)
        if accepted is None:
            return None
        logger.debug("Realtime change", event=event.value, entity_id=str(accepted.id), fields=len(accepted.fields))
        return self.broadcaster.apply(accepted, commit=True)
