"""Full-text search index kept eventually consistent with committed entities."""

import re
from typing import Protocol

import structlog

from task_cache.models import EntityId, ViewEntity

logger = structlog.get_logger()

SEARCH_FIELDS: tuple[str, ...] = (
    "title",
    "notes",
    "briefing",
    "keyword",
    "meta_title",
    "assigned_to_name",
    "project_name",
    "project_status_name",
)

_TOKEN = re.compile(r"\w+", re.UNICODE)


def tokenize(text: str) -> list[str]:
    return _TOKEN.findall(text.lower())


def searchable_text(entity: ViewEntity) -> str:
    """Concatenate the fields a search query matches against."""
    parts = [str(entity.get(name)) for name in SEARCH_FIELDS if entity.get(name)]
    return " ".join(parts)


def matches_query(entity: ViewEntity, query: str) -> bool:
    """True when every query token prefixes some token of the entity's text."""
    wanted = tokenize(query)
    if not wanted:
        return True
    have = tokenize(searchable_text(entity))
    return all(any(token.startswith(w) for token in have) for w in wanted)


class SearchIndexUpdater(Protocol):
    """External search index fed with committed entities, fire-and-forget."""

    def upsert(self, entity: ViewEntity) -> None: ...

    def remove(self, entity_id: EntityId) -> None: ...


class InMemorySearchIndex:
    """Search index held in process, used by the CLI and in tests."""

    def __init__(self) -> None:
        self.documents: dict[EntityId, ViewEntity] = {}

    def upsert(self, entity: ViewEntity) -> None:
        logger.debug("Indexing entity", entity_id=str(entity.id))
        self.documents[entity.id] = entity

    def remove(self, entity_id: EntityId) -> None:
        logger.debug("Removing entity from index", entity_id=str(entity_id))
        self.documents.pop(entity_id, None)

    def query(self, text: str, limit: int | None = None) -> list[ViewEntity]:
        """Return indexed entities matching every token of ``text``."""
        hits = [entity for entity in self.documents.values() if matches_query(entity, text)]
        if limit:
            hits = hits[:limit]
        return hits
