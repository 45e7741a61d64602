"""Backend interface: the narrow seam to persistence and the comment service."""

from abc import ABC, abstractmethod
from typing import Any


class Backend(ABC):
    """Abstract base class for task persistence backends.

    Every method is a coroutine. Raw entity shapes are returned as plain
    mappings and are normalized by the caller, so a backend may return either
    nested relation objects or already-flat fields.
    """

    @abstractmethod
    async def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        """Create an entity and return its raw shape, including the assigned id."""
        pass

    @abstractmethod
    async def update(self, entity_id: int, fields: dict[str, Any]) -> dict[str, Any] | None:
        """Update an entity.

        Returns:
            The raw updated entity, or None when the backend does not echo it
        """
        pass

    @abstractmethod
    async def delete(self, entity_id: int) -> None:
        """Delete an entity."""
        pass

    @abstractmethod
    async def fetch_by_id(self, entity_id: int) -> dict[str, Any]:
        """Fetch one raw entity by id."""
        pass

    @abstractmethod
    async def list_entities(
        self,
        filters: dict[str, Any] | None = None,
        sort_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """List raw entities with optional filtering, sorting, and paging."""
        pass

    async def rpc(self, name: str, payload: dict[str, Any]) -> Any:
        """Call a named server-side procedure."""
        raise NotImplementedError(f"{type(self).__name__} does not support rpc '{name}'")


class ThreadBackend(ABC):
    """Abstract base class for the threaded-comment service."""

    @abstractmethod
    async def create_thread(self, entity_id: int, created_by: int | str) -> dict[str, Any]:
        """Create the thread linked to an entity.

        Returns:
            Raw thread with at least ``id``
        """
        pass

    @abstractmethod
    async def add_watchers(self, thread_id: int, user_ids: list[int | str], added_by: int | str) -> None:
        """Add several participants in one call."""
        pass

    @abstractmethod
    async def add_watcher(self, thread_id: int, user_id: int | str) -> None:
        """Add one participant."""
        pass

    @abstractmethod
    async def remove_watcher(self, thread_id: int, user_id: int | str) -> None:
        """Remove one participant."""
        pass

    @abstractmethod
    async def post_message(self, thread_id: int, author_id: int | str, body: str) -> dict[str, Any]:
        """Post a message.

        Returns:
            Raw message with at least ``id``
        """
        pass
