"""In-process backend with optional YAML persistence and failure injection."""

import asyncio
import inspect
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import structlog
import yaml

from task_cache.backend import Backend, ThreadBackend
from task_cache.normalizer import RELATIONS, RelationDirectory

logger = structlog.get_logger()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MemoryBackend(Backend, ThreadBackend):
    """Backend keeping tasks, threads and messages in dictionaries.

    Rows are stored flat. Returned shapes carry nested relation records
    (``projects: {id, name, color}`` and so on) built from the relation
    directory, the way a joined backend query answers.

    For tests, ``fail_next`` makes the next call of an operation raise and
    ``hold`` makes it wait until released, so response order can be chosen.
    """

    def __init__(
        self,
        path: Path | None = None,
        directory: RelationDirectory | None = None,
        latency: float = 0.0,
        clock: Callable[[], str] = _now,
    ) -> None:
        """Initialize the memory backend.

        Args:
            path: YAML file to load from and save to after every write
            directory: Related records used to build nested relation objects
            latency: Seconds every call sleeps before answering
            clock: Timestamp source for created_at and updated_at
        """
        self.path = Path(path) if path is not None else None
        self.directory = directory or RelationDirectory()
        self.latency = latency
        self.clock = clock
        self.rows: dict[int, dict[str, Any]] = {}
        self.threads: dict[int, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._next_id = 1
        self._next_thread_id = 1
        self._next_message_id = 1
        self._failures: dict[str, list[Exception]] = {}
        self._gates: dict[str, list[asyncio.Event]] = {}
        self._procedures: dict[str, Callable[..., Any]] = {"move_task": MemoryBackend._move_task}
        if self.path is not None and self.path.exists():
            self._load()
        logger.debug("Memory backend initialized", path=str(self.path) if self.path else None, rows=len(self.rows))

    def seed(self, rows: list[dict[str, Any]]) -> None:
        """Insert rows directly, keeping their ids when present."""
        for row in rows:
            row = dict(row)
            entity_id = int(row.pop("id", None) or self._next_id)
            row.setdefault("created_at", self.clock())
            self.rows[entity_id] = {"id": entity_id, **row}
            self._next_id = max(self._next_id, entity_id + 1)
        self._save()

    def fail_next(self, operation: str, error: Exception | None = None) -> None:
        """Make the next call of ``operation`` raise ``error``."""
        self._failures.setdefault(operation, []).append(error or RuntimeError(f"{operation} failed"))

    def hold(self, operation: str) -> asyncio.Event:
        """Make the next call of ``operation`` wait until the returned event is set."""
        event = asyncio.Event()
        self._gates.setdefault(operation, []).append(event)
        return event

    def register_rpc(self, name: str, handler: Callable[..., Any]) -> None:
        """Register a procedure for ``rpc``; it receives this backend and the payload."""
        self._procedures[name] = handler

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    async def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        gates = self._gates.get(operation)
        if gates:
            await gates.pop(0).wait()
        if self.latency:
            await asyncio.sleep(self.latency)
        failures = self._failures.get(operation)
        if failures:
            error = failures.pop(0)
            logger.debug("Injected failure", operation=operation, error=str(error))
            raise error

    def _shape(self, row: dict[str, Any]) -> dict[str, Any]:
        out = dict(row)
        for rel in RELATIONS:
            key = row.get(rel.key)
            if key is None:
                continue
            attrs = {attr: self.directory.lookup(rel.table, key, attr) for _, attr in rel.fields}
            if any(value is not None for value in attrs.values()):
                out[rel.nested[0]] = {"id": key, **attrs}
        return out

    def _row(self, entity_id: int) -> dict[str, Any]:
        row = self.rows.get(int(entity_id))
        if row is None:
            raise KeyError(f"Task {entity_id} not found")
        return row

    async def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create", entity_type, fields)
        if not fields.get("title"):
            raise ValueError("Task title is required")
        entity_id = self._next_id
        self._next_id += 1
        now = self.clock()
        row = {"id": entity_id, **fields, "created_at": now, "updated_at": now}
        self.rows[entity_id] = row
        self._save()
        logger.info("Task created", entity_id=entity_id, title=fields.get("title"))
        return self._shape(row)

    async def update(self, entity_id: int, fields: dict[str, Any]) -> dict[str, Any] | None:
        await self._enter("update", entity_id, fields)
        row = self._row(entity_id)
        row.update(fields)
        row["updated_at"] = self.clock()
        self._save()
        logger.info("Task updated", entity_id=entity_id, fields=sorted(fields))
        return self._shape(row)

    async def delete(self, entity_id: int) -> None:
        await self._enter("delete", entity_id)
        self._row(entity_id)
        del self.rows[int(entity_id)]
        self._save()
        logger.info("Task deleted", entity_id=entity_id)

    async def fetch_by_id(self, entity_id: int) -> dict[str, Any]:
        await self._enter("fetch_by_id", entity_id)
        return self._shape(self._row(entity_id))

    async def list_entities(
        self,
        filters: dict[str, Any] | None = None,
        sort_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        await self._enter("list_entities", filters, sort_by)
        rows = list(self.rows.values())
        for name, allowed in (filters or {}).items():
            allowed = allowed if isinstance(allowed, (list, tuple, set, frozenset)) else [allowed]
            rows = [row for row in rows if row.get(name) in allowed]

        if sort_by:
            present = [row for row in rows if row.get(sort_by) is not None]
            missing = [row for row in rows if row.get(sort_by) is None]
            present.sort(key=lambda row: (row[sort_by], row["id"]), reverse=descending)
            rows = present + missing
        else:
            rows.sort(key=lambda row: row["id"])

        rows = rows[offset:]
        if limit is not None:
            rows = rows[:limit]
        logger.debug("Listed tasks", count=len(rows), filters=filters, sort_by=sort_by)
        return [self._shape(row) for row in rows]

    async def rpc(self, name: str, payload: dict[str, Any]) -> Any:
        await self._enter("rpc", name, payload)
        handler = self._procedures.get(name)
        if handler is None:
            raise KeyError(f"Unknown procedure '{name}'")
        result = handler(self, payload)
        if inspect.isawaitable(result):
            result = await result
        self._save()
        return result

    def _move_task(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        """Move a task to a 1-based position among its siblings and renumber them.

        Returns:
            Every sibling whose position changed, moved task included
        """
        task = self._row(payload["task_id"])
        siblings = [
            row for row in self.rows.values() if row is not task and row.get("parent_id") == task.get("parent_id")
        ]
        siblings.sort(key=lambda row: (row.get("position") is None, row.get("position") or 0, row["id"]))
        index = min(max(int(payload["position"]) - 1, 0), len(siblings))
        siblings.insert(index, task)
        changed = []
        for position, row in enumerate(siblings, start=1):
            if row.get("position") != position:
                row["position"] = position
                row["updated_at"] = self.clock()
                changed.append(row)
        logger.info("Task moved", entity_id=task["id"], position=index + 1, renumbered=len(changed))
        return [self._shape(row) for row in changed]

    async def create_thread(self, entity_id: int, created_by: int | str) -> dict[str, Any]:
        await self._enter("create_thread", entity_id, created_by)
        self._row(entity_id)
        thread_id = self._next_thread_id
        self._next_thread_id += 1
        thread = {"id": thread_id, "entity_id": entity_id, "created_by": created_by, "watchers": [created_by], "messages": []}
        self.threads[thread_id] = thread
        self._save()
        logger.info("Thread created", thread_id=thread_id, entity_id=entity_id)
        return {"id": thread_id, "entity_id": entity_id}

    def _thread(self, thread_id: int) -> dict[str, Any]:
        thread = self.threads.get(int(thread_id))
        if thread is None:
            raise KeyError(f"Thread {thread_id} not found")
        return thread

    async def add_watchers(self, thread_id: int, user_ids: list[int | str], added_by: int | str) -> None:
        await self._enter("add_watchers", thread_id, list(user_ids), added_by)
        thread = self._thread(thread_id)
        for user_id in user_ids:
            if user_id not in thread["watchers"]:
                thread["watchers"].append(user_id)
        self._save()

    async def add_watcher(self, thread_id: int, user_id: int | str) -> None:
        await self._enter("add_watcher", thread_id, user_id)
        thread = self._thread(thread_id)
        if user_id not in thread["watchers"]:
            thread["watchers"].append(user_id)
        self._save()

    async def remove_watcher(self, thread_id: int, user_id: int | str) -> None:
        await self._enter("remove_watcher", thread_id, user_id)
        thread = self._thread(thread_id)
        if user_id in thread["watchers"]:
            thread["watchers"].remove(user_id)
        self._save()

    async def post_message(self, thread_id: int, author_id: int | str, body: str) -> dict[str, Any]:
        await self._enter("post_message", thread_id, author_id, body)
        thread = self._thread(thread_id)
        message = {
            "id": self._next_message_id,
            "thread_id": int(thread_id),
            "author_id": author_id,
            "body": body,
            "created_at": self.clock(),
        }
        self._next_message_id += 1
        thread["messages"].append(message)
        self._save()
        return dict(message)

    def _load(self) -> None:
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            logger.error("Failed to load memory backend state", path=str(self.path), error=str(e))
            raise ValueError(f"Failed to load state from {self.path}: {e}") from e
        self.rows = {int(row["id"]): row for row in data.get("tasks", [])}
        self.threads = {int(thread["id"]): thread for thread in data.get("threads", [])}
        self._next_id = max(self.rows, default=0) + 1
        self._next_thread_id = max(self.threads, default=0) + 1
        messages = [m["id"] for thread in self.threads.values() for m in thread.get("messages", [])]
        self._next_message_id = max(messages, default=0) + 1
        if data.get("directory"):
            self.directory = RelationDirectory.from_mapping(data["directory"])

    def _save(self) -> None:
        if self.path is None:
            return
        data: dict[str, Any] = {
            "tasks": list(self.rows.values()),
            "threads": list(self.threads.values()),
        }
        try:
            if self.path.exists():
                with open(self.path, "r") as f:
                    existing = yaml.safe_load(f) or {}
                if existing.get("directory"):
                    data["directory"] = existing["directory"]
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        except Exception as e:
            logger.error("Failed to save memory backend state", path=str(self.path), error=str(e))
            raise ValueError(f"Failed to save state to {self.path}: {e}") from e
