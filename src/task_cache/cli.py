"""CLI for task-cache."""

import asyncio
from typing import Annotated, Any, Literal

import structlog
from cyclopts import App, Parameter

from task_cache.config import get_config
from task_cache.config_commands import config_app
from task_cache.engine import TaskCache
from task_cache.errors import PartialCompositeFailure
from task_cache.models import Committed, MutationResult, PartiallyCommitted, UserRef, ViewEntity, parse_id
from task_cache.views import GroupBy, SortOrder, board_view, list_view

logger = structlog.get_logger()

app = App(
    help="Task Cache - optimistic task views over a task backend",
)

app.command(config_app)


def configure_logging(log_level: str) -> None:
    """Configure structlog with the specified log level."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(min_level=log_level.lower()))


def get_cache() -> TaskCache:
    return TaskCache.from_config(get_config())


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _task_fields(
    notes: str | None = None,
    status: str | None = None,
    assignee: str | None = None,
    project: str | None = None,
    channels: str | None = None,
    due: str | None = None,
) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if notes is not None:
        fields["notes"] = notes
    if status is not None:
        fields["project_status_id"] = status
    if assignee is not None:
        fields["assigned_to_id"] = assignee
    if project is not None:
        fields["project_id"] = project
    if channels is not None:
        fields["channels"] = _split(channels)
    if due is not None:
        fields["delivery_date"] = due
    return fields


def _format(entity: ViewEntity) -> str:
    status = entity.get("project_status_name") or entity.get("project_status_id")
    marker = "○" if status in ("closed", "done") else "●"
    parent = f" (parent {entity.get('parent_id')})" if entity.get("parent_id") is not None else ""
    channels = f" [{', '.join(entity.get('channels'))}]" if entity.get("channels") else ""
    return f"{marker} {entity.id}: {entity.get('title')}{parent}{channels}"


def _report(result: MutationResult, verb: str) -> bool:
    if isinstance(result, Committed):
        if result.entity is not None:
            print(f"{verb} task {result.entity.id}: {result.entity.get('title')}")
        else:
            print(f"{verb} task")
        for entity in result.related[1:]:
            print(f"  and task {entity.id}: {entity.get('title')}")
        return True
    if isinstance(result, PartiallyCommitted) and isinstance(result.error, PartialCompositeFailure):
        print(f"Partially applied: committed {', '.join(result.error.committed_steps)}")
        print(f"  failed: {', '.join(result.error.failed_steps)}")
        if result.error.skipped_steps:
            print(f"  skipped: {', '.join(result.error.skipped_steps)}")
        return False
    print(f"Failed: {result.error}")
    return False


@app.command
def create(
    title: str,
    notes: str | None = None,
    status: str | None = None,
    assignee: str | None = None,
    project: str | None = None,
    channels: str | None = None,
    due: str | None = None,
    parent: str | None = None,
) -> None:
    """Create a new task."""

    async def run() -> None:
        cache = get_cache()
        fields = _task_fields(notes, status, assignee, project, channels, due)
        if parent is not None:
            fields["parent_id"] = parse_id(parent)
        _report(await cache.create_task(title, **fields), "Created")

    asyncio.run(run())


@app.command
def update(
    entity_id: str,
    title: str | None = None,
    notes: str | None = None,
    status: str | None = None,
    assignee: str | None = None,
    project: str | None = None,
    channels: str | None = None,
    due: str | None = None,
) -> None:
    """Update a task."""

    async def run() -> None:
        cache = get_cache()
        fields = _task_fields(notes, status, assignee, project, channels, due)
        if title is not None:
            fields["title"] = title
        _report(await cache.update_task(parse_id(entity_id), **fields), "Updated")

    asyncio.run(run())


@app.command
def reparent(entity_id: str, parent: str | None = None) -> None:
    """Move a task under another task, or to the top level when no parent is given."""

    async def run() -> None:
        cache = get_cache()
        parent_id = parse_id(parent) if parent is not None else None
        _report(await cache.reparent_task(parse_id(entity_id), parent_id), "Moved")

    asyncio.run(run())


@app.command
def move(entity_id: str, position: int) -> None:
    """Move a task to a 1-based position among its siblings."""

    async def run() -> None:
        cache = get_cache()
        _report(await cache.move_task(parse_id(entity_id), position), "Moved")

    asyncio.run(run())


@app.command
def delete(*entity_ids: str) -> None:
    """Delete one or more tasks."""

    async def run() -> None:
        cache = get_cache()
        results = await asyncio.gather(*(cache.delete_task(parse_id(entity_id)) for entity_id in entity_ids))
        deleted = sum(1 for result in results if result.ok)
        for result in results:
            if not result.ok:
                print(f"Failed: {result.error}")
        print(f"Deleted {deleted} task(s)")

    asyncio.run(run())


@app.command
def promote(entity_id: str, parent_title: str | None = None, child_title: str | None = None) -> None:
    """Turn a task into a parent with the task and a new sibling under it."""

    async def run() -> None:
        cache = get_cache()
        task_id = parse_id(entity_id)
        # The task's own fields seed the new parent and child.
        raw = await cache.backend.fetch_by_id(task_id.value)
        cache.register_view(list_view(page_size=None), [raw])
        parent_fields = {"title": parent_title} if parent_title else None
        child_fields = {"title": child_title} if child_title else None
        _report(await cache.promote_task(task_id, parent_fields, child_fields), "Promoted")

    asyncio.run(run())


@app.command
def list(
    filter: str | None = None,
    sort: str = "created_at",
    ascending: bool = False,
    limit: int | None = None,
) -> None:
    """List tasks with optional filtering (field=value,...), sorting, and limiting."""

    async def run() -> None:
        cache = get_cache()
        filters = {}
        for part in _split(filter):
            if "=" in part:
                key, value = part.split("=", 1)
                filters[key.strip()] = value.strip()
        order = SortOrder.ASC if ascending else SortOrder.DESC
        handle = cache.register_view(list_view(filters, sort, order, page_size=limit or cache.page_size))
        rows = await cache.refresh(handle)
        print(f"Found {len(rows)} task(s):\n")
        for entity in rows:
            print(_format(entity))

    asyncio.run(run())


@app.command
def board(
    group_by: Literal[
        "assigned_to",
        "status",
        "project",
        "content_type",
        "production_type",
        "language",
        "delivery_date",
        "publication_date",
        "channels",
    ] = "status",
    sort: str = "created_at",
    ascending: bool = False,
) -> None:
    """Show tasks as a kanban board."""

    async def run() -> None:
        cache = get_cache()
        order = SortOrder.ASC if ascending else SortOrder.DESC
        handle = cache.register_view(board_view(GroupBy(group_by), sort, order))
        await cache.refresh(handle)
        for key, column in handle.columns().items():
            print(f"== {key} ({len(column)})")
            for entity in column:
                print(f"  {_format(entity)}")

    asyncio.run(run())


@app.command
def comment(entity_id: str, body: str, author: str, participants: str | None = None) -> None:
    """Post a comment on a task, creating its thread if needed.

    Args:
        entity_id: Task to comment on
        body: Comment text
        author: Acting user id
        participants: Comma separated user ids watching the new thread
    """

    async def run() -> None:
        cache = get_cache()
        users = [UserRef(id=user) for user in _split(participants)]
        session = cache.thread_session(parse_id(entity_id), UserRef(id=author), users)
        session.errors.subscribe(lambda error: print(f"Failed: {error}"))
        message = await session.send_message(body)
        if message is not None:
            print(f"Posted comment {message.id} on task {entity_id}")

    asyncio.run(run())


@app.meta.default
def main(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    log_level: Literal["debug", "info", "warning", "error", "critical"] = "critical",
) -> None:
    """Main entry point with global options."""
    configure_logging(log_level)
    app(tokens)


if __name__ == "__main__":
    app.meta()
