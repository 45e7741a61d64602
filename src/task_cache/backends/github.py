"""GitHub REST API backend using PyGithub: issues as tasks, sub-issues as parents."""

import asyncio
from typing import Any

import structlog
from github import Auth, Github
from github.Issue import Issue
from github.Repository import Repository

from task_cache.backend import Backend

logger = structlog.get_logger()

OPEN = "open"
CLOSED = "closed"

# Task sort fields GitHub can order issues by.
SORTS = {"created_at": "created", "updated_at": "updated"}


class GitHubBackend(Backend):
    """GitHub-based backend using issues as tasks.

    The issue state doubles as the task status (``open``/``closed``), labels
    are the task's channels and the assignee login is ``assigned_to_id``.
    PyGithub is blocking, so every call runs in a worker thread.
    """

    def __init__(self, owner: str, repo: str, token: str | None = None) -> None:
        """Initialize GitHub backend.

        Args:
            owner: Repository owner
            repo: Repository name
            token: GitHub personal access token
        """
        self.owner = owner
        self.repo = repo
        self.token = token
        if not self.token:
            raise ValueError("GitHub token required")

        logger.debug("Initializing GitHub backend", owner=owner, repo=repo)
        self.client = Github(auth=Auth.Token(self.token))
        self.repository: Repository = self.client.get_repo(f"{owner}/{repo}")
        logger.info("GitHub backend initialized", owner=owner, repo=repo)

    @property
    def _requester(self) -> Any:
        return self.client._Github__requester

    def _issues_path(self, number: int) -> str:
        return f"/repos/{self.owner}/{self.repo}/issues/{number}"

    def _issue_to_raw(self, issue: Issue, parent_id: int | None = None) -> dict[str, Any]:
        """Convert a GitHub issue to a raw task shape."""
        state = issue.state.lower()
        raw: dict[str, Any] = {
            "id": issue.number,
            "title": issue.title,
            "notes": issue.body or "",
            "created_at": issue.created_at.isoformat() if issue.created_at else None,
            "updated_at": issue.updated_at.isoformat() if issue.updated_at else None,
            "channels": [label.name for label in issue.labels],
            "status": {"id": state, "name": state},
        }
        if issue.assignee is not None:
            raw["assigned_user"] = {"id": issue.assignee.login, "full_name": issue.assignee.name or issue.assignee.login}
        else:
            raw["assigned_to_id"] = None
        if issue.milestone is not None:
            raw["project"] = {"id": issue.milestone.number, "name": issue.milestone.title}
            if issue.milestone.due_on is not None:
                raw["delivery_date"] = issue.milestone.due_on.date().isoformat()
        if parent_id is not None:
            raw["parent_id"] = parent_id
        return raw

    def _parent_of(self, number: int) -> int | None:
        try:
            _, data = self._requester.requestJsonAndCheck("GET", f"{self._issues_path(number)}/parent")
        except Exception as e:
            logger.debug("No parent issue found", entity_id=number, error=str(e))
            return None
        return data["number"] if data else None

    def _set_parent(self, issue: Issue, parent_id: int | None) -> None:
        current = self._parent_of(issue.number)
        if current == parent_id:
            return
        if current is not None:
            logger.debug("Removing sub-issue link", parent=current, child=issue.number)
            self._requester.requestJsonAndCheck(
                "DELETE",
                f"{self._issues_path(current)}/sub_issue",
                input={"sub_issue_id": issue.id},
            )
        if parent_id is not None:
            logger.debug("Adding sub-issue link", parent=parent_id, child=issue.number)
            self._requester.requestJsonAndCheck(
                "POST",
                f"{self._issues_path(parent_id)}/sub_issues",
                input={"sub_issue_id": issue.id},
            )

    def _create_sync(self, fields: dict[str, Any]) -> dict[str, Any]:
        logger.info("Creating GitHub issue", title=fields.get("title"))
        assignee = fields.get("assigned_to_id")
        issue = self.repository.create_issue(
            title=fields["title"],
            body=fields.get("notes") or "",
            labels=list(fields.get("channels") or []),
            assignees=[assignee] if assignee else [],
        )
        parent_id = fields.get("parent_id")
        if parent_id is not None:
            self._set_parent(issue, parent_id)
        if fields.get("project_status_id") == CLOSED:
            issue.edit(state=CLOSED)
        logger.info("GitHub issue created", entity_id=issue.number)
        return self._issue_to_raw(issue, parent_id)

    def _update_sync(self, entity_id: int, fields: dict[str, Any]) -> dict[str, Any]:
        logger.info("Updating GitHub issue", entity_id=entity_id, fields=sorted(fields))
        issue = self.repository.get_issue(number=entity_id)

        edits: dict[str, Any] = {}
        if "title" in fields:
            edits["title"] = fields["title"]
        if "notes" in fields:
            edits["body"] = fields["notes"] or ""
        if fields.get("project_status_id") in (OPEN, CLOSED):
            edits["state"] = fields["project_status_id"]
        if edits:
            issue.edit(**edits)

        if "channels" in fields:
            issue.set_labels(*(fields["channels"] or []))

        if "assigned_to_id" in fields:
            for current in issue.assignees:
                issue.remove_from_assignees(current)
            if fields["assigned_to_id"]:
                issue.add_to_assignees(fields["assigned_to_id"])

        parent_id = None
        if "parent_id" in fields:
            parent_id = fields["parent_id"]
            self._set_parent(issue, parent_id)

        issue = self.repository.get_issue(number=entity_id)
        logger.info("GitHub issue updated successfully", entity_id=entity_id)
        return self._issue_to_raw(issue, parent_id)

    def _delete_sync(self, entity_id: int) -> None:
        logger.info("Deleting (closing) GitHub issue", entity_id=entity_id)
        self.repository.get_issue(number=entity_id).edit(state=CLOSED)

    def _fetch_sync(self, entity_id: int) -> dict[str, Any]:
        issue = self.repository.get_issue(number=entity_id)
        return self._issue_to_raw(issue, self._parent_of(entity_id))

    def _list_sync(
        self,
        filters: dict[str, Any] | None,
        sort_by: str | None,
        descending: bool,
        limit: int | None,
        offset: int,
    ) -> list[dict[str, Any]]:
        logger.info("Listing GitHub issues", filters=filters, sort_by=sort_by, limit=limit)
        state = "all"
        status = (filters or {}).get("project_status_id")
        if status in (OPEN, CLOSED):
            state = status

        issues = self.repository.get_issues(
            state=state,
            sort=SORTS.get(sort_by or "created_at", "created"),
            direction="desc" if descending else "asc",
        )
        raws: list[dict[str, Any]] = []
        skipped = 0
        for issue in issues:
            if issue.pull_request is not None:
                continue
            if skipped < offset:
                skipped += 1
                continue
            raws.append(self._issue_to_raw(issue))
            if limit and len(raws) >= limit:
                break
        logger.info("Listed GitHub issues", count=len(raws))
        return raws

    async def create(self, entity_type: str, fields: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._create_sync, fields)

    async def update(self, entity_id: int, fields: dict[str, Any]) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._update_sync, entity_id, fields)

    async def delete(self, entity_id: int) -> None:
        await asyncio.to_thread(self._delete_sync, entity_id)

    async def fetch_by_id(self, entity_id: int) -> dict[str, Any]:
        return await asyncio.to_thread(self._fetch_sync, entity_id)

    async def list_entities(
        self,
        filters: dict[str, Any] | None = None,
        sort_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._list_sync, filters, sort_by, descending, limit, offset)
