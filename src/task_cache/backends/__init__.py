"""Backend implementations."""

from pathlib import Path

from task_cache.backend import Backend
from task_cache.backends.github import GitHubBackend
from task_cache.backends.memory import MemoryBackend
from task_cache.config import Config, get_config

__all__ = ["GitHubBackend", "MemoryBackend", "get_backend"]


def get_backend(config: Config | None = None) -> Backend:
    """Build the configured backend."""
    config = config or get_config()
    backend_type = config.get("backend")

    if backend_type == "github":
        owner = config.get("github.owner")
        repo = config.get("github.repository")
        token = config.get("github.token")

        if not owner or not repo:
            raise ValueError(
                "GitHub owner and repo not configured. Set them using:\n"
                "  task-cache config set github.owner <owner>\n"
                "  task-cache config set github.repository <repo>"
            )
        return GitHubBackend(owner=owner, repo=repo, token=token)
    elif backend_type == "memory":
        path = config.get("memory.path")
        return MemoryBackend(path=Path(path) if path else None)
    else:
        raise ValueError(f"Unknown backend: {backend_type}")
