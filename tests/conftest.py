"""Shared fixtures for task cache tests."""

import itertools

import pytest

from task_cache.backends.memory import MemoryBackend
from task_cache.engine import TaskCache
from task_cache.normalizer import RelationDirectory


class Clock:
    """Deterministic, strictly increasing timestamps."""

    def __init__(self) -> None:
        self._ticks = itertools.count(1)

    def __call__(self) -> str:
        return f"2024-05-01T10:{next(self._ticks):02d}:00+00:00"


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def directory() -> RelationDirectory:
    return RelationDirectory.from_mapping(
        {
            "users": [{"id": 1, "full_name": "Ada Lovelace"}, {"id": 2, "full_name": "Grace Hopper"}],
            "projects": [{"id": 10, "name": "Blog", "color": "#ff0000"}, {"id": 11, "name": "Docs", "color": "#00ff00"}],
            "statuses": [{"id": 100, "name": "todo", "color": "#cccccc"}, {"id": 101, "name": "done", "color": "#333333"}],
            "languages": [{"id": 7, "code": "en"}],
        }
    )


@pytest.fixture
def backend(directory: RelationDirectory, clock: Clock) -> MemoryBackend:
    backend = MemoryBackend(directory=directory, clock=clock)
    backend.seed(
        [
            {"id": 1, "title": "Write intro", "project_id": 10, "project_status_id": 100, "created_at": "2024-04-01T09:00:00+00:00"},
            {"id": 2, "title": "Edit draft", "project_id": 10, "project_status_id": 101, "created_at": "2024-04-02T09:00:00+00:00"},
            {"id": 41, "title": "Plan launch", "project_id": 11, "created_at": "2024-04-03T09:00:00+00:00"},
        ]
    )
    return backend


@pytest.fixture
def cache(backend: MemoryBackend, directory: RelationDirectory, clock: Clock) -> TaskCache:
    return TaskCache(backend, directory=directory, clock=clock, debounce_ms=20)
