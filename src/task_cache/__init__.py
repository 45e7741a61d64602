"""Optimistic mutations and coherent view caches for task dashboards."""

from task_cache.engine import TaskCache
from task_cache.models import Committed, MutationIntent, PartiallyCommitted, RealId, RolledBack, TempId, ViewEntity

__all__ = [
    "Committed",
    "MutationIntent",
    "PartiallyCommitted",
    "RealId",
    "RolledBack",
    "TaskCache",
    "TempId",
    "ViewEntity",
]
