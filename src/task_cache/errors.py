"""Error taxonomy for the task cache."""

from typing import Any


class TaskCacheError(Exception):
    """Base class for task cache errors."""


class MalformedEntity(TaskCacheError):
    """Raw entity is missing required fields; the mutation is aborted before any cache is touched."""

    def __init__(self, message: str, raw: Any = None) -> None:
        super().__init__(message)
        self.raw = raw


class WriteFailed(TaskCacheError):
    """The backend rejected a change."""

    def __init__(self, message: str, intent: Any = None) -> None:
        super().__init__(message)
        self.intent = intent

    @classmethod
    def from_exception(cls, exc: BaseException, intent: Any = None, step: str | None = None) -> "WriteFailed":
        """Wrap a backend exception, keeping it as the cause."""
        where = f" in step '{step}'" if step else ""
        error = cls(f"Write failed{where}: {exc}", intent=intent)
        error.__cause__ = exc
        return error


class PartialCompositeFailure(TaskCacheError):
    """A composite mutation stopped after some of its steps had already committed."""

    def __init__(
        self,
        failed_steps: list[str],
        skipped_steps: list[str],
        committed_steps: list[str],
        errors: dict[str, Exception] | None = None,
    ) -> None:
        super().__init__(
            f"Composite mutation partially applied: failed={failed_steps} "
            f"skipped={skipped_steps} committed={committed_steps}"
        )
        self.failed_steps = failed_steps
        self.skipped_steps = skipped_steps
        self.committed_steps = committed_steps
        self.errors = errors or {}


class ReconciliationConflict(TaskCacheError):
    """A real entity arrived for a temp id that no longer exists anywhere."""


class ThreadValidationError(TaskCacheError):
    """A thread operation was refused locally."""
