"""Exception taxonomy for task orchestration."""

from __future__ import annotations


class TaskHubError(RuntimeError):
    """Base error for the task hub."""


class InvalidTaskStateError(TaskHubError):
    """Operation is not legal in the task's current state."""


class DuplicateTaskError(TaskHubError):
    """A task with the same deterministic id already exists."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task already exists: {task_id}")
        self.task_id = task_id


class JobTimeoutError(TaskHubError):
    """Job handler did not settle within the configured timeout."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Job timeout after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class JobCancelledError(TaskHubError):
    """Handler observed its cancellation token and aborted."""
