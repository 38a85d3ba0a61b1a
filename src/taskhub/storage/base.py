"""Persistence contract consumed by the dispatcher, tasks and hub."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from taskhub.models import Job, JobCounts, JobStatus, TaskMeta

CLOSED_SENTINEL = "closed"


class StorageClosedError(RuntimeError):
    """Backend is closed or unavailable; callers treat it as a clean-stop signal."""

    def __init__(self, message: str = "Storage backend is closed") -> None:
        super().__init__(message)


def is_storage_closed(error: BaseException) -> bool:
    """True for the one backend error that signals graceful shutdown."""

    if isinstance(error, StorageClosedError):
        return True
    return CLOSED_SENTINEL in str(error).lower()


class StorageBackend(ABC):
    """Durable store of record for task metadata and jobs.

    ``claim_jobs`` must be atomic: concurrent callers never receive
    overlapping jobs. Any method may raise an error whose message contains
    "closed" once the backend is unavailable.
    """

    @abstractmethod
    async def initialize(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def create_task(self, meta: TaskMeta) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_task(self, task_id: str) -> TaskMeta | None:
        raise NotImplementedError

    @abstractmethod
    async def update_task(self, task_id: str, **changes: Any) -> None:
        """Update named ``TaskMeta`` fields and bump ``updated_at``."""
        raise NotImplementedError

    @abstractmethod
    async def delete_task(self, task_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def list_tasks(self) -> list[TaskMeta]:
        """All tasks, newest first."""
        raise NotImplementedError

    @abstractmethod
    async def create_jobs(self, jobs: Sequence[Job]) -> int:
        """Bulk insert; duplicate ids are skipped. Returns the inserted count."""
        raise NotImplementedError

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        raise NotImplementedError

    @abstractmethod
    async def get_jobs_by_task(
        self,
        task_id: str,
        status: JobStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        raise NotImplementedError

    @abstractmethod
    async def delete_jobs_by_task(self, task_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def claim_jobs(self, task_id: str, limit: int) -> list[Job]:
        """Move up to ``limit`` ready pending jobs to active and return them.

        A job is ready when it has no ``scheduled_at`` or it is in the past.
        Claiming increments ``attempts``.
        """
        raise NotImplementedError

    @abstractmethod
    async def complete_job(self, job_id: str, output: Any) -> None:
        raise NotImplementedError

    @abstractmethod
    async def fail_job(
        self,
        job_id: str,
        error: str,
        can_retry: bool,
        retry_after_seconds: float | None = None,
    ) -> None:
        """Record a failure: back to pending when ``can_retry``, else terminal."""
        raise NotImplementedError

    @abstractmethod
    async def get_job_counts(self, task_id: str) -> JobCounts:
        raise NotImplementedError

    @abstractmethod
    async def reset_active_jobs(self, task_id: str) -> int:
        raise NotImplementedError

    @abstractmethod
    async def reset_failed_jobs(self, task_id: str) -> int:
        raise NotImplementedError
