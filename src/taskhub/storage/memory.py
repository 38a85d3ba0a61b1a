"""In-process storage backend without durability."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace
from datetime import timedelta
from typing import Any

from taskhub.models import Job, JobCounts, JobStatus, TaskMeta
from taskhub.storage.base import StorageBackend, StorageClosedError
from taskhub.storage.common import utc_now

_TASK_FIELDS = frozenset(TaskMeta.__slots__) - {"id", "created_at", "updated_at"}


class MemoryBackend(StorageBackend):
    """Dict-backed backend for tests and throwaway workloads.

    Every coroutine completes without suspending, so claims are atomic with
    respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, TaskMeta] = {}
        self._jobs: dict[str, Job] = {}
        self._jobs_by_task: dict[str, dict[str, None]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def initialize(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True
        self._tasks.clear()
        self._jobs.clear()
        self._jobs_by_task.clear()

    async def create_task(self, meta: TaskMeta) -> None:
        self._ensure_open()
        if meta.id in self._tasks:
            raise ValueError(f"Task already exists: {meta.id}")
        self._tasks[meta.id] = replace(meta)
        self._jobs_by_task.setdefault(meta.id, {})

    async def get_task(self, task_id: str) -> TaskMeta | None:
        self._ensure_open()
        meta = self._tasks.get(task_id)
        return replace(meta) if meta is not None else None

    async def update_task(self, task_id: str, **changes: Any) -> None:
        self._ensure_open()
        unknown = set(changes) - _TASK_FIELDS
        if unknown:
            raise ValueError(f"Unsupported task fields: {sorted(unknown)}")
        meta = self._tasks.get(task_id)
        if meta is None:
            return
        for name, value in changes.items():
            setattr(meta, name, value)
        meta.updated_at = utc_now()

    async def delete_task(self, task_id: str) -> None:
        self._ensure_open()
        self._tasks.pop(task_id, None)
        for job_id in self._jobs_by_task.pop(task_id, {}):
            self._jobs.pop(job_id, None)

    async def list_tasks(self) -> list[TaskMeta]:
        self._ensure_open()
        tasks = sorted(self._tasks.values(), key=lambda meta: meta.created_at, reverse=True)
        return [replace(meta) for meta in tasks]

    async def create_jobs(self, jobs: Sequence[Job]) -> int:
        self._ensure_open()
        inserted = 0
        for job in jobs:
            if job.id in self._jobs:
                continue
            self._jobs[job.id] = replace(job)
            self._jobs_by_task.setdefault(job.task_id, {})[job.id] = None
            inserted += 1
        return inserted

    async def get_job(self, job_id: str) -> Job | None:
        self._ensure_open()
        job = self._jobs.get(job_id)
        return replace(job) if job is not None else None

    async def get_jobs_by_task(
        self,
        task_id: str,
        status: JobStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        self._ensure_open()
        jobs = [
            job
            for job in self._iter_task_jobs(task_id)
            if status is None or job.status == status
        ]
        return [replace(job) for job in jobs[offset : offset + limit]]

    async def delete_jobs_by_task(self, task_id: str) -> None:
        self._ensure_open()
        for job_id in self._jobs_by_task.get(task_id, {}):
            self._jobs.pop(job_id, None)
        if task_id in self._jobs_by_task:
            self._jobs_by_task[task_id] = {}

    async def claim_jobs(self, task_id: str, limit: int) -> list[Job]:
        self._ensure_open()
        now = utc_now()
        claimed: list[Job] = []
        for job in self._iter_task_jobs(task_id):
            if len(claimed) >= limit:
                break
            if job.status != JobStatus.PENDING:
                continue
            if job.scheduled_at is not None and job.scheduled_at > now:
                continue
            job.status = JobStatus.ACTIVE
            job.attempts += 1
            job.started_at = now
            job.scheduled_at = None
            claimed.append(replace(job))
        return claimed

    async def complete_job(self, job_id: str, output: Any) -> None:
        self._ensure_open()
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.status = JobStatus.COMPLETED
        job.output = output
        job.error = None
        job.completed_at = utc_now()

    async def fail_job(
        self,
        job_id: str,
        error: str,
        can_retry: bool,
        retry_after_seconds: float | None = None,
    ) -> None:
        self._ensure_open()
        job = self._jobs.get(job_id)
        if job is None:
            return
        job.error = error
        if can_retry:
            now = utc_now()
            job.status = JobStatus.PENDING
            job.started_at = None
            job.scheduled_at = (
                now + timedelta(seconds=retry_after_seconds) if retry_after_seconds else None
            )
            return
        job.status = JobStatus.FAILED
        job.completed_at = utc_now()

    async def get_job_counts(self, task_id: str) -> JobCounts:
        self._ensure_open()
        counts = JobCounts()
        for job in self._iter_task_jobs(task_id):
            status = JobStatus(job.status).value
            setattr(counts, status, getattr(counts, status) + 1)
        return counts

    async def reset_active_jobs(self, task_id: str) -> int:
        self._ensure_open()
        reset = 0
        for job in self._iter_task_jobs(task_id):
            if job.status == JobStatus.ACTIVE:
                job.status = JobStatus.PENDING
                job.started_at = None
                reset += 1
        return reset

    async def reset_failed_jobs(self, task_id: str) -> int:
        self._ensure_open()
        reset = 0
        for job in self._iter_task_jobs(task_id):
            if job.status == JobStatus.FAILED:
                job.status = JobStatus.PENDING
                job.error = None
                job.completed_at = None
                job.scheduled_at = None
                job.attempts = 0
                reset += 1
        meta = self._tasks.get(task_id)
        if meta is not None and reset:
            meta.failed_jobs = max(0, meta.failed_jobs - reset)
            meta.updated_at = utc_now()
        return reset

    def _iter_task_jobs(self, task_id: str):
        for job_id in self._jobs_by_task.get(task_id, {}):
            job = self._jobs.get(job_id)
            if job is not None:
                yield job

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageClosedError()
