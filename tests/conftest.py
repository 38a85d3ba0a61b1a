"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest

from taskhub.core.hashing import hash_value, job_id
from taskhub.core.source import JobContext, TaskSource
from taskhub.models import Job, TaskMeta, TaskStatus, TaskType
from taskhub.storage import MemoryBackend, SqliteBackend
from taskhub.storage.common import utc_now

Handler = Callable[[Any, JobContext], Awaitable[Any]]


async def _echo(value: Any, context: JobContext) -> Any:
    return value


class FunctionSource(TaskSource):
    """Test source wrapping a plain coroutine handler and recording every call."""

    def __init__(
        self,
        data: Any,
        handler: Handler | None = None,
        *,
        retryable: Callable[[BaseException], bool] | None = None,
        rate_limited: Callable[[BaseException], bool] | None = None,
        job_id_fn: Callable[[Any], str] | None = None,
    ) -> None:
        self.data = data
        self._handler = handler or _echo
        self._retryable = retryable
        self._rate_limited = rate_limited
        self._job_id_fn = job_id_fn
        self.calls: list[Any] = []

    def get_data(self) -> Any:
        return self.data

    async def handler(self, input: Any, context: JobContext) -> Any:  # noqa: A002
        self.calls.append(input)
        return await self._handler(input, context)

    def get_job_id(self, input: Any) -> str:  # noqa: A002
        if self._job_id_fn is not None:
            return self._job_id_fn(input)
        return super().get_job_id(input)

    def is_retryable(self, error: BaseException) -> bool:
        if self._retryable is not None:
            return self._retryable(error)
        return super().is_retryable(error)

    def is_rate_limited(self, error: BaseException) -> bool:
        if self._rate_limited is not None:
            return self._rate_limited(error)
        return super().is_rate_limited(error)


class StatusError(Exception):
    """Handler error carrying an HTTP-like status code."""

    def __init__(self, message: str, status: int) -> None:
        super().__init__(message)
        self.status = status


@pytest.fixture()
def make_source() -> type[FunctionSource]:
    return FunctionSource


@pytest.fixture()
def status_error() -> type[StatusError]:
    return StatusError


@pytest.fixture()
async def memory_storage():
    storage = MemoryBackend()
    await storage.initialize()
    yield storage
    if not storage.closed:
        await storage.close()


@pytest.fixture()
async def sqlite_storage(tmp_path: Path):
    storage = SqliteBackend(tmp_path / "taskhub.db")
    await storage.initialize()
    yield storage
    await storage.close()


@pytest.fixture()
def seed_jobs():
    """Write a task row plus one pending job per input, bypassing the hub."""

    async def _seed(storage, inputs: list[Any], task_id: str = "task-1") -> list[Job]:
        now = utc_now()
        await storage.create_task(
            TaskMeta(
                id=task_id,
                name="seeded",
                type=TaskType.DETERMINISTIC,
                merkle_root=None,
                status=TaskStatus.IDLE,
                total_jobs=len(inputs),
                completed_jobs=0,
                failed_jobs=0,
                created_at=now,
                updated_at=now,
            ),
        )
        jobs = [
            Job(
                id=job_id(task_id, hash_value(value)),
                task_id=task_id,
                input=value,
                created_at=now,
            )
            for value in inputs
        ]
        await storage.create_jobs(jobs)
        return jobs

    return _seed
