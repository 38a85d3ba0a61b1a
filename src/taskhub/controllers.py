"""Controllers for task hub CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskhub.config import Settings
from taskhub.core.hub import Hub
from taskhub.models import Job, JobStatus, TaskStatus
from taskhub.storage import SqliteBackend

_PREVIEW_CHARS = 120


@dataclass(slots=True)
class TasksListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskResultsCommand:
    """CLI input for job results listing."""

    db_path: Path | None
    task_id: str
    status: str | None
    limit: int
    offset: int


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for retry-failed/recover/delete operations."""

    db_path: Path | None
    task_id: str


class TaskhubCliController:
    """Adapts CLI commands to hub operations and renders text lines."""

    def list_tasks(self, command: TasksListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_task_status(command.status)
        tasks = asyncio.run(_list_tasks(settings))
        if status_filter is not None:
            tasks = [meta for meta in tasks if meta.status == status_filter]
        tasks = tasks[: command.limit]

        lines = [f"Tasks: {len(tasks)}"]
        for meta in tasks:
            lines.append(
                f"  {meta.id} name={meta.name} type={meta.type.value} "
                f"status={meta.status.value} jobs={meta.completed_jobs}/{meta.total_jobs} "
                f"failed={meta.failed_jobs} created_at={meta.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        details = asyncio.run(_inspect_task(settings, command.task_id))
        if details is None:
            return [f"Task not found: {command.task_id}"]

        meta, counts = details
        return [
            f"Task: {meta.id}",
            f"Name: {meta.name}",
            f"Type: {meta.type.value}",
            f"Status: {meta.status.value}",
            f"Merkle root: {meta.merkle_root or '-'}",
            f"Total jobs: {meta.total_jobs}",
            f"Pending: {counts.pending}",
            f"Active: {counts.active}",
            f"Completed: {counts.completed}",
            f"Failed: {counts.failed}",
            f"Created: {meta.created_at.isoformat()}",
            f"Updated: {meta.updated_at.isoformat()}",
        ]

    def results(self, command: TaskResultsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_job_status(command.status)
        jobs = asyncio.run(
            _job_results(
                settings,
                task_id=command.task_id,
                status=status_filter,
                limit=command.limit,
                offset=command.offset,
            ),
        )
        if jobs is None:
            return [f"Task not found: {command.task_id}"]

        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(_render_job(job) for job in jobs)
        return lines

    def retry_failed(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        reset = asyncio.run(_retry_failed(settings, command.task_id))
        if reset is None:
            return [f"Task not found: {command.task_id}"]
        return [f"Failed jobs reset to pending: {reset} (task {command.task_id})"]

    def recover(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        reset = asyncio.run(_recover(settings, command.task_id))
        if reset is None:
            return [f"Task not found: {command.task_id}"]
        return [f"Active jobs reset to pending: {reset} (task {command.task_id})"]

    def delete_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        deleted = asyncio.run(_delete_task(settings, command.task_id))
        if not deleted:
            return [f"Task not found: {command.task_id}"]
        return [f"Task deleted: {command.task_id}"]


async def _list_tasks(settings: Settings):
    async with _hub(settings) as hub:
        return await hub.list_tasks()


async def _inspect_task(settings: Settings, task_id: str):
    async with _hub(settings) as hub:
        meta = await hub.storage.get_task(task_id)
        if meta is None:
            return None
        counts = await hub.storage.get_job_counts(task_id)
    return meta, counts


async def _job_results(
    settings: Settings,
    *,
    task_id: str,
    status: JobStatus | None,
    limit: int,
    offset: int,
) -> list[Job] | None:
    async with _hub(settings) as hub:
        task = await hub.get_task(task_id)
        if task is None:
            return None
        return await task.get_results(status=status, limit=limit, offset=offset)


async def _retry_failed(settings: Settings, task_id: str) -> int | None:
    async with _hub(settings) as hub:
        if await hub.storage.get_task(task_id) is None:
            return None
        return await hub.reset_failed_jobs(task_id)


async def _recover(settings: Settings, task_id: str) -> int | None:
    async with _hub(settings) as hub:
        return await hub.recover_task(task_id)


async def _delete_task(settings: Settings, task_id: str) -> bool:
    async with _hub(settings) as hub:
        if await hub.storage.get_task(task_id) is None:
            return False
        await hub.delete_task(task_id)
        return True


@asynccontextmanager
async def _hub(settings: Settings) -> AsyncIterator[Hub]:
    hub = Hub(
        SqliteBackend(settings.db_path, busy_timeout_ms=settings.storage.busy_timeout_ms),
        settings=settings,
    )
    await hub.initialize()
    try:
        yield hub
    finally:
        await hub.close()


def _render_job(job: Job) -> str:
    parts = [f"  {job.id} status={job.status.value} attempts={job.attempts}"]
    if job.output is not None:
        parts.append(f"output={_preview(job.output)}")
    if job.error:
        parts.append(f"error={job.error}")
    return " ".join(parts)


def _preview(value: Any) -> str:
    text = json.dumps(value, ensure_ascii=False, sort_keys=True)
    if len(text) <= _PREVIEW_CHARS:
        return text
    return text[: _PREVIEW_CHARS - 3] + "..."


def _parse_task_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _parse_job_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())
