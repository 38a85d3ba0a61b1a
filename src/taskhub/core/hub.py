"""Task registry: creation with content-derived ids, lookup and recovery."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from taskhub.config import Settings
from taskhub.core import hashing
from taskhub.core.source import TaskSource, input_hash, is_finite_data
from taskhub.core.task import Task
from taskhub.errors import DuplicateTaskError
from taskhub.models import (
    AimdConfig,
    RetryConfig,
    TaskConfig,
    TaskCreate,
    TaskMeta,
    TaskStatus,
    TaskType,
)
from taskhub.storage import StorageBackend, create_storage_backend
from taskhub.storage.common import utc_now

logger = logging.getLogger(__name__)


class Hub:
    """Factory and registry for tasks sharing one storage backend."""

    def __init__(self, storage: StorageBackend, *, settings: Settings | None = None) -> None:
        self.storage = storage
        self.settings = settings or Settings()
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self.storage.initialize()
            self._initialized = True

    async def close(self) -> None:
        await self.storage.close()
        self._initialized = False

    async def create_task(self, options: TaskCreate) -> Task:
        """Persist a new task and ingest its source, if one is given.

        A finite source makes the task deterministic: its id is derived from
        the name and the Merkle root of the input hashes, so re-submitting
        the same workload is detected as ``DuplicateTaskError``. If ingestion
        fails the task row and any jobs already written are removed before
        the error is re-raised.
        """

        await self.initialize()

        source = options.source
        data = None
        root: str | None = None
        if source is not None:
            data = source.get_data()
            if is_finite_data(data):
                root = hashing.merkle_root([input_hash(source, item) for item in data])

        task_id = hashing.task_id(options.name, root)
        if await self.storage.get_task(task_id) is not None:
            raise DuplicateTaskError(task_id)

        now = utc_now()
        meta = TaskMeta(
            id=task_id,
            name=options.name,
            type=TaskType.DETERMINISTIC if root is not None else TaskType.DYNAMIC,
            merkle_root=root,
            status=TaskStatus.IDLE,
            total_jobs=0,
            completed_jobs=0,
            failed_jobs=0,
            created_at=now,
            updated_at=now,
        )
        await self.storage.create_task(meta)
        task = self._build_task(
            meta,
            aimd=options.aimd,
            retry=options.retry,
            timeout_seconds=options.timeout_seconds,
        )

        if source is not None:
            try:
                await task.set_source(source, data=data)
            except Exception:
                logger.warning("Ingestion failed for task %s; rolling back", task_id)
                await self.storage.delete_jobs_by_task(task_id)
                await self.storage.delete_task(task_id)
                raise

        logger.info("Created task %s (%s, %d jobs)", task_id, options.name, meta.total_jobs)
        return task

    async def get_task(self, task_id: str) -> Task | None:
        await self.initialize()
        meta = await self.storage.get_task(task_id)
        if meta is None:
            return None
        return self._build_task(meta)

    async def list_tasks(self) -> list[TaskMeta]:
        await self.initialize()
        return await self.storage.list_tasks()

    async def delete_task(self, task_id: str) -> None:
        await self.initialize()
        await self.storage.delete_jobs_by_task(task_id)
        await self.storage.delete_task(task_id)
        logger.info("Deleted task %s", task_id)

    async def find_task_by_merkle_root(self, root: str) -> Task | None:
        await self.initialize()
        for meta in await self.storage.list_tasks():
            if meta.merkle_root == root:
                return self._build_task(meta)
        return None

    async def resume_task(
        self,
        task_id: str,
        source: TaskSource,
        *,
        aimd: AimdConfig | None = None,
        retry: RetryConfig | None = None,
        timeout_seconds: float | None = None,
    ) -> Task | None:
        """Rebind a persisted task to a freshly supplied source after a crash.

        Jobs stuck in ``active`` go back to ``pending`` and a ``running``
        status is demoted to ``paused``. Inputs are not re-ingested.
        """

        if await self.recover_task(task_id) is None:
            return None
        meta = await self.storage.get_task(task_id)
        if meta is None:
            return None

        task = self._build_task(meta, aimd=aimd, retry=retry, timeout_seconds=timeout_seconds)
        task.set_source_for_resume(source)
        logger.info("Resumed task %s", task_id)
        return task

    async def recover_task(self, task_id: str) -> int | None:
        """Reset jobs stuck in ``active`` and demote a ``running`` task to ``paused``.

        Returns the number of jobs reset, or None when the task does not exist.
        """

        await self.initialize()
        meta = await self.storage.get_task(task_id)
        if meta is None:
            return None

        reset = await self.storage.reset_active_jobs(task_id)
        if meta.status == TaskStatus.RUNNING:
            await self.storage.update_task(task_id, status=TaskStatus.PAUSED)
        if reset:
            logger.info("Recovered task %s; %d active job(s) returned to pending", task_id, reset)
        return reset

    async def reset_failed_jobs(self, task_id: str) -> int:
        """Return terminally failed jobs to ``pending`` for a manual retry sweep.

        A completed task with reset jobs is reopened as ``paused`` so it can
        be resumed.
        """

        await self.initialize()
        reset = await self.storage.reset_failed_jobs(task_id)
        if reset:
            meta = await self.storage.get_task(task_id)
            if meta is not None and meta.status == TaskStatus.COMPLETED:
                await self.storage.update_task(task_id, status=TaskStatus.PAUSED)
            logger.info("Reset %d failed job(s) of task %s", reset, task_id)
        return reset

    def _build_task(
        self,
        meta: TaskMeta,
        *,
        aimd: AimdConfig | None = None,
        retry: RetryConfig | None = None,
        timeout_seconds: float | None = None,
    ) -> Task:
        config = TaskConfig(
            name=meta.name,
            aimd=aimd or replace(self.settings.aimd),
            retry=retry or replace(self.settings.retry),
            timeout_seconds=(
                timeout_seconds
                if timeout_seconds is not None
                else self.settings.execution.job_timeout_seconds
            ),
        )
        return Task(
            meta,
            self.storage,
            config,
            progress_interval_seconds=self.settings.execution.progress_interval_seconds,
            ingest_batch_size=self.settings.execution.ingest_batch_size,
        )


async def create_task_hub(settings: Settings | None = None) -> Hub:
    """Build and initialize a hub on the storage engine chosen by configuration."""

    settings = settings or Settings.from_env()
    settings.validate()
    storage = create_storage_backend(
        settings.storage.engine,
        db_path=settings.db_path,
        busy_timeout_ms=settings.storage.busy_timeout_ms,
    )
    hub = Hub(storage, settings=settings)
    await hub.initialize()
    return hub
