"""Task state machine: ingestion, execution sessions and progress."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterable, Iterable, Sequence
from datetime import datetime
from typing import Any

from taskhub.core.dispatcher import Dispatcher
from taskhub.core.events import EventBus, EventHandler, EventName
from taskhub.core.hashing import job_id, merkle_root
from taskhub.core.source import TaskSource, input_hash, is_finite_data, iterate_inputs
from taskhub.errors import InvalidTaskStateError
from taskhub.models import (
    Job,
    JobStatus,
    TaskConfig,
    TaskMeta,
    TaskProgress,
    TaskStatus,
    TaskType,
)
from taskhub.storage.base import StorageBackend, is_storage_closed
from taskhub.storage.common import utc_now

logger = logging.getLogger(__name__)

_FORWARDED_EVENTS = (
    EventName.JOB_START,
    EventName.JOB_RETRY,
    EventName.RATE_LIMITED,
    EventName.CONCURRENCY_CHANGE,
)


class Task:
    """One named workload and the write-through owner of its ``TaskMeta``.

    States move ``idle -> running -> paused | completed | failed`` and
    ``paused -> running``. Each start (or resume after a restart) runs one
    execution session backed by a fresh :class:`Dispatcher`.
    """

    def __init__(
        self,
        meta: TaskMeta,
        storage: StorageBackend,
        config: TaskConfig,
        *,
        progress_interval_seconds: float = 1.0,
        ingest_batch_size: int = 1000,
    ) -> None:
        self.meta = meta
        self.storage = storage
        self.config = config
        self.progress_interval_seconds = progress_interval_seconds
        self.ingest_batch_size = ingest_batch_size
        self.events = EventBus()

        self._source: TaskSource | None = None
        self._dispatcher: Dispatcher | None = None
        self._session: asyncio.Future[None] | None = None
        self._reporter: asyncio.Task[None] | None = None
        self._started_at: float | None = None
        self._stopped = False

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def type(self) -> TaskType:
        return self.meta.type

    @property
    def status(self) -> TaskStatus:
        return self.meta.status

    @property
    def merkle_root(self) -> str | None:
        return self.meta.merkle_root

    @property
    def total_jobs(self) -> int:
        return self.meta.total_jobs

    @property
    def completed_jobs(self) -> int:
        return self.meta.completed_jobs

    @property
    def failed_jobs(self) -> int:
        return self.meta.failed_jobs

    @property
    def current_concurrency(self) -> int:
        return self._dispatcher.current_concurrency if self._dispatcher is not None else 0

    @property
    def source(self) -> TaskSource | None:
        return self._source

    def on(self, event: str, handler: EventHandler):
        return self.events.on(event, handler)

    def off(self, event: str, handler: EventHandler) -> None:
        self.events.off(event, handler)

    async def set_source(
        self,
        source: TaskSource,
        *,
        data: Sequence[Any] | Iterable[Any] | AsyncIterable[Any] | None = None,
    ) -> None:
        """Ingest the source's inputs as pending jobs.

        ``data`` lets a caller that already read ``source.get_data()`` hand it
        over instead of reading the source a second time.
        """

        if self.meta.status != TaskStatus.IDLE:
            raise InvalidTaskStateError(
                f"Cannot set source on task {self.id} in status {self.meta.status.value}",
            )

        self._source = source
        if data is None:
            data = source.get_data()

        if is_finite_data(data):
            total, root = await self._ingest_deterministic(source, data)
            self.meta.type = TaskType.DETERMINISTIC
            self.meta.merkle_root = root
        else:
            total = await self._ingest_dynamic(source, data)
            self.meta.type = TaskType.DYNAMIC
            self.meta.merkle_root = None
        self.meta.total_jobs = total

        await self.storage.update_task(
            self.id,
            type=self.meta.type,
            total_jobs=self.meta.total_jobs,
            merkle_root=self.meta.merkle_root,
        )
        logger.info("Task %s ingested %d job(s) (%s)", self.id, total, self.meta.type.value)

    def set_source_for_resume(self, source: TaskSource) -> None:
        """Bind a source to a persisted task without re-ingesting it."""

        self._source = source

    async def start(self) -> None:
        """Run the task until its jobs are exhausted or it is stopped."""

        if self.meta.status == TaskStatus.PAUSED:
            await self.resume()
            return
        if self._session is not None:
            await asyncio.shield(self._session)
            return
        if self.meta.status == TaskStatus.RUNNING:
            return
        if self.meta.status == TaskStatus.COMPLETED:
            raise InvalidTaskStateError(f"Task {self.id} is already completed")
        if self._source is None:
            raise InvalidTaskStateError(f"Task {self.id} has no source; call set_source first")

        await self._run_new_session()

    async def pause(self) -> None:
        if self.meta.status != TaskStatus.RUNNING:
            return
        if self._dispatcher is not None:
            self._dispatcher.pause()
        await self._set_status(TaskStatus.PAUSED)
        await self._stop_progress_reporting()

    async def resume(self) -> None:
        """Continue a paused task, rebuilding the dispatcher after a restart."""

        if self.meta.status in (TaskStatus.IDLE, TaskStatus.FAILED):
            await self.start()
            return
        if self.meta.status != TaskStatus.PAUSED:
            return

        session = self._session
        if session is None:
            if self._source is None:
                raise InvalidTaskStateError(
                    f"Task {self.id} has no source; call set_source_for_resume first",
                )
            await self._run_new_session()
            return

        await self._set_status(TaskStatus.RUNNING)
        self._start_progress_reporting()
        if self._dispatcher is not None:
            await self._dispatcher.resume()
        await asyncio.shield(session)

    async def stop(self) -> None:
        """Cancel in-flight jobs, return them to pending and park the task as paused."""

        active = self.meta.status in (TaskStatus.RUNNING, TaskStatus.PAUSED)
        if not active and self._session is None:
            return

        self._stopped = True
        if self._dispatcher is not None:
            await self._dispatcher.stop()
        await self._stop_progress_reporting()
        session = self._session
        if session is not None:
            await asyncio.wait({session})

        reset = await self.storage.reset_active_jobs(self.id)
        counts = await self.storage.get_job_counts(self.id)
        self.meta.completed_jobs = counts.completed
        self.meta.failed_jobs = counts.failed
        self.meta.status = TaskStatus.PAUSED
        await self.storage.update_task(
            self.id,
            status=TaskStatus.PAUSED,
            completed_jobs=counts.completed,
            failed_jobs=counts.failed,
        )
        logger.info("Task %s stopped; %d active job(s) returned to pending", self.id, reset)

    async def destroy(self) -> None:
        await self.stop()
        await self.storage.delete_jobs_by_task(self.id)
        await self.storage.delete_task(self.id)
        self.events.remove_all()
        logger.info("Task %s destroyed", self.id)

    async def get_progress(self) -> TaskProgress:
        counts = await self.storage.get_job_counts(self.id)
        elapsed = time.monotonic() - self._started_at if self._started_at is not None else 0.0

        estimated_remaining: float | None = None
        if counts.completed > 0 and self.meta.status == TaskStatus.RUNNING:
            estimated_remaining = elapsed / counts.completed * (counts.pending + counts.active)

        return TaskProgress(
            task_id=self.id,
            total=self.meta.total_jobs,
            completed=counts.completed,
            failed=counts.failed,
            pending=counts.pending,
            active=counts.active,
            concurrency=self.current_concurrency,
            elapsed_seconds=elapsed,
            estimated_remaining_seconds=estimated_remaining,
        )

    async def get_results(
        self,
        status: JobStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        return await self.storage.get_jobs_by_task(self.id, status, limit, offset)

    async def _ingest_deterministic(
        self,
        source: TaskSource,
        data: Sequence[Any],
    ) -> tuple[int, str]:
        leaves: list[str] = []
        inserted = 0
        now = utc_now()
        for offset in range(0, len(data), self.ingest_batch_size):
            batch: list[Job] = []
            for item in data[offset : offset + self.ingest_batch_size]:
                leaf = input_hash(source, item)
                leaves.append(leaf)
                batch.append(self._new_job(leaf, item, now))
            inserted += await self.storage.create_jobs(batch)
        return inserted, merkle_root(leaves)

    async def _ingest_dynamic(
        self,
        source: TaskSource,
        data: Iterable[Any] | AsyncIterable[Any],
    ) -> int:
        inserted = 0
        now = utc_now()
        batch: list[Job] = []
        async for item in iterate_inputs(data):
            batch.append(self._new_job(input_hash(source, item), item, now))
            if len(batch) >= self.ingest_batch_size:
                inserted += await self.storage.create_jobs(batch)
                batch = []
        if batch:
            inserted += await self.storage.create_jobs(batch)
        return inserted

    def _new_job(self, leaf: str, item: Any, now: datetime) -> Job:
        return Job(
            id=job_id(self.id, leaf),
            task_id=self.id,
            input=item,
            created_at=now,
        )

    async def _run_new_session(self) -> None:
        self._stopped = False
        self._session = asyncio.ensure_future(self._run_session())
        await asyncio.shield(self._session)

    async def _run_session(self) -> None:
        try:
            await self.storage.reset_active_jobs(self.id)
            await self._set_status(TaskStatus.RUNNING)
            self._started_at = time.monotonic()
            if self._stopped:
                return
            self._dispatcher = self._build_dispatcher()
            self._start_progress_reporting()
            try:
                await self._dispatcher.start()
            finally:
                await self._stop_progress_reporting()
            if self._stopped:
                return
            await self._finalize()
        except Exception:
            await self._park_after_failure()
            raise
        finally:
            self._session = None

    async def _park_after_failure(self) -> None:
        self.meta.status = TaskStatus.PAUSED
        try:
            await self.storage.reset_active_jobs(self.id)
            await self.storage.update_task(self.id, status=TaskStatus.PAUSED)
        except Exception:
            logger.warning("Could not park task %s after a failed session", self.id, exc_info=True)
            return
        logger.warning("Task %s parked as paused after a failed session", self.id)

    def _build_dispatcher(self) -> Dispatcher:
        assert self._source is not None
        dispatcher = Dispatcher(
            task_id=self.id,
            source=self._source,
            storage=self.storage,
            aimd=self.config.aimd,
            retry=self.config.retry,
            timeout_seconds=self.config.timeout_seconds,
        )
        for event in _FORWARDED_EVENTS:
            dispatcher.on(event, self._forward(event))
        dispatcher.on(EventName.JOB_COMPLETE, self._on_job_complete)
        dispatcher.on(EventName.JOB_FAILED, self._on_job_failed)
        return dispatcher

    def _forward(self, event: EventName) -> EventHandler:
        def _emit(*args: Any) -> None:
            self.events.emit(event, *args)

        return _emit

    def _on_job_complete(self, job: Job) -> None:
        self.meta.completed_jobs += 1
        self.events.emit(EventName.JOB_COMPLETE, job)

    def _on_job_failed(self, job: Job, error: BaseException) -> None:
        self.meta.failed_jobs += 1
        self.events.emit(EventName.JOB_FAILED, job, error)

    async def _finalize(self) -> None:
        try:
            counts = await self.storage.get_job_counts(self.id)
            self.meta.completed_jobs = counts.completed
            self.meta.failed_jobs = counts.failed
            if counts.pending == 0 and counts.active == 0:
                if counts.failed > 0 and counts.completed == 0:
                    status = TaskStatus.FAILED
                else:
                    status = TaskStatus.COMPLETED
            else:
                status = TaskStatus.PAUSED
            self.meta.status = status
            await self.storage.update_task(
                self.id,
                status=status,
                completed_jobs=counts.completed,
                failed_jobs=counts.failed,
            )
        except Exception as error:
            if not is_storage_closed(error):
                raise
            logger.warning("Storage closed before task %s could record its final status", self.id)
            return

        logger.info(
            "Task %s finished as %s: %d completed, %d failed",
            self.id,
            status.value,
            counts.completed,
            counts.failed,
        )
        self.events.emit(EventName.COMPLETED)

    async def _set_status(self, status: TaskStatus) -> None:
        self.meta.status = status
        await self.storage.update_task(self.id, status=status)
        logger.debug("Task %s is now %s", self.id, status.value)

    def _start_progress_reporting(self) -> None:
        if self._reporter is not None:
            return
        self._reporter = asyncio.ensure_future(self._report_progress())

    async def _stop_progress_reporting(self) -> None:
        reporter, self._reporter = self._reporter, None
        if reporter is None:
            return
        reporter.cancel()
        await asyncio.wait({reporter})

    async def _report_progress(self) -> None:
        while True:
            await asyncio.sleep(self.progress_interval_seconds)
            try:
                progress = await self.get_progress()
                # Counters are a cache; refresh them from the aggregate.
                self.meta.completed_jobs = progress.completed
                self.meta.failed_jobs = progress.failed
                await self.storage.update_task(
                    self.id,
                    completed_jobs=progress.completed,
                    failed_jobs=progress.failed,
                )
            except Exception:
                logger.debug("Progress refresh failed for task %s", self.id, exc_info=True)
                continue
            self.events.emit(EventName.PROGRESS, progress)
