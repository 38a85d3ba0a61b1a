"""SQLite storage backend built on SQLModel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from taskhub.models import Job, JobCounts, JobStatus, TaskMeta, TaskStatus, TaskType
from taskhub.storage.alembic_runner import upgrade_head
from taskhub.storage.base import StorageBackend, StorageClosedError
from taskhub.storage.common import (
    as_utc,
    build_sqlite_engine,
    decode_payload,
    encode_payload,
    utc_now,
)
from taskhub.storage.sqlmodel_models import JobRow, TaskRow

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TASK_COLUMNS = frozenset(
    {"name", "type", "merkle_root", "status", "total_jobs", "completed_jobs", "failed_jobs"},
)


class SqliteBackend(StorageBackend):
    """Durable backend facade backed by SQLModel + SQLite.

    Blocking session work runs in worker threads so the event loop keeps
    scheduling other jobs while SQLite is busy.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._engine: Engine | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def initialize(self) -> None:
        if self._engine is not None and not self._closed:
            return
        await asyncio.to_thread(upgrade_head, self.db_path)
        self._engine = build_sqlite_engine(self.db_path, busy_timeout_ms=self.busy_timeout_ms)
        self._closed = False
        logger.debug("SQLite storage ready at %s", self.db_path)

    async def close(self) -> None:
        self._closed = True
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    async def create_task(self, meta: TaskMeta) -> None:
        def _create(session: Session) -> None:
            session.add(
                TaskRow(
                    id=meta.id,
                    name=meta.name,
                    type=TaskType(meta.type).value,
                    merkle_root=meta.merkle_root,
                    status=TaskStatus(meta.status).value,
                    total_jobs=meta.total_jobs,
                    completed_jobs=meta.completed_jobs,
                    failed_jobs=meta.failed_jobs,
                    created_at=meta.created_at,
                    updated_at=meta.updated_at,
                ),
            )
            session.commit()

        await self._run(_create)

    async def get_task(self, task_id: str) -> TaskMeta | None:
        def _get(session: Session) -> TaskMeta | None:
            row = session.get(TaskRow, task_id)
            return _to_task_meta(row) if row is not None else None

        return await self._run(_get)

    async def update_task(self, task_id: str, **changes: Any) -> None:
        unknown = set(changes) - _TASK_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported task fields: {sorted(unknown)}")
        if not changes:
            return
        values = {
            name: value.value if isinstance(value, (TaskStatus, TaskType)) else value
            for name, value in changes.items()
        }
        values["updated_at"] = utc_now()

        def _update(session: Session) -> None:
            session.exec(sa_update(TaskRow).where(col(TaskRow.id) == task_id).values(**values))
            session.commit()

        await self._run(_update)

    async def delete_task(self, task_id: str) -> None:
        def _delete(session: Session) -> None:
            session.exec(sa_delete(JobRow).where(col(JobRow.task_id) == task_id))
            session.exec(sa_delete(TaskRow).where(col(TaskRow.id) == task_id))
            session.commit()

        await self._run(_delete)

    async def list_tasks(self) -> list[TaskMeta]:
        def _list(session: Session) -> list[TaskMeta]:
            rows = session.exec(select(TaskRow).order_by(col(TaskRow.created_at).desc())).all()
            return [_to_task_meta(row) for row in rows]

        return await self._run(_list)

    async def create_jobs(self, jobs: Sequence[Job]) -> int:
        if not jobs:
            return 0
        rows = [_to_job_row(job) for job in jobs]

        def _create(session: Session) -> int:
            ids = [row.id for row in rows]
            existing = set(session.exec(select(JobRow.id).where(col(JobRow.id).in_(ids))).all())
            inserted = 0
            for row in rows:
                if row.id in existing:
                    continue
                existing.add(row.id)
                session.add(row)
                inserted += 1
            session.commit()
            return inserted

        return await self._run(_create)

    async def get_job(self, job_id: str) -> Job | None:
        def _get(session: Session) -> Job | None:
            row = session.get(JobRow, job_id)
            return _to_job(row) if row is not None else None

        return await self._run(_get)

    async def get_jobs_by_task(
        self,
        task_id: str,
        status: JobStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Job]:
        def _list(session: Session) -> list[Job]:
            query = select(JobRow).where(col(JobRow.task_id) == task_id)
            if status is not None:
                query = query.where(col(JobRow.status) == JobStatus(status).value)
            query = query.order_by(col(JobRow.created_at).asc(), col(JobRow.id).asc())
            rows = session.exec(query.offset(offset).limit(limit)).all()
            return [_to_job(row) for row in rows]

        return await self._run(_list)

    async def delete_jobs_by_task(self, task_id: str) -> None:
        def _delete(session: Session) -> None:
            session.exec(sa_delete(JobRow).where(col(JobRow.task_id) == task_id))
            session.commit()

        await self._run(_delete)

    async def claim_jobs(self, task_id: str, limit: int) -> list[Job]:
        if limit <= 0:
            return []

        def _claim(session: Session) -> list[Job]:
            now = utc_now()
            ready = (
                select(JobRow.id)
                .where(
                    col(JobRow.task_id) == task_id,
                    col(JobRow.status) == JobStatus.PENDING.value,
                    or_(col(JobRow.scheduled_at).is_(None), col(JobRow.scheduled_at) <= now),
                )
                .order_by(col(JobRow.created_at).asc(), col(JobRow.id).asc())
                .limit(limit)
            )
            # Update first: the write lock is held before any read snapshot exists.
            claimed_ids = list(
                session.exec(
                    sa_update(JobRow)
                    .where(
                        col(JobRow.id).in_(ready),
                        col(JobRow.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts=JobRow.attempts + 1,
                        started_at=now,
                        scheduled_at=None,
                    )
                    .returning(col(JobRow.id))
                    .execution_options(synchronize_session=False),
                ).scalars(),
            )
            if not claimed_ids:
                session.commit()
                return []
            rows = session.exec(
                select(JobRow)
                .where(col(JobRow.id).in_(claimed_ids))
                .order_by(col(JobRow.created_at).asc(), col(JobRow.id).asc()),
            ).all()
            claimed = [_to_job(row) for row in rows]
            session.commit()
            return claimed

        return await self._run(_claim)

    async def complete_job(self, job_id: str, output: Any) -> None:
        output_json = encode_payload(output)

        def _complete(session: Session) -> None:
            session.exec(
                sa_update(JobRow)
                .where(col(JobRow.id) == job_id)
                .values(
                    status=JobStatus.COMPLETED.value,
                    output_json=output_json,
                    error=None,
                    completed_at=utc_now(),
                ),
            )
            session.commit()

        await self._run(_complete)

    async def fail_job(
        self,
        job_id: str,
        error: str,
        can_retry: bool,
        retry_after_seconds: float | None = None,
    ) -> None:
        def _fail(session: Session) -> None:
            now = utc_now()
            if can_retry:
                values: dict[str, Any] = {
                    "status": JobStatus.PENDING.value,
                    "error": error,
                    "started_at": None,
                    "scheduled_at": (
                        now + timedelta(seconds=retry_after_seconds)
                        if retry_after_seconds
                        else None
                    ),
                }
            else:
                values = {
                    "status": JobStatus.FAILED.value,
                    "error": error,
                    "completed_at": now,
                }
            session.exec(sa_update(JobRow).where(col(JobRow.id) == job_id).values(**values))
            session.commit()

        await self._run(_fail)

    async def get_job_counts(self, task_id: str) -> JobCounts:
        def _counts(session: Session) -> JobCounts:
            rows = session.exec(
                select(JobRow.status, func.count())
                .where(col(JobRow.task_id) == task_id)
                .group_by(col(JobRow.status)),
            ).all()
            counts = JobCounts()
            for status, count in rows:
                setattr(counts, JobStatus(status).value, int(count))
            return counts

        return await self._run(_counts)

    async def reset_active_jobs(self, task_id: str) -> int:
        def _reset(session: Session) -> int:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.task_id) == task_id,
                    col(JobRow.status) == JobStatus.ACTIVE.value,
                )
                .values(status=JobStatus.PENDING.value, started_at=None),
            )
            session.commit()
            return int(result.rowcount or 0)

        return await self._run(_reset)

    async def reset_failed_jobs(self, task_id: str) -> int:
        def _reset(session: Session) -> int:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.task_id) == task_id,
                    col(JobRow.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    error=None,
                    completed_at=None,
                    scheduled_at=None,
                    attempts=0,
                ),
            )
            reset = int(result.rowcount or 0)
            if reset:
                session.exec(
                    sa_update(TaskRow)
                    .where(col(TaskRow.id) == task_id)
                    .values(
                        failed_jobs=func.max(TaskRow.failed_jobs - reset, 0),
                        updated_at=utc_now(),
                    ),
                )
            session.commit()
            return reset

        return await self._run(_reset)

    async def _run(self, operation: Callable[[Session], T]) -> T:
        engine = self._require_engine()

        def _in_session() -> T:
            with Session(engine) as session:
                return operation(session)

        return await asyncio.to_thread(_in_session)

    def _require_engine(self) -> Engine:
        if self._closed:
            raise StorageClosedError("SQLite storage is closed")
        if self._engine is None:
            raise RuntimeError("SQLite storage is not initialized")
        return self._engine


def _to_task_meta(row: TaskRow) -> TaskMeta:
    return TaskMeta(
        id=row.id,
        name=row.name,
        type=TaskType(row.type),
        merkle_root=row.merkle_root,
        status=TaskStatus(row.status),
        total_jobs=row.total_jobs,
        completed_jobs=row.completed_jobs,
        failed_jobs=row.failed_jobs,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _to_job_row(job: Job) -> JobRow:
    return JobRow(
        id=job.id,
        task_id=job.task_id,
        input_json=encode_payload(job.input),
        output_json=encode_payload(job.output) if job.output is not None else None,
        error=job.error,
        status=JobStatus(job.status).value,
        attempts=job.attempts,
        created_at=job.created_at or utc_now(),
        started_at=job.started_at,
        completed_at=job.completed_at,
        scheduled_at=job.scheduled_at,
    )


def _to_job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        task_id=row.task_id,
        input=decode_payload(row.input_json),
        status=JobStatus(row.status),
        attempts=row.attempts,
        output=decode_payload(row.output_json),
        error=row.error,
        created_at=as_utc(row.created_at),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        scheduled_at=as_utc(row.scheduled_at),
    )
