"""Domain models for tasks, jobs and dispatch configuration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from taskhub.core.source import TaskSource


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Task state machine states."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    """How the task id is derived from its inputs."""

    DETERMINISTIC = "deterministic"
    DYNAMIC = "dynamic"


@dataclass(slots=True)
class Job:
    """One unit of work owned by a task."""

    id: str
    task_id: str
    input: Any
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    output: Any = None
    error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    scheduled_at: datetime | None = None


@dataclass(slots=True)
class TaskMeta:
    """Persisted task record. Counters are a cache of the backend aggregate."""

    id: str
    name: str
    type: TaskType
    merkle_root: str | None
    status: TaskStatus
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobCounts:
    """Per-status job counts for one task."""

    pending: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.active + self.completed + self.failed


@dataclass(slots=True)
class TaskProgress:
    """Progress snapshot emitted periodically while a task runs."""

    task_id: str
    total: int
    completed: int
    failed: int
    pending: int
    active: int
    concurrency: int
    elapsed_seconds: float
    estimated_remaining_seconds: float | None


@dataclass(slots=True)
class AimdConfig:
    """Additive-increase / multiplicative-decrease concurrency settings."""

    initial_concurrency: int = 5
    min_concurrency: int = 1
    max_concurrency: int = 50
    additive_increase: int = 1
    multiplicative_decrease: float = 0.5
    success_threshold: int = 10


@dataclass(slots=True)
class RetryConfig:
    """Retry policy with capped exponential backoff."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the next claim of a job that failed on ``attempt``."""

        return min(
            self.base_delay_seconds * (2 ** max(attempt - 1, 0)),
            self.max_delay_seconds,
        )


@dataclass(slots=True)
class TaskConfig:
    """Execution settings for one task."""

    name: str
    aimd: AimdConfig = field(default_factory=AimdConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task through the hub."""

    name: str
    source: TaskSource | None = None
    aimd: AimdConfig | None = None
    retry: RetryConfig | None = None
    timeout_seconds: float | None = None
