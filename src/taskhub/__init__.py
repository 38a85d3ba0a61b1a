"""Adaptive job dispatch with crash-safe persistence."""

from taskhub.config import Settings
from taskhub.core.events import EventBus, EventName
from taskhub.core.hub import Hub, create_task_hub
from taskhub.core.source import CancellationToken, JobContext, TaskSource
from taskhub.core.task import Task
from taskhub.errors import (
    DuplicateTaskError,
    InvalidTaskStateError,
    JobCancelledError,
    JobTimeoutError,
    TaskHubError,
)
from taskhub.models import (
    AimdConfig,
    Job,
    JobStatus,
    RetryConfig,
    TaskCreate,
    TaskMeta,
    TaskProgress,
    TaskStatus,
    TaskType,
)

__version__ = "0.1.0"

__all__ = [
    "AimdConfig",
    "CancellationToken",
    "DuplicateTaskError",
    "EventBus",
    "EventName",
    "Hub",
    "InvalidTaskStateError",
    "Job",
    "JobCancelledError",
    "JobContext",
    "JobStatus",
    "JobTimeoutError",
    "RetryConfig",
    "Settings",
    "Task",
    "TaskCreate",
    "TaskHubError",
    "TaskMeta",
    "TaskProgress",
    "TaskSource",
    "TaskStatus",
    "TaskType",
    "__version__",
    "create_task_hub",
]
