"""Runtime configuration for the task hub."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from taskhub.models import AimdConfig, RetryConfig
from taskhub.storage import SUPPORTED_BACKENDS


@dataclass(slots=True)
class StorageSettings:
    """Persistence engine selection."""

    engine: str = "sqlite"
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class ExecutionSettings:
    """Per-job and per-task execution settings."""

    job_timeout_seconds: float = 30.0
    progress_interval_seconds: float = 1.0
    ingest_batch_size: int = 1_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskhub.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    aimd: AimdConfig = field(default_factory=AimdConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKHUB_DB_PATH", ".taskhub.db")),
            storage=StorageSettings(
                engine=os.getenv("TASKHUB_STORAGE", "sqlite").strip().lower(),
                busy_timeout_ms=int(os.getenv("TASKHUB_BUSY_TIMEOUT_MS", "5000")),
            ),
            aimd=AimdConfig(
                initial_concurrency=int(os.getenv("TASKHUB_INITIAL_CONCURRENCY", "5")),
                min_concurrency=int(os.getenv("TASKHUB_MIN_CONCURRENCY", "1")),
                max_concurrency=int(os.getenv("TASKHUB_MAX_CONCURRENCY", "50")),
                additive_increase=int(os.getenv("TASKHUB_ADDITIVE_INCREASE", "1")),
                multiplicative_decrease=float(
                    os.getenv("TASKHUB_MULTIPLICATIVE_DECREASE", "0.5"),
                ),
                success_threshold=int(os.getenv("TASKHUB_SUCCESS_THRESHOLD", "10")),
            ),
            retry=RetryConfig(
                max_attempts=int(os.getenv("TASKHUB_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(os.getenv("TASKHUB_RETRY_BASE_SECONDS", "1.0")),
                max_delay_seconds=float(os.getenv("TASKHUB_RETRY_MAX_SECONDS", "30.0")),
            ),
            execution=ExecutionSettings(
                job_timeout_seconds=float(os.getenv("TASKHUB_JOB_TIMEOUT_SECONDS", "30.0")),
                progress_interval_seconds=float(
                    os.getenv("TASKHUB_PROGRESS_INTERVAL_SECONDS", "1.0"),
                ),
                ingest_batch_size=int(os.getenv("TASKHUB_INGEST_BATCH_SIZE", "1000")),
            ),
        )

    def validate(self) -> None:  # noqa: C901
        """Raise configuration error naming the first invalid setting."""

        if self.storage.engine not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported TASKHUB_STORAGE {self.storage.engine!r}. "
                f"Expected one of: {', '.join(SUPPORTED_BACKENDS)}.",
            )
        if self.storage.busy_timeout_ms < 0:
            raise ValueError("TASKHUB_BUSY_TIMEOUT_MS must be >= 0.")

        if self.aimd.min_concurrency < 1:
            raise ValueError("TASKHUB_MIN_CONCURRENCY must be >= 1.")
        if self.aimd.max_concurrency < self.aimd.min_concurrency:
            raise ValueError(
                "TASKHUB_MAX_CONCURRENCY must be >= TASKHUB_MIN_CONCURRENCY.",
            )
        if self.aimd.additive_increase < 1:
            raise ValueError("TASKHUB_ADDITIVE_INCREASE must be >= 1.")
        if not 0 < self.aimd.multiplicative_decrease < 1:
            raise ValueError("TASKHUB_MULTIPLICATIVE_DECREASE must be between 0 and 1.")
        if self.aimd.success_threshold < 1:
            raise ValueError("TASKHUB_SUCCESS_THRESHOLD must be >= 1.")

        if self.retry.max_attempts < 1:
            raise ValueError("TASKHUB_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("TASKHUB_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < 0:
            raise ValueError("TASKHUB_RETRY_MAX_SECONDS must be >= 0.")

        if self.execution.job_timeout_seconds <= 0:
            raise ValueError("TASKHUB_JOB_TIMEOUT_SECONDS must be > 0.")
        if self.execution.progress_interval_seconds <= 0:
            raise ValueError("TASKHUB_PROGRESS_INTERVAL_SECONDS must be > 0.")
        if self.execution.ingest_batch_size <= 0:
            raise ValueError("TASKHUB_INGEST_BATCH_SIZE must be > 0.")
