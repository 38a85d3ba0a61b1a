"""Persistence backends for tasks and jobs."""

from __future__ import annotations

from pathlib import Path

from taskhub.storage.base import (
    StorageBackend,
    StorageClosedError,
    is_storage_closed,
)
from taskhub.storage.memory import MemoryBackend
from taskhub.storage.sqlite import SqliteBackend

SUPPORTED_BACKENDS: tuple[str, ...] = ("sqlite", "memory")


def create_storage_backend(
    kind: str,
    *,
    db_path: Path | None = None,
    busy_timeout_ms: int = 5000,
) -> StorageBackend:
    """Build the backend named by deployment configuration."""

    if kind == "memory":
        return MemoryBackend()
    if kind == "sqlite":
        if db_path is None:
            raise ValueError("SQLite storage requires a db_path.")
        return SqliteBackend(db_path, busy_timeout_ms=busy_timeout_ms)
    raise ValueError(f"Unsupported storage backend: {kind!r}")


__all__ = [
    "SUPPORTED_BACKENDS",
    "MemoryBackend",
    "SqliteBackend",
    "StorageBackend",
    "StorageClosedError",
    "create_storage_backend",
    "is_storage_closed",
]
