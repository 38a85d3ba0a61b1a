"""Work source contract and per-job execution context."""

from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar

from taskhub.core import failure_classifier
from taskhub.core.hashing import hash_value
from taskhub.errors import JobCancelledError
from taskhub.models import TaskType


class CancellationToken:
    """Cooperative cancellation flag handed to a job handler."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if woken early by cancellation."""

        if seconds <= 0:
            return self.cancelled
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelledError("Job cancelled")


@dataclass(slots=True)
class JobContext:
    """What a handler knows about the job it is executing."""

    token: CancellationToken
    attempt: int
    job_id: str


class TaskSource(ABC):
    """Supplies inputs and the handler that turns one input into one output.

    ``get_data`` returns either a finite sequence (deterministic task) or a
    lazy iterable / async iterable (dynamic task). The classifier hooks default
    to the heuristics in :mod:`taskhub.core.failure_classifier`.
    """

    type: ClassVar[TaskType] = TaskType.DETERMINISTIC

    @abstractmethod
    def get_data(self) -> Sequence[Any] | Iterable[Any] | AsyncIterable[Any]:
        raise NotImplementedError

    @abstractmethod
    async def handler(self, input: Any, context: JobContext) -> Any:  # noqa: A002
        raise NotImplementedError

    def get_job_id(self, input: Any) -> str:  # noqa: A002
        return hash_value(input)

    def is_retryable(self, error: BaseException) -> bool:
        return failure_classifier.is_retryable(error)

    def is_rate_limited(self, error: BaseException) -> bool:
        return failure_classifier.is_rate_limited(error)


def is_finite_data(data: object) -> bool:
    """True when source data is a materialized collection rather than a stream."""

    return isinstance(data, Sequence) and not isinstance(data, (str, bytes, bytearray))


async def iterate_inputs(data: Iterable[Any] | AsyncIterable[Any]):
    """Pull inputs one at a time from a sync or async iterable."""

    if isinstance(data, AsyncIterable):
        async for item in data:
            yield item
        return
    for item in data:
        yield item


def input_hash(source: TaskSource, value: Any) -> str:
    """Content hash of one input, honouring a source-supplied job id."""

    get_job_id = getattr(source, "get_job_id", None)
    if get_job_id is None:
        return hash_value(value)
    return get_job_id(value)
