"""Adaptive job dispatcher.

Claims jobs from storage and runs them concurrently under a live limit that
follows additive-increase / multiplicative-decrease: a streak of successes
raises the limit by a fixed step, a rate-limit signal cuts it by a factor.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any

from taskhub.core import failure_classifier
from taskhub.core.events import EventBus, EventHandler, EventName
from taskhub.core.source import CancellationToken, JobContext, TaskSource
from taskhub.errors import JobTimeoutError
from taskhub.models import AimdConfig, Job, JobStatus, RetryConfig
from taskhub.storage.base import StorageBackend, is_storage_closed
from taskhub.storage.common import utc_now

logger = logging.getLogger(__name__)


class Dispatcher:
    """Claim-execute loop for the jobs of one task."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        source: TaskSource,
        storage: StorageBackend,
        aimd: AimdConfig | None = None,
        retry: RetryConfig | None = None,
        timeout_seconds: float = 30.0,
        idle_interval_seconds: float = 0.05,
        pause_interval_seconds: float = 0.1,
    ) -> None:
        self.task_id = task_id
        self.source = source
        self.storage = storage
        self.aimd = aimd or AimdConfig()
        self.retry = retry or RetryConfig()
        self.timeout_seconds = timeout_seconds
        self.idle_interval_seconds = idle_interval_seconds
        self.pause_interval_seconds = pause_interval_seconds
        self.events = EventBus()

        self._concurrency = min(
            max(self.aimd.initial_concurrency, self.aimd.min_concurrency),
            self.aimd.max_concurrency,
        )
        self._consecutive_successes = 0
        self._active: dict[asyncio.Future[None], CancellationToken] = {}
        self._paused = False
        self._stopped = False
        self._run_future: asyncio.Future[None] | None = None
        self._fatal_error: Exception | None = None

    @property
    def current_concurrency(self) -> int:
        return self._concurrency

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def is_running(self) -> bool:
        return self._run_future is not None

    def on(self, event: str, handler: EventHandler):
        return self.events.on(event, handler)

    async def start(self) -> None:
        """Run until no work remains or ``stop`` is called.

        Concurrent callers share one loop and all resume when it finishes.
        """

        if self._run_future is None:
            self._paused = False
            self._stopped = False
            self._fatal_error = None
            self._run_future = asyncio.ensure_future(self._process_loop())
        await asyncio.shield(self._run_future)

    def pause(self) -> None:
        self._paused = True

    async def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        if self._run_future is None:
            self._run_future = asyncio.ensure_future(self._process_loop())
        await asyncio.shield(self._run_future)

    async def stop(self) -> None:
        """Cancel every active job and wait until all of them have unwound."""

        self._stopped = True
        self._paused = False
        for token in list(self._active.values()):
            token.cancel()
        await self._wait_for_active()
        run_future = self._run_future
        if run_future is not None:
            await asyncio.wait({run_future})

    async def _process_loop(self) -> None:
        try:
            await self._claim_loop()
        finally:
            await self._wait_for_active()
            self._run_future = None
        if self._fatal_error is not None:
            error, self._fatal_error = self._fatal_error, None
            raise error

    async def _claim_loop(self) -> None:
        while not self._stopped:
            if self._paused:
                await asyncio.sleep(self.pause_interval_seconds)
                continue

            slots = self._concurrency - len(self._active)
            if slots <= 0:
                await asyncio.sleep(self.idle_interval_seconds)
                continue

            try:
                jobs = await self.storage.claim_jobs(self.task_id, slots)
            except Exception as error:
                if not is_storage_closed(error):
                    raise
                logger.warning("Storage closed while claiming jobs for task %s", self.task_id)
                self._stopped = True
                break

            if self._stopped:
                # Claimed rows stay active; Task.stop returns them to pending.
                break

            if jobs:
                logger.debug("Claimed %d job(s) for task %s", len(jobs), self.task_id)
                for job in jobs:
                    self._spawn(job)
                await asyncio.sleep(0)
                continue

            if not self._active and not await self._has_deferred_jobs():
                break
            await asyncio.sleep(self.idle_interval_seconds)

    async def _has_deferred_jobs(self) -> bool:
        # Pending jobs that claim skipped are waiting out a retry backoff.
        try:
            counts = await self.storage.get_job_counts(self.task_id)
        except Exception as error:
            if not is_storage_closed(error):
                raise
            self._stopped = True
            return False
        return counts.pending > 0

    def _spawn(self, job: Job) -> None:
        token = CancellationToken()
        future = asyncio.ensure_future(self._run_job(job, token))
        self._active[future] = token

    async def _run_job(self, job: Job, token: CancellationToken) -> None:
        try:
            if token.cancelled:
                return
            self.events.emit(EventName.JOB_START, job)
            context = JobContext(token=token, attempt=job.attempts, job_id=job.id)
            try:
                output = await self._invoke(job, context)
            except Exception as error:
                if token.cancelled:
                    logger.debug("Job %s aborted after cancellation: %s", job.id, error)
                    return
                await self._handle_failure(job, error, token)
                return
            if token.cancelled:
                logger.debug("Job %s finished after cancellation; result discarded", job.id)
                return
            await self._handle_success(job, output)
        except Exception as error:
            if is_storage_closed(error):
                logger.debug("Storage closed while recording job %s", job.id)
            else:
                self._record_fatal(error)
        finally:
            self._active.pop(asyncio.current_task(), None)

    async def _invoke(self, job: Job, context: JobContext) -> Any:
        try:
            return await asyncio.wait_for(
                self.source.handler(job.input, context),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            raise JobTimeoutError(self.timeout_seconds) from error

    async def _handle_success(self, job: Job, output: Any) -> None:
        await self.storage.complete_job(job.id, output)
        completed = replace(
            job,
            status=JobStatus.COMPLETED,
            output=output,
            completed_at=utc_now(),
        )
        self.events.emit(EventName.JOB_COMPLETE, completed)
        self._on_success()

    async def _handle_failure(
        self,
        job: Job,
        error: Exception,
        token: CancellationToken,
    ) -> None:
        if self._is_rate_limited(error):
            self._on_rate_limited()

        retryable = isinstance(error, JobTimeoutError) or self._is_retryable(error)
        can_retry = retryable and job.attempts < self.retry.max_attempts
        message = str(error) or type(error).__name__

        if can_retry:
            delay = self.retry.delay_for(job.attempts)
            await self.storage.fail_job(job.id, message, True, retry_after_seconds=delay)
            logger.debug(
                "Job %s attempt %d failed (%s); retrying in %.3fs",
                job.id,
                job.attempts,
                message,
                delay,
            )
            self.events.emit(EventName.JOB_RETRY, job, job.attempts)
            await token.sleep(delay)
            return

        await self.storage.fail_job(job.id, message, False)
        logger.debug(
            "Job %s failed permanently: %s",
            job.id,
            failure_classifier.classify_job_failure(error).to_event_details(),
        )
        failed = replace(job, status=JobStatus.FAILED, error=message, completed_at=utc_now())
        self.events.emit(EventName.JOB_FAILED, failed, error)

    def _is_rate_limited(self, error: Exception) -> bool:
        check = getattr(self.source, "is_rate_limited", None)
        if check is None:
            return failure_classifier.is_rate_limited(error)
        return bool(check(error))

    def _is_retryable(self, error: Exception) -> bool:
        check = getattr(self.source, "is_retryable", None)
        if check is None:
            return failure_classifier.is_retryable(error)
        return bool(check(error))

    def _on_success(self) -> None:
        self._consecutive_successes += 1
        if self._consecutive_successes < self.aimd.success_threshold:
            return
        self._consecutive_successes = 0
        concurrency = min(
            self._concurrency + self.aimd.additive_increase,
            self.aimd.max_concurrency,
        )
        if concurrency == self._concurrency:
            return
        self._concurrency = concurrency
        logger.info("Task %s concurrency raised to %d", self.task_id, concurrency)
        self.events.emit(EventName.CONCURRENCY_CHANGE, concurrency)

    def _on_rate_limited(self) -> None:
        self._consecutive_successes = 0
        concurrency = max(
            int(self._concurrency * self.aimd.multiplicative_decrease),
            self.aimd.min_concurrency,
        )
        if concurrency == self._concurrency:
            return
        self._concurrency = concurrency
        logger.warning("Task %s rate limited; concurrency cut to %d", self.task_id, concurrency)
        self.events.emit(EventName.RATE_LIMITED, concurrency)
        self.events.emit(EventName.CONCURRENCY_CHANGE, concurrency)

    def _record_fatal(self, error: Exception) -> None:
        logger.error("Storage failure in task %s: %s", self.task_id, error)
        if self._fatal_error is None:
            self._fatal_error = error
        self._stopped = True

    async def _wait_for_active(self) -> None:
        while self._active:
            await asyncio.wait(list(self._active))
