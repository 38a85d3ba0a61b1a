from __future__ import annotations

import asyncio

import allure
import pytest

from taskhub.core.dispatcher import Dispatcher
from taskhub.core.events import EventName
from taskhub.models import AimdConfig, JobStatus, RetryConfig
from taskhub.storage import MemoryBackend

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("AIMD Dispatcher"),
]

FAST_RETRY = RetryConfig(max_attempts=3, base_delay_seconds=0.01, max_delay_seconds=0.05)


def _dispatcher(storage, source, **overrides) -> Dispatcher:
    options = {
        "task_id": "task-1",
        "source": source,
        "storage": storage,
        "aimd": AimdConfig(initial_concurrency=2, success_threshold=100),
        "retry": FAST_RETRY,
        "timeout_seconds": 2.0,
        "idle_interval_seconds": 0.005,
        "pause_interval_seconds": 0.005,
    }
    options.update(overrides)
    return Dispatcher(**options)


async def test_concurrent_start_runs_every_job_exactly_once(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    inputs = list(range(12))
    await seed_jobs(memory_storage, inputs)

    async def double(value, context):
        await asyncio.sleep(0.001)
        return value * 2

    source = make_source(inputs, double)
    dispatcher = _dispatcher(memory_storage, source)

    await asyncio.gather(dispatcher.start(), dispatcher.start())

    assert sorted(source.calls) == inputs
    counts = await memory_storage.get_job_counts("task-1")
    assert counts.completed == 12
    assert dispatcher.active_count == 0
    outputs = sorted(job.output for job in await memory_storage.get_jobs_by_task("task-1"))
    assert outputs == [value * 2 for value in inputs]


async def test_additive_increase_after_success_streak(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    await seed_jobs(memory_storage, list(range(5)))
    dispatcher = _dispatcher(
        memory_storage,
        make_source(list(range(5))),
        aimd=AimdConfig(
            initial_concurrency=2,
            min_concurrency=1,
            max_concurrency=10,
            additive_increase=1,
            success_threshold=3,
        ),
    )
    changes: list[int] = []
    dispatcher.on(EventName.CONCURRENCY_CHANGE, changes.append)

    await dispatcher.start()

    assert changes == [3]
    assert dispatcher.current_concurrency == 3


async def test_rate_limit_status_halves_concurrency(
    memory_storage,
    make_source,
    seed_jobs,
    status_error,
) -> None:
    await seed_jobs(memory_storage, ["only"])

    async def throttled(value, context):
        raise status_error("Too Many Requests", 429)

    dispatcher = _dispatcher(
        memory_storage,
        make_source(["only"], throttled),
        aimd=AimdConfig(initial_concurrency=4, min_concurrency=1, multiplicative_decrease=0.5),
        retry=RetryConfig(max_attempts=1),
    )
    rate_limited: list[int] = []
    changes: list[int] = []
    dispatcher.on(EventName.RATE_LIMITED, rate_limited.append)
    dispatcher.on(EventName.CONCURRENCY_CHANGE, changes.append)

    await dispatcher.start()

    assert rate_limited == [2]
    assert changes == [2]
    assert dispatcher.current_concurrency == 2


async def test_concurrency_stays_within_bounds(
    memory_storage,
    make_source,
    seed_jobs,
    status_error,
) -> None:
    inputs = list(range(8))
    await seed_jobs(memory_storage, inputs)

    async def throttled(value, context):
        raise status_error("rate limit", 503)

    dispatcher = _dispatcher(
        memory_storage,
        make_source(inputs, throttled),
        aimd=AimdConfig(initial_concurrency=8, min_concurrency=3, max_concurrency=8),
        retry=RetryConfig(max_attempts=1),
    )
    seen: list[int] = []
    dispatcher.on(EventName.CONCURRENCY_CHANGE, seen.append)

    await dispatcher.start()

    assert seen == [4, 3]
    assert dispatcher.current_concurrency == 3

    ramp_storage = MemoryBackend()
    await seed_jobs(ramp_storage, list(range(10)))
    ramp = _dispatcher(
        ramp_storage,
        make_source(list(range(10))),
        aimd=AimdConfig(
            initial_concurrency=1,
            min_concurrency=1,
            max_concurrency=3,
            success_threshold=1,
        ),
    )
    grown: list[int] = []
    ramp.on(EventName.CONCURRENCY_CHANGE, grown.append)

    await ramp.start()

    assert grown == [2, 3]
    assert ramp.current_concurrency == 3


async def test_initial_concurrency_is_clamped(memory_storage, make_source) -> None:
    dispatcher = _dispatcher(
        memory_storage,
        make_source([]),
        aimd=AimdConfig(initial_concurrency=100, min_concurrency=1, max_concurrency=7),
    )

    assert dispatcher.current_concurrency == 7


async def test_retry_until_success_within_max_attempts(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    jobs = await seed_jobs(memory_storage, ["flaky"])

    async def flaky(value, context):
        if context.attempt < 3:
            raise ConnectionError("connection reset by peer")
        return "ok"

    source = make_source(["flaky"], flaky)
    dispatcher = _dispatcher(memory_storage, source)
    retries: list[int] = []
    dispatcher.on(EventName.JOB_RETRY, lambda job, attempt: retries.append(attempt))

    await dispatcher.start()

    job = await memory_storage.get_job(jobs[0].id)
    assert job.status is JobStatus.COMPLETED
    assert job.output == "ok"
    assert job.attempts == 3
    assert len(source.calls) == 3
    assert retries == [1, 2]


async def test_single_attempt_failure_is_terminal(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    jobs = await seed_jobs(memory_storage, ["doomed"])

    async def broken(value, context):
        raise ConnectionError("network unreachable")

    source = make_source(["doomed"], broken)
    dispatcher = _dispatcher(memory_storage, source, retry=RetryConfig(max_attempts=1))
    failures: list[tuple[str, str]] = []
    dispatcher.on(
        EventName.JOB_FAILED,
        lambda job, error: failures.append((job.status.value, str(error))),
    )

    await dispatcher.start()

    job = await memory_storage.get_job(jobs[0].id)
    assert job.status is JobStatus.FAILED
    assert job.error == "network unreachable"
    assert len(source.calls) == 1
    assert failures == [("failed", "network unreachable")]


async def test_non_retryable_error_fails_without_retry(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    await seed_jobs(memory_storage, ["bad"])

    async def invalid(value, context):
        raise ValueError("invalid payload")

    source = make_source(["bad"], invalid)
    dispatcher = _dispatcher(memory_storage, source)

    await dispatcher.start()

    assert len(source.calls) == 1
    assert (await memory_storage.get_job_counts("task-1")).failed == 1


async def test_source_classifiers_override_defaults(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    await seed_jobs(memory_storage, ["custom"])

    async def quota(value, context):
        raise ValueError("quota exhausted")

    source = make_source(
        ["custom"],
        quota,
        retryable=lambda error: "quota" in str(error),
        rate_limited=lambda error: "quota" in str(error),
    )
    dispatcher = _dispatcher(
        memory_storage,
        source,
        aimd=AimdConfig(initial_concurrency=4),
        retry=RetryConfig(max_attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0),
    )

    await dispatcher.start()

    assert len(source.calls) == 2
    assert dispatcher.current_concurrency == 1


async def test_timeout_surfaces_as_distinct_error(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    jobs = await seed_jobs(memory_storage, ["slow"])

    async def slow(value, context):
        await asyncio.sleep(5)
        return "late"

    dispatcher = _dispatcher(
        memory_storage,
        make_source(["slow"], slow),
        timeout_seconds=0.05,
        retry=RetryConfig(max_attempts=1),
    )
    errors: list[BaseException] = []
    dispatcher.on(EventName.JOB_FAILED, lambda job, error: errors.append(error))

    await dispatcher.start()

    job = await memory_storage.get_job(jobs[0].id)
    assert job.status is JobStatus.FAILED
    assert "timeout" in job.error.lower()
    assert type(errors[0]).__name__ == "JobTimeoutError"


async def test_timeout_is_retried_while_attempts_remain(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    jobs = await seed_jobs(memory_storage, ["slow-once"])

    async def slow_once(value, context):
        if context.attempt == 1:
            await asyncio.sleep(5)
        return "second time lucky"

    dispatcher = _dispatcher(
        memory_storage,
        make_source(["slow-once"], slow_once),
        timeout_seconds=0.05,
        retry=RetryConfig(max_attempts=2, base_delay_seconds=0.01),
    )

    await dispatcher.start()

    job = await memory_storage.get_job(jobs[0].id)
    assert job.status is JobStatus.COMPLETED
    assert job.attempts == 2


async def test_stop_cancels_active_jobs_and_waits_for_them(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    await seed_jobs(memory_storage, ["a", "b", "c", "d"])
    all_started = asyncio.Event()
    started: list[str] = []

    async def cooperative(value, context):
        started.append(value)
        if len(started) == 3:
            all_started.set()
        await context.token.wait()
        context.token.raise_if_cancelled()

    dispatcher = _dispatcher(
        memory_storage,
        make_source(["a", "b", "c", "d"], cooperative),
        aimd=AimdConfig(initial_concurrency=3),
    )
    run = asyncio.ensure_future(dispatcher.start())
    await asyncio.wait_for(all_started.wait(), timeout=2)

    await dispatcher.stop()

    assert dispatcher.active_count == 0
    assert dispatcher.is_stopped
    await asyncio.wait_for(run, timeout=2)
    counts = await memory_storage.get_job_counts("task-1")
    assert (counts.active, counts.pending, counts.completed, counts.failed) == (3, 1, 0, 0)


async def test_pause_stops_claiming_until_resume(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    inputs = ["a", "b", "c", "d"]
    await seed_jobs(memory_storage, inputs)

    async def quick(value, context):
        await asyncio.sleep(0.01)
        return value

    source = make_source(inputs, quick)
    dispatcher = _dispatcher(memory_storage, source, aimd=AimdConfig(initial_concurrency=1))
    dispatcher.on(EventName.JOB_START, lambda job: dispatcher.pause())

    run = asyncio.ensure_future(dispatcher.start())
    await asyncio.sleep(0.1)

    assert dispatcher.is_paused
    assert source.calls == ["a"]
    assert (await memory_storage.get_job_counts("task-1")).completed == 1

    dispatcher.events.remove_all(EventName.JOB_START)
    await dispatcher.resume()
    await asyncio.wait_for(run, timeout=2)

    assert source.calls == inputs
    assert not dispatcher.is_paused


async def test_closed_backend_stops_loop_cleanly(make_source, seed_jobs) -> None:
    storage = MemoryBackend()
    await storage.initialize()
    await seed_jobs(storage, ["first", "second"])
    started = asyncio.Event()
    release = asyncio.Event()

    async def gated(value, context):
        started.set()
        await release.wait()
        return value

    dispatcher = _dispatcher(storage, make_source([], gated), aimd=AimdConfig(initial_concurrency=1))
    run = asyncio.ensure_future(dispatcher.start())
    await asyncio.wait_for(started.wait(), timeout=2)

    await storage.close()
    release.set()
    await asyncio.wait_for(run, timeout=2)

    assert dispatcher.is_stopped
    assert dispatcher.active_count == 0


class _BrokenCompletionBackend(MemoryBackend):
    async def complete_job(self, job_id, output):
        raise RuntimeError("disk I/O error")


async def test_unexpected_storage_error_propagates_from_start(make_source, seed_jobs) -> None:
    storage = _BrokenCompletionBackend()
    await storage.initialize()
    await seed_jobs(storage, ["x"])
    dispatcher = _dispatcher(storage, make_source(["x"]))

    with pytest.raises(RuntimeError, match="disk I/O error"):
        await dispatcher.start()

    assert dispatcher.is_stopped
    assert not dispatcher.is_running


async def test_cancelled_token_result_is_not_recorded(
    memory_storage,
    make_source,
    seed_jobs,
) -> None:
    jobs = await seed_jobs(memory_storage, ["ignored"])
    started = asyncio.Event()

    async def finishes_anyway(value, context):
        started.set()
        await context.token.wait()
        return value

    dispatcher = _dispatcher(memory_storage, make_source(["ignored"], finishes_anyway))
    completions: list[str] = []
    dispatcher.on(EventName.JOB_COMPLETE, lambda job: completions.append(job.id))
    run = asyncio.ensure_future(dispatcher.start())
    await asyncio.wait_for(started.wait(), timeout=2)

    await dispatcher.stop()
    await run

    job = await memory_storage.get_job(jobs[0].id)
    assert job.status is JobStatus.ACTIVE
    assert completions == []


class _GatedClaimBackend(MemoryBackend):
    def __init__(self) -> None:
        super().__init__()
        self.claim_started = asyncio.Event()
        self.release_claim = asyncio.Event()

    async def claim_jobs(self, task_id, limit):
        self.claim_started.set()
        await self.release_claim.wait()
        return await super().claim_jobs(task_id, limit)


async def test_stop_during_claim_does_not_run_claimed_jobs(make_source, seed_jobs) -> None:
    storage = _GatedClaimBackend()
    await storage.initialize()
    await seed_jobs(storage, ["a", "b"])
    source = make_source(["a", "b"])
    dispatcher = _dispatcher(storage, source)

    run = asyncio.ensure_future(dispatcher.start())
    await asyncio.wait_for(storage.claim_started.wait(), timeout=2)
    stopping = asyncio.ensure_future(dispatcher.stop())
    await asyncio.sleep(0)
    storage.release_claim.set()
    await asyncio.wait_for(stopping, timeout=2)
    await asyncio.wait_for(run, timeout=2)

    assert source.calls == []
    counts = await storage.get_job_counts("task-1")
    assert (counts.active, counts.completed) == (2, 0)
    assert await storage.reset_active_jobs("task-1") == 2
