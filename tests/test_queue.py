import asyncio
import threading
import time
from datetime import datetime, timedelta

import pytest

from grader_pipeline.jobs.errors import JobFailedError, PermanentJobError
from grader_pipeline.jobs.models import JobOptions, JobRecord, JobStatus
from grader_pipeline.jobs.queue import JobQueue
from grader_pipeline.jobs.store import MemoryJobStore
from grader_pipeline.telemetry.events import EventBus, EventKind

from conftest import EventRecorder


@pytest.fixture
def store():
    return MemoryJobStore()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
async def make_queue(store, recorder):
    queues = []
    events = EventBus()
    events.subscribe(recorder)

    def _make(name="work", **option_overrides):
        opts = {"attempts": 3, "backoff_delay": 0.05}
        opts.update(option_overrides)
        queue = JobQueue(name, store, JobOptions(**opts), events, stalled_check_interval=3600)
        queues.append(queue)
        return queue

    yield _make
    for queue in queues:
        await queue.stop()


async def test_enqueue_returns_without_running_the_job(make_queue):
    queue = make_queue()
    handle = await queue.enqueue({"n": 1})

    job = await handle.status()
    assert job.status == JobStatus.WAITING
    assert job.data == {"n": 1}
    assert job.max_attempts == 3


async def test_completed_job_resolves_handle(make_queue):
    queue = make_queue()

    async def double(job):
        return {"value": job.data["n"] * 2}

    queue.process(1, double)
    await queue.start()
    handle = await queue.enqueue({"n": 21})

    assert await asyncio.wait_for(handle.finished(), 2) == {"value": 42}
    job = await handle.status()
    assert job.status == JobStatus.COMPLETED
    assert job.attempts_made == 1


async def test_sync_handler_runs_in_executor(make_queue):
    queue = make_queue()
    queue.process(1, lambda job: {"echo": job.data["msg"]})
    await queue.start()

    handle = await queue.enqueue({"msg": "hello"})

    assert await asyncio.wait_for(handle.finished(), 2) == {"echo": "hello"}


async def test_always_failing_handler_runs_three_times_with_backoff(make_queue, recorder):
    queue = make_queue(backoff_delay=0.05)
    calls = []

    async def broken(job):
        calls.append(time.monotonic())
        raise RuntimeError("boom")

    queue.process(1, broken)
    await queue.start()
    handle = await queue.enqueue({})

    with pytest.raises(JobFailedError) as exc_info:
        await asyncio.wait_for(handle.finished(), 3)

    assert len(calls) == 3
    assert calls[1] - calls[0] >= 0.05 * 0.9
    assert calls[2] - calls[1] >= 0.10 * 0.9
    assert "RuntimeError: boom" in exc_info.value.reason

    job = await handle.status()
    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 3
    assert len(job.stacktrace) == 3
    assert len(recorder.for_queue("work", "retrying")) == 2
    assert len(recorder.for_queue("work", "failed")) == 1


async def test_permanent_error_skips_remaining_attempts(make_queue):
    queue = make_queue()
    calls = []

    async def invalid(job):
        calls.append(job.id)
        raise PermanentJobError("repository does not exist")

    queue.process(1, invalid)
    await queue.start()
    handle = await queue.enqueue({})

    with pytest.raises(JobFailedError):
        await asyncio.wait_for(handle.finished(), 2)
    assert len(calls) == 1


async def test_transient_failure_then_success(make_queue):
    queue = make_queue(backoff_delay=0.01)
    attempts = []

    async def flaky(job):
        attempts.append(job.attempts_made)
        if len(attempts) == 1:
            raise ConnectionError("blip")
        return {"ok": True}

    queue.process(1, flaky)
    await queue.start()
    handle = await queue.enqueue({})

    assert await asyncio.wait_for(handle.finished(), 2) == {"ok": True}
    assert attempts == [1, 2]
    job = await handle.status()
    assert job.status == JobStatus.COMPLETED
    assert job.error is None


async def test_timeout_is_retried(make_queue):
    queue = make_queue(attempts=2, backoff_delay=0.01, timeout=0.05)
    calls = []

    async def slow(job):
        calls.append(job.attempts_made)
        await asyncio.sleep(1)
        return {}

    queue.process(1, slow)
    await queue.start()
    handle = await queue.enqueue({})

    with pytest.raises(JobFailedError) as exc_info:
        await asyncio.wait_for(handle.finished(), 3)
    assert calls == [1, 2]
    assert "JobTimeoutError" in exc_info.value.reason


async def test_concurrency_limit_is_respected(make_queue):
    queue = make_queue()
    running = 0
    peak = 0

    async def work(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        return {}

    queue.process(2, work)
    await queue.start()
    handles = [await queue.enqueue({"i": i}) for i in range(6)]
    await asyncio.wait_for(asyncio.gather(*(h.finished() for h in handles)), 3)

    assert peak <= 2


async def test_progress_is_persisted_and_emitted(make_queue, recorder):
    queue = make_queue()

    async def work(job):
        job.progress(30)
        job.progress(70)
        return {}

    queue.process(1, work)
    await queue.start()
    handle = await queue.enqueue({})
    await asyncio.wait_for(handle.finished(), 2)

    progress = [e.progress for e in recorder.for_queue("work", "progress")]
    assert progress == [30, 70]
    assert (await handle.status()).progress == 70


@pytest.mark.parametrize("value", [-1, 101, 50.5, True])
async def test_invalid_progress_fails_the_attempt(make_queue, value):
    queue = make_queue(attempts=1)

    async def work(job):
        job.progress(value)
        return {}

    queue.process(1, work)
    await queue.start()
    handle = await queue.enqueue({})

    with pytest.raises(JobFailedError) as exc_info:
        await asyncio.wait_for(handle.finished(), 2)
    assert "ValueError" in exc_info.value.reason


async def test_non_dict_result_is_a_permanent_failure(make_queue):
    queue = make_queue()
    calls = []

    async def work(job):
        calls.append(1)
        return "done"

    queue.process(1, work)
    await queue.start()
    handle = await queue.enqueue({})

    with pytest.raises(JobFailedError):
        await asyncio.wait_for(handle.finished(), 2)
    assert len(calls) == 1


async def test_waiting_jobs_in_store_are_resumed_on_start(store, make_queue):
    store.save(JobRecord(id="left-over", queue="work", data={"n": 3}))
    queue = make_queue()

    async def work(job):
        return {"n": job.data["n"]}

    queue.process(1, work)
    await queue.start()

    assert await asyncio.wait_for(queue.wait_for("left-over"), 2) == {"n": 3}


async def test_orphaned_active_job_is_requeued(store, make_queue, recorder):
    store.save(JobRecord(
        id="orphan",
        queue="work",
        status=JobStatus.ACTIVE,
        attempts_made=1,
        started_at=datetime.utcnow() - timedelta(hours=2),
    ))
    queue = make_queue()
    queue.process(1, lambda job: {"attempt": job.attempts_made})
    await queue.start()

    assert await asyncio.wait_for(queue.wait_for("orphan"), 2) == {"attempt": 2}
    assert [e.job_id for e in recorder.for_queue("work", "stalled")] == ["orphan"]


async def test_orphan_without_attempts_left_fails(store, make_queue):
    store.save(JobRecord(
        id="orphan",
        queue="work",
        status=JobStatus.ACTIVE,
        attempts_made=3,
        max_attempts=3,
        started_at=datetime.utcnow() - timedelta(hours=2),
    ))
    queue = make_queue()
    queue.process(1, lambda job: {})
    await queue.start()

    job = queue.get_job("orphan")
    assert job.status == JobStatus.FAILED
    assert "stalled" in job.error


async def test_completed_retention_keeps_newest(store, make_queue):
    queue = make_queue(completed_retention_count=2)
    queue.process(1, lambda job: {})
    await queue.start()

    for i in range(4):
        handle = await queue.enqueue({"i": i})
        await asyncio.wait_for(handle.finished(), 2)

    remaining = store.list("work", JobStatus.COMPLETED)
    assert sorted(j.data["i"] for j in remaining) == [2, 3]


async def test_expired_jobs_are_removed(store, make_queue):
    old = datetime.utcnow() - timedelta(days=8)
    store.save(JobRecord(id="old-done", queue="work", status=JobStatus.COMPLETED, finished_at=old))
    store.save(JobRecord(id="old-failed", queue="work", status=JobStatus.FAILED, finished_at=old))
    queue = make_queue()
    queue.process(1, lambda job: {})
    await queue.start()

    handle = await queue.enqueue({})
    await asyncio.wait_for(handle.finished(), 2)

    assert store.get("work", "old-done") is None
    assert store.get("work", "old-failed") is None
    assert store.get("work", handle.id) is not None


async def test_second_handler_is_rejected(make_queue):
    queue = make_queue()
    queue.process(1, lambda job: {})
    with pytest.raises(RuntimeError):
        queue.process(1, lambda job: {})


async def test_counts_by_status(make_queue):
    queue = make_queue()
    await queue.enqueue({})
    await queue.enqueue({})

    counts = queue.counts()
    assert counts["waiting"] == 2
    assert counts["completed"] == 0


def test_backoff_doubles_per_attempt():
    job = JobRecord(queue="work", backoff_delay=5.0)
    delays = []
    for attempts in (1, 2, 3):
        job.attempts_made = attempts
        delays.append(job.next_backoff())
    assert delays == [5.0, 10.0, 20.0]


def test_event_kinds_cover_queue_lifecycle():
    assert {k.value for k in EventKind} == {"completed", "failed", "progress", "retrying", "stalled"}


async def test_sync_timeout_keeps_worker_slot_until_thread_returns(make_queue):
    queue = make_queue(attempts=1, timeout=0.05)
    lock = threading.Lock()
    running = 0
    peak = 0

    def slow(job):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.2)
        with lock:
            running -= 1
        return {}

    queue.process(1, slow)
    await queue.start()
    handles = [await queue.enqueue({"i": i}) for i in range(3)]

    for handle in handles:
        with pytest.raises(JobFailedError):
            await asyncio.wait_for(handle.finished(), 3)
    assert peak == 1


async def test_timed_out_async_handler_is_cancelled(make_queue):
    queue = make_queue(attempts=1, timeout=0.05)
    cancelled = asyncio.Event()

    async def hang(job):
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return {}

    queue.process(1, hang)
    await queue.start()
    handle = await queue.enqueue({})

    with pytest.raises(JobFailedError):
        await asyncio.wait_for(handle.finished(), 2)
    assert cancelled.is_set()


async def test_running_job_is_not_stolen_by_another_process(store, recorder):
    events = EventBus()
    events.subscribe(recorder)
    release = asyncio.Event()
    calls = []

    async def hold(job):
        calls.append(job.id)
        await release.wait()
        return {}

    owner = JobQueue("work", store, JobOptions(), events,
                     stalled_job_timeout=0.1, stalled_check_interval=0.05)
    other = JobQueue("work", store, JobOptions(), events,
                     stalled_job_timeout=0.1, stalled_check_interval=0.05)
    owner.process(1, hold)
    other.process(1, hold)
    await owner.start()
    await other.start()
    try:
        handle = await owner.enqueue({})
        await asyncio.sleep(0.5)
        release.set()
        await asyncio.wait_for(handle.finished(), 2)
    finally:
        await owner.stop()
        await other.stop()

    assert len(calls) == 1
    assert recorder.for_queue("work", "stalled") == []


async def test_job_without_recent_heartbeat_is_requeued(store, make_queue):
    started = datetime.utcnow() - timedelta(hours=2)
    store.save(JobRecord(
        id="quiet",
        queue="work",
        status=JobStatus.ACTIVE,
        attempts_made=1,
        started_at=started,
        heartbeat_at=started + timedelta(minutes=5),
    ))
    queue = make_queue()
    queue.process(1, lambda job: {"attempt": job.attempts_made})
    await queue.start()

    assert await asyncio.wait_for(queue.wait_for("quiet"), 2) == {"attempt": 2}
