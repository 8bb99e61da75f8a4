"""Durable job queue running handlers on asyncio worker tasks.

Records live in a JobStore so waiting, delayed and orphaned jobs can be
picked up again after a restart. Each queue runs `concurrency` worker tasks;
synchronous handlers are pushed to the default thread executor so they do
not block the event loop.
"""

import asyncio
import inspect
import logging
import traceback
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pydantic import BaseModel

from grader_pipeline.jobs.dispatcher import JobDispatcher, JobHandle
from grader_pipeline.jobs.errors import JobFailedError, JobTimeoutError, PermanentJobError
from grader_pipeline.jobs.models import JobOptions, JobRecord, JobStatus
from grader_pipeline.jobs.store import JobStore
from grader_pipeline.telemetry.events import EventBus, EventKind, QueueEvent

logger = logging.getLogger(__name__)


class JobContext:
    """What a handler receives: the job payload plus a progress reporter."""

    def __init__(self, queue: "JobQueue", job: JobRecord):
        self._queue = queue
        self.job = job

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def queue(self) -> str:
        return self.job.queue

    @property
    def data(self) -> Dict[str, Any]:
        return self.job.data

    @property
    def attempts_made(self) -> int:
        return self.job.attempts_made

    def progress(self, value: int) -> None:
        """Record an integer progress value between 0 and 100."""
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
            raise ValueError(f"Progress must be an integer between 0 and 100, got {value!r}")
        self.job.progress = value
        self._queue._store.save(self.job)
        self._queue._emit(EventKind.PROGRESS, self.job, progress=value)


JobHandler = Callable[[JobContext], Any]


class JobQueue(JobDispatcher):
    """Named queue with retry/backoff, timeouts, retention and stall recovery."""

    def __init__(
        self,
        name: str,
        store: JobStore,
        options: Optional[JobOptions] = None,
        events: Optional[EventBus] = None,
        stalled_job_timeout: float = 1800,
        stalled_check_interval: float = 60,
    ):
        self.name = name
        self.options = options or JobOptions()
        self._store = store
        self._events = events or EventBus()
        self._stalled_job_timeout = stalled_job_timeout
        self._stalled_check_interval = stalled_check_interval
        self._pending: asyncio.Queue[str] = asyncio.Queue()
        self._handler: Optional[JobHandler] = None
        self._concurrency = 1
        self._workers: List[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()
        self._watcher: Optional[asyncio.Task] = None
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._active: Set[str] = set()
        self._running = False

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def is_running(self) -> bool:
        return self._running

    async def enqueue(
        self,
        payload: Union[Dict[str, Any], BaseModel],
        options: Optional[JobOptions] = None,
    ) -> JobHandle:
        opts = options or self.options
        if isinstance(payload, BaseModel):
            data = payload.model_dump(mode="json")
        else:
            data = dict(payload)
        job = JobRecord(
            queue=self.name,
            data=data,
            max_attempts=opts.attempts,
            backoff_delay=opts.backoff_delay,
            timeout=opts.timeout,
        )
        self._store.save(job)
        self._pending.put_nowait(job.id)
        return JobHandle(self, self.name, job.id)

    def process(self, concurrency: int, handler: JobHandler) -> None:
        """Register the handler invoked for every job of this queue."""
        if self._handler is not None:
            raise RuntimeError(f"Queue '{self.name}' already has a handler")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._handler = handler
        self._concurrency = concurrency
        if self._running:
            self._spawn_workers()

    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        return self._store.get(self.name, job_id)

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self._store.get(self.name, job_id)

    def counts(self) -> Dict[str, int]:
        return {status.value: len(self._store.list(self.name, status)) for status in JobStatus}

    async def wait_for(self, job_id: str) -> Dict[str, Any]:
        job = self._store.get(self.name, job_id)
        if job is None:
            raise KeyError(f"Job {job_id} not found on queue '{self.name}'")
        if job.is_terminal:
            return self._outcome(job)
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(job_id, []).append(future)
        return await future

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._restore()
        if self._handler is not None:
            self._spawn_workers()
        else:
            logger.info("Queue '%s' started without a handler (producer only)", self.name)
        self._watcher = asyncio.create_task(self._stall_watch())

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._workers, *self._timers]
        if self._watcher:
            tasks.append(self._watcher)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._timers.clear()
        self._watcher = None

    def _spawn_workers(self) -> None:
        for _ in range(self._concurrency - len(self._workers)):
            self._workers.append(asyncio.create_task(self._worker_loop()))

    async def _worker_loop(self) -> None:
        """Take jobs off the pending list and run them one at a time."""
        while self._running:
            try:
                job_id = await asyncio.wait_for(self._pending.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            await self._run_job(job_id)

    async def _run_job(self, job_id: str) -> None:
        job = self._store.get(self.name, job_id)
        # Duplicate ids can be queued after restore; only waiting jobs run.
        if job is None or job.status != JobStatus.WAITING:
            return

        job.status = JobStatus.ACTIVE
        job.started_at = datetime.utcnow()
        job.heartbeat_at = job.started_at
        job.run_at = None
        job.attempts_made += 1
        self._store.save(job)
        self._active.add(job.id)

        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            try:
                result = await self._invoke(JobContext(self, job))
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
        except PermanentJobError as e:
            self._fail(job, e, final=True)
        except Exception as e:
            self._fail(job, e, final=job.attempts_made >= job.max_attempts)
        else:
            self._complete(job, result)
        finally:
            self._active.discard(job.id)

    async def _heartbeat(self, job: JobRecord) -> None:
        """Keep an active job's lease fresh so other processes leave it alone."""
        interval = max(self._stalled_job_timeout / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            job.heartbeat_at = datetime.utcnow()
            self._store.save(job)

    async def _invoke(self, ctx: JobContext) -> Dict[str, Any]:
        handler = self._handler
        if _is_async(handler):
            call = asyncio.ensure_future(handler(ctx))
        else:
            loop = asyncio.get_running_loop()
            call = loop.run_in_executor(None, handler, ctx)

        try:
            done, _ = await asyncio.wait({call}, timeout=ctx.job.timeout or None)
        except asyncio.CancelledError:
            call.cancel()
            raise

        if call not in done:
            if isinstance(call, asyncio.Task):
                call.cancel()
            # Executor threads cannot be interrupted; the slot stays taken until it returns.
            await asyncio.gather(call, return_exceptions=True)
            raise JobTimeoutError(self.name, ctx.id, ctx.job.timeout)

        result = call.result()
        if result is None:
            return {}
        if isinstance(result, BaseModel):
            return result.model_dump(mode="json")
        if isinstance(result, dict):
            return result
        raise PermanentJobError(
            f"Handler for '{self.name}' returned {type(result).__name__}, expected a dict or model"
        )

    def _complete(self, job: JobRecord, result: Dict[str, Any]) -> None:
        job.status = JobStatus.COMPLETED
        job.result = result
        job.error = None
        job.finished_at = datetime.utcnow()
        self._store.save(job)
        self._emit(EventKind.COMPLETED, job, result=result)
        self._resolve(job)
        self._clean()

    def _fail(self, job: JobRecord, exc: Exception, final: bool) -> None:
        job.error = f"{type(exc).__name__}: {exc}"
        job.stacktrace.append(traceback.format_exc())

        if not final:
            delay = job.next_backoff()
            job.status = JobStatus.DELAYED
            job.run_at = datetime.utcnow() + timedelta(seconds=delay)
            self._store.save(job)
            self._emit(EventKind.RETRYING, job, error=job.error)
            self._schedule(job.id, delay)
            return

        job.status = JobStatus.FAILED
        job.finished_at = datetime.utcnow()
        self._store.save(job)
        self._emit(EventKind.FAILED, job, error=job.error)
        self._resolve(job)
        self._clean()

    def _schedule(self, job_id: str, delay: float) -> None:
        task = asyncio.create_task(self._promote_after(job_id, delay))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _promote_after(self, job_id: str, delay: float) -> None:
        await asyncio.sleep(max(delay, 0))
        job = self._store.get(self.name, job_id)
        if job is None or job.status != JobStatus.DELAYED:
            return
        job.status = JobStatus.WAITING
        self._store.save(job)
        self._pending.put_nowait(job_id)

    def _restore(self) -> None:
        """Re-schedule jobs left in the store by an earlier run."""
        now = datetime.utcnow()
        for job in self._store.list(self.name, JobStatus.WAITING):
            self._pending.put_nowait(job.id)
        for job in self._store.list(self.name, JobStatus.DELAYED):
            remaining = (job.run_at - now).total_seconds() if job.run_at else 0
            self._schedule(job.id, remaining)
        self._recover_stalled()

    def _recover_stalled(self) -> int:
        """Requeue active jobs whose worker stopped heartbeating. Returns how many were found."""
        cutoff = datetime.utcnow() - timedelta(seconds=self._stalled_job_timeout)
        recovered = 0
        for job in self._store.list(self.name, JobStatus.ACTIVE):
            if job.id in self._active:
                continue
            last_seen = job.heartbeat_at or job.started_at
            if last_seen and last_seen > cutoff:
                continue
            recovered += 1
            self._emit(EventKind.STALLED, job)
            if job.attempts_made >= job.max_attempts:
                job.error = "Job stalled and has no attempts left"
                job.status = JobStatus.FAILED
                job.finished_at = datetime.utcnow()
                self._store.save(job)
                self._emit(EventKind.FAILED, job, error=job.error)
                self._resolve(job)
                continue
            job.status = JobStatus.WAITING
            self._store.save(job)
            self._pending.put_nowait(job.id)
        return recovered

    async def _stall_watch(self) -> None:
        while self._running:
            await asyncio.sleep(self._stalled_check_interval)
            self._recover_stalled()

    def _clean(self) -> None:
        """Apply the retention windows to finished jobs."""
        now = datetime.utcnow()
        opts = self.options
        completed = sorted(
            self._store.list(self.name, JobStatus.COMPLETED),
            key=lambda j: j.finished_at or j.created_at,
            reverse=True,
        )
        for index, job in enumerate(completed):
            age = (now - (job.finished_at or job.created_at)).total_seconds()
            if index >= opts.completed_retention_count or age > opts.completed_retention_seconds:
                self._store.delete(self.name, job.id)
        for job in self._store.list(self.name, JobStatus.FAILED):
            age = (now - (job.finished_at or job.created_at)).total_seconds()
            if age > opts.failed_retention_seconds:
                self._store.delete(self.name, job.id)

    def _resolve(self, job: JobRecord) -> None:
        for future in self._waiters.pop(job.id, []):
            if future.done():
                continue
            try:
                future.set_result(self._outcome(job))
            except JobFailedError as e:
                future.set_exception(e)

    def _outcome(self, job: JobRecord) -> Dict[str, Any]:
        if job.status == JobStatus.FAILED:
            raise JobFailedError(self.name, job.id, job.error or "Job failed")
        return job.result or {}

    def _emit(self, kind: EventKind, job: JobRecord, **fields) -> None:
        self._events.emit(QueueEvent(
            kind=kind,
            queue=self.name,
            job_id=job.id,
            attempt=job.attempts_made,
            **fields,
        ))


def _is_async(handler: Callable) -> bool:
    if inspect.iscoroutinefunction(handler):
        return True
    call = getattr(handler, "__call__", None)
    return inspect.iscoroutinefunction(call)
