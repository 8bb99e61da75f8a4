"""Queue registry: one explicitly constructed owner for every pipeline queue."""

import logging
from enum import Enum
from typing import Dict, List, Optional

from grader_pipeline.config import Settings
from grader_pipeline.jobs.errors import UnknownQueueError
from grader_pipeline.jobs.models import JobOptions
from grader_pipeline.jobs.queue import JobHandler, JobQueue
from grader_pipeline.jobs.store import JobStore
from grader_pipeline.telemetry.events import EventBus

logger = logging.getLogger(__name__)


class QueueNames(str, Enum):
    GRADING = "grading"
    GIT_CLONE = "git-clone"
    TEST_EXECUTION = "test-execution"
    CODE_ANALYSIS = "code-analysis"
    GPT_EVALUATION = "gpt-evaluation"
    REPORT_GENERATION = "report-generation"


class QueueRegistry:
    """Creates, looks up, starts and stops named queues.

    - Built once at process start and handed to whoever needs queues
    - Handlers are attached per queue with their own concurrency
    - All queues share one job store and one event bus
    """

    def __init__(
        self,
        store: JobStore,
        events: Optional[EventBus] = None,
        default_concurrency: int = 2,
        stalled_job_timeout: float = 1800,
        stalled_check_interval: float = 60,
    ):
        self.store = store
        self.events = events or EventBus()
        self.default_concurrency = default_concurrency
        self._stalled_job_timeout = stalled_job_timeout
        self._stalled_check_interval = stalled_check_interval
        self._queues: Dict[str, JobQueue] = {}

    def create(self, name: str, options: Optional[JobOptions] = None) -> JobQueue:
        name = _key(name)
        if name in self._queues:
            raise ValueError(f"Queue '{name}' already exists")
        queue = JobQueue(
            name,
            self.store,
            options=options,
            events=self.events,
            stalled_job_timeout=self._stalled_job_timeout,
            stalled_check_interval=self._stalled_check_interval,
        )
        self._queues[name] = queue
        return queue

    def get(self, name: str) -> JobQueue:
        queue = self._queues.get(_key(name))
        if queue is None:
            raise UnknownQueueError(f"Queue '{_key(name)}' is not registered")
        return queue

    def __getitem__(self, name: str) -> JobQueue:
        return self.get(name)

    def __contains__(self, name: str) -> bool:
        return _key(name) in self._queues

    def register(self, name: str, handler: JobHandler, concurrency: Optional[int] = None) -> JobQueue:
        """Attach a handler to a queue."""
        queue = self.get(name)
        queue.process(concurrency or self.default_concurrency, handler)
        logger.info("Registered handler for '%s' (concurrency=%d)", queue.name, queue.concurrency)
        return queue

    def list_queues(self) -> List[str]:
        return list(self._queues.keys())

    def counts(self) -> Dict[str, Dict[str, int]]:
        return {name: queue.counts() for name, queue in self._queues.items()}

    async def start(self) -> None:
        for queue in self._queues.values():
            await queue.start()
        logger.info("Started %d queue(s)", len(self._queues))

    async def stop(self) -> None:
        for queue in self._queues.values():
            await queue.stop()


def _key(name) -> str:
    return name.value if isinstance(name, QueueNames) else str(name)


def build_registry(
    settings: Settings,
    store: JobStore,
    events: Optional[EventBus] = None,
) -> QueueRegistry:
    """Create the six pipeline queues with the shared retry/retention policy."""
    registry = QueueRegistry(
        store,
        events=events,
        default_concurrency=settings.concurrent_jobs,
        stalled_job_timeout=settings.stalled_job_timeout,
        stalled_check_interval=settings.stalled_check_interval,
    )
    for name in QueueNames:
        registry.create(name, JobOptions(
            attempts=settings.job_attempts,
            backoff_delay=settings.job_backoff_delay,
            timeout=settings.stage_timeouts.get(name.value),
            completed_retention_seconds=settings.completed_retention_seconds,
            completed_retention_count=settings.completed_retention_count,
            failed_retention_seconds=settings.failed_retention_seconds,
        ))
    return registry
