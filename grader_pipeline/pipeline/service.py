"""Wiring for one pipeline process: store, queues, handlers and orchestrator."""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from grader_pipeline.config import Settings
from grader_pipeline.db.repository import GradingRepository, InMemoryGradingRepository, SupabaseGradingRepository
from grader_pipeline.handlers.defaults import default_handlers
from grader_pipeline.jobs.queue import JobHandler
from grader_pipeline.jobs.registry import QueueNames, QueueRegistry, build_registry
from grader_pipeline.jobs.store import JobStore, MemoryJobStore, SupabaseJobStore
from grader_pipeline.pipeline.orchestrator import GradingOrchestrator
from grader_pipeline.storage.work_dirs import WorkDirectoryManager
from grader_pipeline.telemetry.events import EventBus, LoggingEventSink

logger = logging.getLogger(__name__)


@dataclass
class PipelineService:
    registry: QueueRegistry
    orchestrator: GradingOrchestrator
    repository: GradingRepository
    work_dirs: WorkDirectoryManager
    events: EventBus

    async def start(self) -> None:
        await self.registry.start()

    async def stop(self) -> None:
        await self.registry.stop()
        self.work_dirs.cleanup_expired()


def build_service(
    settings: Settings,
    store: Optional[JobStore] = None,
    repository: Optional[GradingRepository] = None,
    handlers: Optional[Dict[QueueNames, JobHandler]] = None,
    events: Optional[EventBus] = None,
) -> PipelineService:
    """Assemble the pipeline. Anything not passed in comes from settings."""
    if store is None or repository is None:
        if settings.queue_backend == "supabase":
            from grader_pipeline.db.supabase_client import get_supabase

            client = get_supabase(settings)
            store = store or SupabaseJobStore(client, settings.queue_table)
            repository = repository or SupabaseGradingRepository(client)
        elif settings.queue_backend == "memory":
            store = store or MemoryJobStore()
            repository = repository or InMemoryGradingRepository()
        else:
            raise ValueError(f"Unknown queue backend: {settings.queue_backend!r}")

    if events is None:
        events = EventBus()
        events.subscribe(LoggingEventSink())

    registry = build_registry(settings, store, events)
    work_dirs = WorkDirectoryManager(settings.work_root, ttl_hours=settings.work_dir_ttl_hours)
    orchestrator = GradingOrchestrator(
        registry,
        repository,
        work_dirs,
        finished_run_limit=settings.completed_retention_count,
        finished_run_ttl=settings.completed_retention_seconds,
    )

    stage_handlers = {QueueNames(k): v for k, v in default_handlers(settings).items()}
    stage_handlers.update({QueueNames(k): v for k, v in (handlers or {}).items()})
    if QueueNames.GRADING in stage_handlers:
        raise ValueError("The grading queue is always served by the orchestrator")

    registry.register(
        QueueNames.GRADING,
        orchestrator.process_grading_job,
        settings.concurrency_for(QueueNames.GRADING.value),
    )
    for name, handler in stage_handlers.items():
        registry.register(name, handler, settings.concurrency_for(name.value))

    logger.info("Pipeline assembled with '%s' backend", settings.queue_backend)
    return PipelineService(
        registry=registry,
        orchestrator=orchestrator,
        repository=repository,
        work_dirs=work_dirs,
        events=events,
    )
