"""Queue event bus and the default logging sink.

Queues emit an event whenever a job completes, fails for good, is scheduled
for a retry, reports progress, or is recovered after its worker died.
Observers subscribe to the bus; an observer that raises is logged and
skipped so telemetry never affects job processing.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PROGRESS = "progress"
    RETRYING = "retrying"
    STALLED = "stalled"


@dataclass
class QueueEvent:
    kind: EventKind
    queue: str
    job_id: str
    progress: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    attempt: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)


EventListener = Callable[[QueueEvent], None]


class EventBus:
    def __init__(self):
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: QueueEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener %r failed on %s event for job %s",
                    listener, event.kind.value, event.job_id,
                )


class LoggingEventSink:
    """Writes one log record per queue event."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logging.getLogger("grader_pipeline.events")

    def __call__(self, event: QueueEvent) -> None:
        extra = {"queue": event.queue, "job_id": event.job_id, "event": event.kind.value}
        if event.kind == EventKind.COMPLETED:
            self._log.info("[%s] job %s completed: %s", event.queue, event.job_id, event.result, extra=extra)
        elif event.kind == EventKind.FAILED:
            self._log.error(
                "[%s] job %s failed after %d attempt(s): %s",
                event.queue, event.job_id, event.attempt, event.error, extra=extra,
            )
        elif event.kind == EventKind.RETRYING:
            self._log.warning(
                "[%s] job %s attempt %d failed, retrying: %s",
                event.queue, event.job_id, event.attempt, event.error, extra=extra,
            )
        elif event.kind == EventKind.STALLED:
            self._log.warning("[%s] job %s stalled, re-queued", event.queue, event.job_id, extra=extra)
        else:
            self._log.info("[%s] job %s progress: %s%%", event.queue, event.job_id, event.progress, extra=extra)
