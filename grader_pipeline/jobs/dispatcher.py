"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from grader_pipeline.jobs.models import JobOptions, JobRecord


class JobDispatcher(ABC):
    """Abstract interface for a named job queue (local or hosted)."""

    @abstractmethod
    async def enqueue(
        self,
        payload: Union[Dict[str, Any], BaseModel],
        options: Optional[JobOptions] = None,
    ) -> "JobHandle":
        """Add a job to the queue. Returns without waiting for execution."""
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobRecord]:
        """Get current state of a job."""
        ...

    @abstractmethod
    async def wait_for(self, job_id: str) -> Dict[str, Any]:
        """Block until the job is completed or failed."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the worker loop(s)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the workers gracefully."""
        ...


class JobHandle:
    """Reference to an enqueued job."""

    def __init__(self, dispatcher: JobDispatcher, queue: str, job_id: str):
        self._dispatcher = dispatcher
        self.queue = queue
        self.id = job_id

    async def finished(self) -> Dict[str, Any]:
        """Result of the job once completed. Raises JobFailedError if it failed."""
        return await self._dispatcher.wait_for(self.id)

    async def status(self) -> Optional[JobRecord]:
        return await self._dispatcher.get_status(self.id)

    def __repr__(self) -> str:
        return f"JobHandle(queue={self.queue!r}, id={self.id!r})"
