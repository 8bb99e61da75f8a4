"""Persistence backends for queued job records."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from grader_pipeline.jobs.models import JobRecord, JobStatus


class JobStore(ABC):
    """Abstract durable storage for job records (local or hosted)."""

    @abstractmethod
    def save(self, job: JobRecord) -> None:
        """Insert or replace a job record."""
        ...

    @abstractmethod
    def get(self, queue: str, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    def list(self, queue: str, status: Optional[JobStatus] = None) -> List[JobRecord]:
        """All records of a queue, optionally filtered by status."""
        ...

    @abstractmethod
    def delete(self, queue: str, job_id: str) -> None:
        ...


class MemoryJobStore(JobStore):
    """Process-local store. Records survive queue restarts, not process restarts."""

    def __init__(self):
        self._jobs: Dict[Tuple[str, str], JobRecord] = {}

    def save(self, job: JobRecord) -> None:
        self._jobs[(job.queue, job.id)] = job.model_copy(deep=True)

    def get(self, queue: str, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get((queue, job_id))
        return job.model_copy(deep=True) if job else None

    def list(self, queue: str, status: Optional[JobStatus] = None) -> List[JobRecord]:
        return [
            job.model_copy(deep=True)
            for (q, _), job in self._jobs.items()
            if q == queue and (status is None or job.status == status)
        ]

    def delete(self, queue: str, job_id: str) -> None:
        self._jobs.pop((queue, job_id), None)


class SupabaseJobStore(JobStore):
    """Stores one row per job: id, queue, status, record (JSON), updated_at."""

    def __init__(self, client, table: str = "pipeline_jobs"):
        self._client = client
        self._table = table

    def save(self, job: JobRecord) -> None:
        self._client.table(self._table).upsert({
            "id": job.id,
            "queue": job.queue,
            "status": job.status.value,
            "record": job.model_dump(mode="json"),
            "updated_at": datetime.utcnow().isoformat(),
        }).execute()

    def get(self, queue: str, job_id: str) -> Optional[JobRecord]:
        response = (
            self._client.table(self._table)
            .select("record")
            .eq("queue", queue)
            .eq("id", job_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return JobRecord.model_validate(response.data[0]["record"])

    def list(self, queue: str, status: Optional[JobStatus] = None) -> List[JobRecord]:
        query = self._client.table(self._table).select("record").eq("queue", queue)
        if status is not None:
            query = query.eq("status", status.value)
        response = query.execute()
        return [JobRecord.model_validate(row["record"]) for row in response.data or []]

    def delete(self, queue: str, job_id: str) -> None:
        self._client.table(self._table).delete().eq("queue", queue).eq("id", job_id).execute()
