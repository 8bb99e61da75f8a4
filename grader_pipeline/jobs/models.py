"""Job record data model for queued processing."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import uuid


class JobStatus(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobOptions(BaseModel):
    """Retry, timeout and retention policy for jobs of one queue."""
    attempts: int = 3
    backoff_delay: float = 5.0
    timeout: Optional[float] = None
    completed_retention_seconds: int = 86400
    completed_retention_count: int = 1000
    failed_retention_seconds: int = 604800


class JobRecord(BaseModel):
    """Tracks the lifecycle of one queued job."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    queue: str
    data: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_delay: float = 5.0
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    stacktrace: List[str] = Field(default_factory=list)
    timeout: Optional[float] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    run_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def next_backoff(self) -> float:
        """Delay before the next attempt: base, 2*base, 4*base, ..."""
        return self.backoff_delay * (2 ** max(self.attempts_made - 1, 0))
