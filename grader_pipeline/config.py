"""Application configuration via environment variables."""

import os
import tempfile
from typing import Dict, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Queue backing store
    queue_backend: str = "memory"  # "memory" or "supabase"
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    queue_table: str = "pipeline_jobs"

    # Workers
    concurrent_jobs: int = 2
    queue_concurrency: Dict[str, int] = {}

    # Retry policy (applies to every queue)
    job_attempts: int = 3
    job_backoff_delay: float = 5.0

    # Retention windows
    completed_retention_seconds: int = 86400
    completed_retention_count: int = 1000
    failed_retention_seconds: int = 604800

    # Per-queue wall-clock timeouts in seconds, keyed by queue name
    stage_timeouts: Dict[str, Optional[float]] = {
        "git-clone": 300,
        "test-execution": 600,
        "code-analysis": 300,
        "gpt-evaluation": 120,
        "report-generation": 120,
    }

    # Orphaned job detection
    stalled_job_timeout: float = 1800
    stalled_check_interval: float = 60

    # Filesystem
    work_root: str = os.path.join(tempfile.gettempdir(), "grader_work")
    reports_dir: str = os.path.join(tempfile.gettempdir(), "grader_reports")
    work_dir_ttl_hours: int = 6

    # Service
    api_port: int = 8002
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def concurrency_for(self, queue_name: str) -> int:
        return self.queue_concurrency.get(queue_name, self.concurrent_jobs)


settings = Settings()
