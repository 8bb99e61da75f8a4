"""Per-submission work directories with guaranteed release and TTL sweeping."""

import logging
import os
import re
import shutil
import time
from typing import Optional

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class WorkDirectoryManager:
    """Hands out disjoint directories namespaced by submission and grading job."""

    def __init__(self, base_dir: str, ttl_hours: int = 6):
        self._base_dir = base_dir
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600

    @property
    def base_dir(self) -> str:
        return self._base_dir

    def path_for(self, submission_id: str, job_id: str) -> str:
        """Directory path for one grading run. Created later by the clone stage."""
        return os.path.join(self._base_dir, safe_segment(submission_id), safe_segment(job_id))

    def release(self, path: Optional[str]) -> bool:
        """Delete a work directory. Returns True if something was removed."""
        if not path or not os.path.isdir(path):
            return False
        if not os.path.abspath(path).startswith(os.path.abspath(self._base_dir) + os.sep):
            raise ValueError(f"Refusing to delete {path}: outside {self._base_dir}")
        shutil.rmtree(path, ignore_errors=True)
        parent = os.path.dirname(path)
        try:
            os.rmdir(parent)
        except OSError:
            pass  # other runs of the same submission still present
        return True

    def cleanup_expired(self) -> int:
        """Remove run directories older than TTL. Returns count of removed dirs."""
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for submission in os.listdir(self._base_dir):
            submission_dir = os.path.join(self._base_dir, submission)
            if not os.path.isdir(submission_dir):
                continue
            for entry in os.listdir(submission_dir):
                run_dir = os.path.join(submission_dir, entry)
                if not os.path.isdir(run_dir):
                    continue
                if now - os.path.getmtime(run_dir) > self._ttl_seconds:
                    shutil.rmtree(run_dir, ignore_errors=True)
                    removed += 1
            if not os.listdir(submission_dir):
                os.rmdir(submission_dir)
        if removed:
            logger.info("Removed %d expired work director%s", removed, "y" if removed == 1 else "ies")
        return removed


def safe_segment(value: str) -> str:
    cleaned = _UNSAFE.sub("_", str(value)).strip(".")
    return cleaned or "_"
