"""Clone stage: fetch the student's repository into its work directory."""

import asyncio
import logging
import os
import re
import shutil
from typing import Optional
from urllib.parse import urlparse

from grader_pipeline.jobs.errors import PermanentJobError
from grader_pipeline.jobs.queue import JobContext
from grader_pipeline.pipeline.stages import CloneJob, CloneResult

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("https", "http", "ssh", "git")

# scp-like syntax git accepts for ssh remotes: user@host:path
SCP_LIKE = re.compile(r"^[\w.-]+@[\w.-]+:(?!//)\S+$")


def validate_repo_url(url: str) -> str:
    """Reject URLs that no number of retries would make cloneable."""
    url = url.strip()
    if SCP_LIKE.match(url):
        return url
    parsed = urlparse(url)
    if parsed.scheme not in ALLOWED_SCHEMES or not parsed.netloc:
        raise PermanentJobError(f"Invalid repository URL: {url!r}")
    if not parsed.path.strip("/"):
        raise PermanentJobError(f"Repository URL has no repository path: {url!r}")
    return url


async def _git(*args: str, cwd: Optional[str] = None) -> str:
    process = await asyncio.create_subprocess_exec(
        "git", *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise
    if process.returncode != 0:
        raise RuntimeError(f"git {args[0]} failed ({process.returncode}): {stderr.decode().strip()}")
    return stdout.decode().strip()


async def clone_repository(job: JobContext) -> CloneResult:
    payload = CloneJob.model_validate(job.data)
    url = validate_repo_url(payload.github_repo_url)
    logger.info("Cloning %s for submission %s", url, payload.submission_id)

    # A previous attempt may have left a partial checkout behind.
    if os.path.exists(payload.work_dir):
        shutil.rmtree(payload.work_dir)
    os.makedirs(os.path.dirname(payload.work_dir), exist_ok=True)

    await _git("clone", "--depth", "1", url, payload.work_dir)
    commit_hash = await _git("rev-parse", "HEAD", cwd=payload.work_dir)
    job.progress(100)

    return CloneResult(success=True, work_dir=payload.work_dir, commit_hash=commit_hash)
