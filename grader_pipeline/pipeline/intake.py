"""Inbound entry point: accept a grading request and enqueue it."""

import logging
from typing import Any, Dict, Union

from grader_pipeline.jobs.dispatcher import JobHandle
from grader_pipeline.jobs.registry import QueueNames, QueueRegistry
from grader_pipeline.pipeline.stages import GradingJobData

logger = logging.getLogger(__name__)


async def submit_grading(
    registry: QueueRegistry,
    request: Union[GradingJobData, Dict[str, Any]],
) -> JobHandle:
    """Enqueue one grading job and return at once.

    Re-submitting the same submission and attempt number starts an
    independent run; nothing is deduplicated.
    """
    if not isinstance(request, GradingJobData):
        request = GradingJobData.model_validate(request)
    handle = await registry.get(QueueNames.GRADING).enqueue(request)
    logger.info(
        "Accepted grading job %s for submission %s (attempt %d)",
        handle.id, request.submission_id, request.attempt_number,
    )
    return handle
