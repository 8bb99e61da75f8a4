"""GPT evaluation stage.

LLM prompting lives outside this service; deployments register their own
evaluator on the gpt-evaluation queue. The default only scores zero so the
pipeline can run end to end. Evaluators must treat the work directory as
read-only since several evaluations of one submission run at once.
"""

import logging

from grader_pipeline.jobs.queue import JobContext
from grader_pipeline.pipeline.stages import GPTEvaluationJob, GPTEvaluationResult

logger = logging.getLogger(__name__)


def evaluate_criterion(job: JobContext) -> GPTEvaluationResult:
    payload = GPTEvaluationJob.model_validate(job.data)
    logger.info(
        "Submission %s: evaluating criterion %s (no evaluator configured)",
        payload.submission_id, payload.criterion_id,
    )
    job.progress(100)
    return GPTEvaluationResult(
        success=True,
        criterion_id=payload.criterion_id,
        score=0.0,
        max_score=payload.max_points,
        justification="Automatic evaluation is not configured for this deployment.",
    )
