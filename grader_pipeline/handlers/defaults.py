"""Default stage handler set, keyed by the queue each one serves."""

from typing import Dict

from grader_pipeline.config import Settings
from grader_pipeline.handlers.clone import clone_repository
from grader_pipeline.handlers.code_analysis import analyze_code
from grader_pipeline.handlers.gpt_evaluation import evaluate_criterion
from grader_pipeline.handlers.report_generation import make_report_handler
from grader_pipeline.handlers.test_execution import run_tests
from grader_pipeline.jobs.queue import JobHandler
from grader_pipeline.jobs.registry import QueueNames


def default_handlers(settings: Settings) -> Dict[QueueNames, JobHandler]:
    return {
        QueueNames.GIT_CLONE: clone_repository,
        QueueNames.TEST_EXECUTION: run_tests,
        QueueNames.CODE_ANALYSIS: analyze_code,
        QueueNames.GPT_EVALUATION: evaluate_criterion,
        QueueNames.REPORT_GENERATION: make_report_handler(settings.reports_dir),
    }
