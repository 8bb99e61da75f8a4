"""Report generation stage: render the aggregated results as Markdown."""

import logging
import os
from pathlib import Path
from typing import Callable, List

from grader_pipeline.jobs.queue import JobContext
from grader_pipeline.pipeline.stages import ReportGenerationJob, ReportGenerationResult
from grader_pipeline.storage.work_dirs import safe_segment

logger = logging.getLogger(__name__)


def render_report(payload: ReportGenerationJob) -> str:
    grade = payload.grade
    tests = payload.test_results
    lines: List[str] = [
        f"# Grading report: submission {payload.submission_id}",
        "",
        f"- Commit: `{payload.commit_hash}`",
        f"- Score: {grade.total_score:g} / {grade.max_score:g} ({grade.percentage:g}%)",
        f"- Grade: {grade.letter_grade}",
        f"- Build: {'succeeded' if grade.build_success else 'failed'}",
        "",
        "## Tests",
        "",
        f"{tests.passed_tests} of {tests.total_tests} passed, {tests.failed_tests} failed.",
        "",
        "## Code analysis",
        "",
        payload.code_analysis.summary,
        "",
    ]
    if grade.criteria:
        lines += ["## Criteria", "", "| Criterion | Points |", "|---|---|"]
        lines += [f"| {cid} | {points:g} |" for cid, points in grade.criteria.items()]
        lines.append("")
    for evaluation in payload.evaluations:
        lines += [
            f"### {evaluation.criterion_id}: {evaluation.score:g} / {evaluation.max_score:g}",
            "",
            evaluation.justification,
            "",
        ]
    return "\n".join(lines)


def make_report_handler(reports_dir: str) -> Callable[[JobContext], ReportGenerationResult]:
    """Build a handler that writes reports under `reports_dir`."""

    def generate_report(job: JobContext) -> ReportGenerationResult:
        payload = ReportGenerationJob.model_validate(job.data)
        target_dir = os.path.join(reports_dir, safe_segment(payload.submission_id))
        os.makedirs(target_dir, exist_ok=True)
        path = Path(target_dir, f"{safe_segment(payload.grading_job_id)}.md")
        path.write_text(render_report(payload), encoding="utf-8")
        job.progress(100)
        logger.info("Report for submission %s written to %s", payload.submission_id, path)
        return ReportGenerationResult(success=True, report_url=path.resolve().as_uri())

    return generate_report
