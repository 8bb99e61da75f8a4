"""Code analysis stage: file and line statistics for the checked-out repository."""

import logging
import os
from collections import Counter
from typing import Any, Dict

from grader_pipeline.jobs.errors import PermanentJobError
from grader_pipeline.jobs.queue import JobContext
from grader_pipeline.pipeline.stages import CodeAnalysisJob, CodeAnalysisResult

logger = logging.getLogger(__name__)

SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".next"}

# Only these extensions are counted as source code
SOURCE_EXTENSIONS = {
    ".py", ".js", ".jsx", ".ts", ".tsx", ".java", ".c", ".h", ".cpp", ".hpp",
    ".cs", ".go", ".rs", ".rb", ".php", ".kt", ".swift", ".html", ".css", ".sql",
}


def collect_metrics(root: str) -> Dict[str, Any]:
    """Walk a checkout and count source files and lines per extension."""
    files_by_ext: Counter = Counter()
    lines_by_ext: Counter = Counter()
    other_files = 0

    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
        for filename in filenames:
            ext = os.path.splitext(filename)[1].lower()
            if ext not in SOURCE_EXTENSIONS:
                other_files += 1
                continue
            files_by_ext[ext] += 1
            with open(os.path.join(dirpath, filename), "rb") as f:
                lines_by_ext[ext] += sum(1 for _ in f)

    return {
        "source_files": sum(files_by_ext.values()),
        "source_lines": sum(lines_by_ext.values()),
        "other_files": other_files,
        "files_by_extension": dict(files_by_ext),
        "lines_by_extension": dict(lines_by_ext),
    }


def summarize(metrics: Dict[str, Any]) -> str:
    if not metrics["source_files"]:
        return "No source files found."
    parts = [
        f"{ext} ({metrics['files_by_extension'][ext]} files, {lines} lines)"
        for ext, lines in sorted(
            metrics["lines_by_extension"].items(), key=lambda item: item[1], reverse=True
        )
    ]
    return (
        f"{metrics['source_files']} source files, {metrics['source_lines']} lines. "
        f"By language: {', '.join(parts)}."
    )


def analyze_code(job: JobContext) -> CodeAnalysisResult:
    payload = CodeAnalysisJob.model_validate(job.data)
    if not os.path.isdir(payload.work_dir):
        raise PermanentJobError(f"Work directory {payload.work_dir} does not exist")

    metrics = collect_metrics(payload.work_dir)
    job.progress(100)
    logger.info(
        "Submission %s: %d source files, %d lines",
        payload.submission_id, metrics["source_files"], metrics["source_lines"],
    )
    return CodeAnalysisResult(success=True, summary=summarize(metrics), metrics=metrics)
