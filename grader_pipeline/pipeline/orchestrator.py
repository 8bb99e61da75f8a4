"""Grading orchestrator.

Drives one grading job through its stages. The grading queue's handler is
`GradingOrchestrator.process_grading_job`; every stage is a job on its own
queue, and the next stage is only enqueued once the previous stage's result
is in hand:

    ACCEPTED -> CLONING -> TESTING -> ANALYZING -> EVALUATING -> REPORTING -> COMPLETE
                      \\-> (any stage) -> FAILED

A stage that exhausts its attempts ends the whole run: the failure is
reported to the persistence layer, no report is produced, and the grading
job itself fails without being retried. The run's work directory is
released on both terminal paths.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Type

from pydantic import BaseModel, ValidationError

from grader_pipeline.db.repository import GradingRepository
from grader_pipeline.jobs.errors import JobFailedError
from grader_pipeline.jobs.queue import JobContext
from grader_pipeline.jobs.registry import QueueNames, QueueRegistry
from grader_pipeline.pipeline.errors import (
    GradingCancelledError,
    StageContractError,
    StageFailedError,
)
from grader_pipeline.pipeline.scorer import compute_grade
from grader_pipeline.pipeline.stages import (
    CloneJob,
    CloneResult,
    CodeAnalysisJob,
    CodeAnalysisResult,
    GPTEvaluationJob,
    GPTEvaluationResult,
    GradingFailure,
    GradingJobData,
    GradingOutcome,
    ReportGenerationJob,
    ReportGenerationResult,
    Rubric,
    Stage,
    StageResult,
    TestExecutionJob,
    TestExecutionResult,
)
from grader_pipeline.storage.work_dirs import WorkDirectoryManager

logger = logging.getLogger(__name__)


class GradingState(str, Enum):
    ACCEPTED = "accepted"
    CLONING = "cloning"
    TESTING = "testing"
    ANALYZING = "analyzing"
    EVALUATING = "evaluating"
    REPORTING = "reporting"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = (GradingState.COMPLETE, GradingState.FAILED)

# Which stage each working state runs
STATE_STAGES: Dict[GradingState, Stage] = {
    GradingState.CLONING: Stage.CLONE,
    GradingState.TESTING: Stage.TEST_EXECUTION,
    GradingState.ANALYZING: Stage.CODE_ANALYSIS,
    GradingState.EVALUATING: Stage.GPT_EVALUATION,
    GradingState.REPORTING: Stage.REPORT_GENERATION,
}

STAGE_QUEUES: Dict[Stage, QueueNames] = {
    Stage.CLONE: QueueNames.GIT_CLONE,
    Stage.TEST_EXECUTION: QueueNames.TEST_EXECUTION,
    Stage.CODE_ANALYSIS: QueueNames.CODE_ANALYSIS,
    Stage.GPT_EVALUATION: QueueNames.GPT_EVALUATION,
    Stage.REPORT_GENERATION: QueueNames.REPORT_GENERATION,
}

# Grading job progress once each state has finished
PROGRESS_AFTER: Dict[GradingState, int] = {
    GradingState.ACCEPTED: 10,
    GradingState.CLONING: 25,
    GradingState.TESTING: 45,
    GradingState.ANALYZING: 60,
    GradingState.EVALUATING: 80,
    GradingState.REPORTING: 95,
    GradingState.COMPLETE: 100,
}


@dataclass
class GradingRun:
    """In-process view of one grading job's progress through the pipeline."""
    job_id: str
    submission_id: str
    state: GradingState = GradingState.ACCEPTED
    history: List[GradingState] = field(default_factory=lambda: [GradingState.ACCEPTED])
    work_dir: Optional[str] = None
    stage_jobs: Dict[str, List[str]] = field(default_factory=dict)
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def current_stage(self) -> str:
        stage = STATE_STAGES.get(self.state)
        return stage.value if stage else self.state.value

    def advance(self, state: GradingState) -> None:
        if self.is_terminal:
            raise RuntimeError(
                f"Grading job {self.job_id} is already {self.state.value}, cannot move to {state.value}"
            )
        self.state = state
        self.history.append(state)
        if state in TERMINAL_STATES:
            self.finished_at = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "submission_id": self.submission_id,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "stage_jobs": self.stage_jobs,
            "failed_stage": self.failed_stage,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class GradingOrchestrator:
    """Handler for the grading queue; advances each run stage by stage."""

    def __init__(
        self,
        registry: QueueRegistry,
        repository: GradingRepository,
        work_dirs: WorkDirectoryManager,
        finished_run_limit: int = 1000,
        finished_run_ttl: float = 86400,
    ):
        self._registry = registry
        self._repository = repository
        self._work_dirs = work_dirs
        self._finished_run_limit = finished_run_limit
        self._finished_run_ttl = finished_run_ttl
        self._runs: Dict[str, GradingRun] = {}
        self._cancelled: Set[str] = set()

    def get_run(self, job_id: str) -> Optional[GradingRun]:
        return self._runs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """Ask a grading job to stop before its next stage.

        Returns False if the run already finished in this process.
        """
        run = self._runs.get(job_id)
        if run is not None and run.is_terminal:
            return False
        self._cancelled.add(job_id)
        logger.info("Cancellation requested for grading job %s", job_id)
        return True

    async def process_grading_job(self, job: JobContext) -> Dict[str, Any]:
        run = GradingRun(job_id=job.id, submission_id=str(job.data.get("submission_id", "")))
        self._runs[job.id] = run
        logger.info("Processing grading job %s for submission %s", job.id, run.submission_id)

        try:
            outcome = await self._run_pipeline(job, run)
        except StageFailedError as e:
            self._fail(run, e.stage, e.message)
            raise
        except Exception as e:
            stage = run.current_stage
            message = f"{type(e).__name__}: {e}"
            logger.exception("Grading job %s failed in %s", job.id, stage)
            self._fail(run, stage, message)
            raise StageFailedError(stage, message) from e
        finally:
            self._cancelled.discard(job.id)
            if run.work_dir:
                self._work_dirs.release(run.work_dir)
            if not run.is_terminal:
                # Interrupted by shutdown; the queue re-runs the job from scratch.
                self._runs.pop(job.id, None)
            self._prune_runs()

        return {
            "success": True,
            "submission_id": outcome.submission_id,
            "total_score": outcome.total_score,
            "max_score": outcome.max_score,
            "percentage": outcome.percentage,
            "letter_grade": outcome.letter_grade,
            "report_url": outcome.report_reference,
            "message": "Grading completed successfully",
        }

    async def _run_pipeline(self, job: JobContext, run: GradingRun) -> GradingOutcome:
        try:
            data = GradingJobData.model_validate(job.data)
        except ValidationError as e:
            raise StageContractError(GradingState.ACCEPTED.value, f"Malformed grading job: {e}") from e

        rubric = self._repository.get_rubric(data.rubric_id)
        test_files = self._repository.resolve_test_files(data.test_suite_ids)
        run.work_dir = self._work_dirs.path_for(data.submission_id, job.id)
        job.progress(PROGRESS_AFTER[GradingState.ACCEPTED])

        clone = await self._run_stage(run, GradingState.CLONING, CloneJob(
            submission_id=data.submission_id,
            github_repo_url=data.github_repo_url,
            work_dir=run.work_dir,
        ), CloneResult)
        job.progress(PROGRESS_AFTER[GradingState.CLONING])

        tests = await self._run_stage(run, GradingState.TESTING, TestExecutionJob(
            submission_id=data.submission_id,
            work_dir=clone.work_dir,
            test_files=test_files,
        ), TestExecutionResult)
        job.progress(PROGRESS_AFTER[GradingState.TESTING])

        analysis = await self._run_stage(run, GradingState.ANALYZING, CodeAnalysisJob(
            submission_id=data.submission_id,
            work_dir=clone.work_dir,
        ), CodeAnalysisResult)
        job.progress(PROGRESS_AFTER[GradingState.ANALYZING])

        evaluations = await self._evaluate(run, data, rubric, clone, tests, analysis)
        job.progress(PROGRESS_AFTER[GradingState.EVALUATING])

        grade = compute_grade(rubric, tests, evaluations)
        report = await self._run_stage(run, GradingState.REPORTING, ReportGenerationJob(
            submission_id=data.submission_id,
            grading_job_id=job.id,
            commit_hash=clone.commit_hash,
            test_results=tests,
            code_analysis=analysis,
            evaluations=evaluations,
            grade=grade,
        ), ReportGenerationResult)
        job.progress(PROGRESS_AFTER[GradingState.REPORTING])

        outcome = GradingOutcome(
            submission_id=data.submission_id,
            total_score=grade.total_score,
            max_score=grade.max_score,
            percentage=grade.percentage,
            letter_grade=grade.letter_grade,
            build_success=grade.build_success,
            report_reference=report.report_url,
        )
        try:
            self._repository.report_completed(outcome)
        except Exception as e:
            raise StageFailedError(
                GradingState.COMPLETE.value, f"Could not record grading result: {type(e).__name__}: {e}"
            ) from e
        run.advance(GradingState.COMPLETE)
        try:
            job.progress(PROGRESS_AFTER[GradingState.COMPLETE])
        except Exception:
            # The outcome is already recorded; the run stays complete.
            logger.exception("Could not save final progress of grading job %s", job.id)
        logger.info(
            "Grading job %s complete: %s/%s (%s)",
            job.id, outcome.total_score, outcome.max_score, outcome.letter_grade,
        )
        return outcome

    async def _run_stage(
        self,
        run: GradingRun,
        state: GradingState,
        payload: BaseModel,
        result_model: Type[StageResult],
    ):
        stage = self._enter(run, state)
        handle = await self._registry.get(STAGE_QUEUES[stage]).enqueue(payload)
        run.stage_jobs.setdefault(stage.value, []).append(handle.id)
        logger.info("Grading job %s: %s job %s enqueued", run.job_id, stage.value, handle.id)
        try:
            raw = await handle.finished()
        except JobFailedError as e:
            raise StageFailedError(stage.value, e.reason) from e
        return _validate(stage, raw, result_model)

    async def _evaluate(
        self,
        run: GradingRun,
        data: GradingJobData,
        rubric: Rubric,
        clone: CloneResult,
        tests: TestExecutionResult,
        analysis: CodeAnalysisResult,
    ) -> List[GPTEvaluationResult]:
        """Fan out one evaluation per GPT-graded criterion and wait for all of them."""
        stage = self._enter(run, GradingState.EVALUATING)
        criteria = rubric.gpt_criteria()
        if not criteria:
            return []

        context = _evaluation_context(clone, tests, analysis)
        queue = self._registry.get(STAGE_QUEUES[stage])
        handles = []
        for criterion in criteria:
            handles.append(await queue.enqueue(GPTEvaluationJob(
                submission_id=data.submission_id,
                criterion_id=criterion.id,
                criterion_title=criterion.title,
                criterion_description=criterion.description,
                max_points=criterion.max_points,
                context=context,
                work_dir=clone.work_dir,
            )))
        run.stage_jobs[stage.value] = [h.id for h in handles]
        logger.info("Grading job %s: %d evaluation job(s) enqueued", run.job_id, len(handles))

        outcomes = await asyncio.gather(*(h.finished() for h in handles), return_exceptions=True)

        results: List[GPTEvaluationResult] = []
        failures: List[str] = []
        for criterion, outcome in zip(criteria, outcomes):
            if isinstance(outcome, JobFailedError):
                failures.append(f"criterion {criterion.id}: {outcome.reason}")
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            result = _validate(stage, outcome, GPTEvaluationResult)
            if result.criterion_id != criterion.id:
                raise StageContractError(
                    stage.value,
                    f"evaluation for criterion {criterion.id} came back as {result.criterion_id}",
                )
            results.append(result)

        if failures:
            raise StageFailedError(stage.value, "; ".join(failures))
        return results

    def _enter(self, run: GradingRun, state: GradingState) -> Stage:
        stage = STATE_STAGES[state]
        if run.job_id in self._cancelled:
            raise GradingCancelledError(stage.value, "Grading cancelled")
        run.advance(state)
        return stage

    def _prune_runs(self) -> None:
        """Forget finished runs past the retention count or age."""
        cutoff = datetime.utcnow() - timedelta(seconds=self._finished_run_ttl)
        finished = sorted(
            (r for r in self._runs.values() if r.is_terminal),
            key=lambda r: r.finished_at,
            reverse=True,
        )
        for index, run in enumerate(finished):
            if index >= self._finished_run_limit or run.finished_at < cutoff:
                del self._runs[run.job_id]

    def _fail(self, run: GradingRun, stage: str, message: str) -> None:
        if run.state == GradingState.COMPLETE:
            logger.error(
                "Grading job %s already recorded as complete, not reporting failure at %s: %s",
                run.job_id, stage, message,
            )
            return
        run.failed_stage = stage
        run.error = message
        if not run.is_terminal:
            run.advance(GradingState.FAILED)
        logger.error("Grading job %s failed at %s: %s", run.job_id, stage, message)
        try:
            self._repository.report_failed(GradingFailure(
                submission_id=run.submission_id,
                error_message=message,
                failed_stage=stage,
                grading_job_id=run.job_id,
            ))
        except Exception:
            # The grading job still fails; only the outbound record is lost.
            logger.exception("Could not record failure of grading job %s", run.job_id)


def _validate(stage: Stage, raw: Dict[str, Any], result_model: Type[StageResult]):
    try:
        result = result_model.model_validate(raw)
    except ValidationError as e:
        raise StageContractError(stage.value, f"malformed {result_model.__name__}: {e}")
    if not result.success:
        raise StageContractError(stage.value, "handler returned an unsuccessful result instead of raising")
    return result


def _evaluation_context(
    clone: CloneResult,
    tests: TestExecutionResult,
    analysis: CodeAnalysisResult,
) -> str:
    lines = [
        f"Commit: {clone.commit_hash}",
        f"Build: {'succeeded' if tests.build_success else 'failed'}",
        f"Tests: {tests.passed_tests}/{tests.total_tests} passed, {tests.failed_tests} failed",
        "",
        "Code summary:",
        analysis.summary,
    ]
    return "\n".join(lines)
