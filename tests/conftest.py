import asyncio
import os
import time
from typing import Dict, List, Optional, Set

import pytest

from grader_pipeline.config import Settings
from grader_pipeline.db.repository import InMemoryGradingRepository
from grader_pipeline.jobs.errors import JobFailedError
from grader_pipeline.jobs.registry import QueueNames
from grader_pipeline.jobs.store import MemoryJobStore
from grader_pipeline.pipeline.intake import submit_grading
from grader_pipeline.pipeline.service import build_service
from grader_pipeline.pipeline.stages import (
    CloneResult,
    CodeAnalysisResult,
    GPTEvaluationResult,
    ReportGenerationResult,
    Rubric,
    RubricCriterion,
    TestExecutionResult,
)
from grader_pipeline.telemetry.events import EventBus, QueueEvent

BACKOFF = 0.01


class EventRecorder:
    def __init__(self):
        self.events: List[QueueEvent] = []

    def __call__(self, event: QueueEvent) -> None:
        self.events.append(event)

    def for_queue(self, queue: str, kind: Optional[str] = None) -> List[QueueEvent]:
        return [
            e for e in self.events
            if e.queue == queue and (kind is None or e.kind.value == kind)
        ]


class FakeStages:
    """Stand-in stage handlers that record every invocation."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.always_fail: Set[str] = set()
        self.failing_criteria: Set[str] = set()
        self.overrides: Dict[str, dict] = {}
        self.clone_gate: Optional[asyncio.Event] = None

    def _record(self, stage: str, job) -> None:
        self.calls.append((stage, job.data.get("criterion_id"), time.monotonic(), job.data))

    def stages_called(self) -> List[str]:
        return [c[0] for c in self.calls]

    async def clone(self, job):
        self._record("clone", job)
        if self.clone_gate is not None:
            await self.clone_gate.wait()
        if "clone" in self.always_fail:
            raise RuntimeError("network unreachable")
        os.makedirs(job.data["work_dir"], exist_ok=True)
        with open(os.path.join(job.data["work_dir"], "index.js"), "w") as f:
            f.write("console.log('hi');\n")
        return CloneResult(success=True, work_dir=job.data["work_dir"], commit_hash="abc123")

    async def test_execution(self, job):
        self._record("test_execution", job)
        if "test_execution" in self.overrides:
            return self.overrides["test_execution"]
        return TestExecutionResult(success=True, total_tests=10, passed_tests=8, failed_tests=2)

    async def code_analysis(self, job):
        self._record("code_analysis", job)
        return CodeAnalysisResult(success=True, summary="1 source file", metrics={"source_files": 1})

    async def gpt_evaluation(self, job):
        self._record("gpt_evaluation", job)
        criterion_id = job.data["criterion_id"]
        await asyncio.sleep(0)
        if criterion_id in self.failing_criteria:
            raise RuntimeError("rate limited")
        return GPTEvaluationResult(
            success=True,
            criterion_id=criterion_id,
            score=job.data["max_points"] / 2,
            max_score=job.data["max_points"],
            justification="Half marks",
        )

    async def report_generation(self, job):
        self._record("report_generation", job)
        return ReportGenerationResult(
            success=True, report_url=f"s3://reports/{job.data['submission_id']}.md"
        )

    def handlers(self):
        return {
            QueueNames.GIT_CLONE: self.clone,
            QueueNames.TEST_EXECUTION: self.test_execution,
            QueueNames.CODE_ANALYSIS: self.code_analysis,
            QueueNames.GPT_EVALUATION: self.gpt_evaluation,
            QueueNames.REPORT_GENERATION: self.report_generation,
        }


@pytest.fixture
def settings(tmp_path):
    return Settings(
        queue_backend="memory",
        work_root=str(tmp_path / "work"),
        reports_dir=str(tmp_path / "reports"),
        concurrent_jobs=2,
        queue_concurrency={"gpt-evaluation": 4},
        job_attempts=3,
        job_backoff_delay=BACKOFF,
        stage_timeouts={},
        stalled_check_interval=3600,
    )


@pytest.fixture
def rubric():
    return Rubric(id="r1", criteria=[
        RubricCriterion(id="functionality", title="Tests pass", max_points=40, evaluation="tests"),
        RubricCriterion(id="design", title="Design", max_points=30, evaluation="gpt"),
        RubricCriterion(id="quality", title="Code quality", max_points=30, evaluation="gpt"),
    ])


@pytest.fixture
def repository(rubric):
    return InMemoryGradingRepository(
        rubrics={"r1": rubric},
        test_suites={"t1": ["tests/app.test.js"], "t2": ["tests/api.test.js"]},
    )


@pytest.fixture
def stages():
    return FakeStages()


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
async def service(settings, repository, stages, recorder):
    events = EventBus()
    events.subscribe(recorder)
    svc = build_service(
        settings,
        store=MemoryJobStore(),
        repository=repository,
        handlers=stages.handlers(),
        events=events,
    )
    await svc.start()
    yield svc
    await svc.stop()


@pytest.fixture
def grading_request():
    return {
        "submission_id": "s1",
        "assignment_id": "a1",
        "student_id": "u1",
        "github_repo_url": "https://good/repo",
        "rubric_id": "r1",
        "test_suite_ids": ["t1"],
        "attempt_number": 1,
    }


async def run_grading(service, request, timeout: float = 5.0):
    """Submit a grading job and wait until it is completed or failed."""
    handle = await submit_grading(service.registry, request)
    try:
        await asyncio.wait_for(handle.finished(), timeout=timeout)
    except JobFailedError:
        pass
    return await handle.status()
