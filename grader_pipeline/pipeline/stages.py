"""Payloads and results exchanged between the orchestrator and stage handlers."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Stage(str, Enum):
    CLONE = "clone"
    TEST_EXECUTION = "test_execution"
    CODE_ANALYSIS = "code_analysis"
    GPT_EVALUATION = "gpt_evaluation"
    REPORT_GENERATION = "report_generation"


class GradingJobData(BaseModel):
    """Inbound grading request, one per submission attempt."""
    submission_id: str
    assignment_id: str
    student_id: str
    github_repo_url: str
    rubric_id: str
    test_suite_ids: List[str] = Field(default_factory=list)
    attempt_number: int = 1


# Stage jobs

class CloneJob(BaseModel):
    submission_id: str
    github_repo_url: str
    work_dir: str


class TestExecutionJob(BaseModel):
    submission_id: str
    work_dir: str
    test_files: List[str] = Field(default_factory=list)


class CodeAnalysisJob(BaseModel):
    submission_id: str
    work_dir: str


class GPTEvaluationJob(BaseModel):
    submission_id: str
    criterion_id: str
    criterion_title: str = ""
    criterion_description: str = ""
    max_points: float
    context: str = ""
    work_dir: str


# Stage results

class StageResult(BaseModel):
    success: bool


class CloneResult(StageResult):
    work_dir: str
    commit_hash: str


class TestExecutionResult(StageResult):
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    build_success: bool = True


class CodeAnalysisResult(StageResult):
    summary: str
    metrics: Dict[str, Any] = Field(default_factory=dict)


class GPTEvaluationResult(StageResult):
    criterion_id: str
    score: float
    max_score: float
    justification: str = ""


class GradeSummary(BaseModel):
    total_score: float
    max_score: float
    percentage: float
    letter_grade: str
    build_success: bool
    criteria: Dict[str, float] = Field(default_factory=dict)


class ReportGenerationJob(BaseModel):
    submission_id: str
    grading_job_id: str
    commit_hash: str
    test_results: TestExecutionResult
    code_analysis: CodeAnalysisResult
    evaluations: List[GPTEvaluationResult] = Field(default_factory=list)
    grade: GradeSummary


class ReportGenerationResult(StageResult):
    report_url: str


# Rubric (read from the persistence layer, never validated here)

class RubricCriterion(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    max_points: float
    evaluation: str = "gpt"  # "gpt" or "tests"

    @property
    def needs_gpt(self) -> bool:
        return self.evaluation == "gpt"


class Rubric(BaseModel):
    id: str
    criteria: List[RubricCriterion] = Field(default_factory=list)

    def gpt_criteria(self) -> List[RubricCriterion]:
        return [c for c in self.criteria if c.needs_gpt]


# Outbound reports

class GradingOutcome(BaseModel):
    submission_id: str
    total_score: float
    max_score: float
    percentage: float
    letter_grade: str
    build_success: bool
    report_reference: str


class GradingFailure(BaseModel):
    submission_id: str
    error_message: str
    failed_stage: str
    grading_job_id: Optional[str] = None
