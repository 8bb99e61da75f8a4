"""Persistence-layer interface used by the pipeline.

The pipeline reads rubrics and test suites and reports each grading run's
outcome; it never writes submissions any other way.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from grader_pipeline.pipeline.stages import GradingFailure, GradingOutcome, Rubric


class RubricNotFoundError(LookupError):
    pass


class GradingRepository(ABC):

    @abstractmethod
    def get_rubric(self, rubric_id: str) -> Rubric:
        ...

    @abstractmethod
    def resolve_test_files(self, test_suite_ids: List[str]) -> List[str]:
        """Map test suite ids to the test files they contain, in suite order."""
        ...

    @abstractmethod
    def report_completed(self, outcome: GradingOutcome) -> None:
        ...

    @abstractmethod
    def report_failed(self, failure: GradingFailure) -> None:
        ...


class InMemoryGradingRepository(GradingRepository):
    """Dictionary-backed repository for local runs and tests."""

    def __init__(
        self,
        rubrics: Optional[Dict[str, Rubric]] = None,
        test_suites: Optional[Dict[str, List[str]]] = None,
    ):
        self.rubrics: Dict[str, Rubric] = dict(rubrics or {})
        self.test_suites: Dict[str, List[str]] = dict(test_suites or {})
        self.completed: List[GradingOutcome] = []
        self.failed: List[GradingFailure] = []

    def get_rubric(self, rubric_id: str) -> Rubric:
        rubric = self.rubrics.get(rubric_id)
        if rubric is None:
            raise RubricNotFoundError(f"Rubric {rubric_id} not found")
        return rubric

    def resolve_test_files(self, test_suite_ids: List[str]) -> List[str]:
        files: List[str] = []
        for suite_id in test_suite_ids:
            files.extend(self.test_suites.get(suite_id, []))
        return files

    def report_completed(self, outcome: GradingOutcome) -> None:
        self.completed.append(outcome)

    def report_failed(self, failure: GradingFailure) -> None:
        self.failed.append(failure)


class SupabaseGradingRepository(GradingRepository):
    """Reads `rubrics` and `test_suites`, writes results onto `submissions`."""

    def __init__(self, client):
        self._client = client

    def get_rubric(self, rubric_id: str) -> Rubric:
        response = (
            self._client.table("rubrics")
            .select("id, criteria")
            .eq("id", rubric_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            raise RubricNotFoundError(f"Rubric {rubric_id} not found")
        return Rubric.model_validate(response.data[0])

    def resolve_test_files(self, test_suite_ids: List[str]) -> List[str]:
        if not test_suite_ids:
            return []
        response = (
            self._client.table("test_suites")
            .select("id, test_files")
            .in_("id", test_suite_ids)
            .execute()
        )
        files_by_suite = {row["id"]: row.get("test_files") or [] for row in response.data or []}
        files: List[str] = []
        for suite_id in test_suite_ids:
            files.extend(files_by_suite.get(suite_id, []))
        return files

    def report_completed(self, outcome: GradingOutcome) -> None:
        self._client.table("submissions").update({
            "status": "graded",
            "total_score": outcome.total_score,
            "max_score": outcome.max_score,
            "percentage": outcome.percentage,
            "letter_grade": outcome.letter_grade,
            "build_success": outcome.build_success,
            "report_url": outcome.report_reference,
            "error_message": None,
            "graded_at": datetime.utcnow().isoformat(),
        }).eq("id", outcome.submission_id).execute()

    def report_failed(self, failure: GradingFailure) -> None:
        self._client.table("submissions").update({
            "status": "grading_failed",
            "error_message": failure.error_message,
            "failed_stage": failure.failed_stage,
            "updated_at": datetime.utcnow().isoformat(),
        }).eq("id", failure.submission_id).execute()
