"""Grade scorer: combines test results and per-criterion evaluations."""

from typing import Dict, List, Sequence, Tuple

from grader_pipeline.pipeline.stages import (
    GPTEvaluationResult,
    GradeSummary,
    Rubric,
    TestExecutionResult,
)


# Letter grade cut-offs, highest first
GRADE_THRESHOLDS: List[Tuple[float, str]] = [
    (90.0, "A"),
    (80.0, "B"),
    (70.0, "C"),
    (60.0, "D"),
]


def letter_grade(percentage: float) -> str:
    for threshold, letter in GRADE_THRESHOLDS:
        if percentage >= threshold:
            return letter
    return "F"


def compute_grade(
    rubric: Rubric,
    test_results: TestExecutionResult,
    evaluations: Sequence[GPTEvaluationResult],
) -> GradeSummary:
    """Score every rubric criterion and total them.

    Test-graded criteria earn their points in proportion to the pass rate,
    and nothing when the build failed or no tests ran. GPT-graded criteria
    take the evaluation score clamped to the criterion's range; a criterion
    without an evaluation scores zero.
    """
    by_criterion: Dict[str, GPTEvaluationResult] = {e.criterion_id: e for e in evaluations}
    pass_rate = _pass_rate(test_results)

    criteria: Dict[str, float] = {}
    for criterion in rubric.criteria:
        if criterion.needs_gpt:
            evaluation = by_criterion.get(criterion.id)
            score = evaluation.score if evaluation else 0.0
            criteria[criterion.id] = min(max(score, 0.0), criterion.max_points)
        else:
            criteria[criterion.id] = criterion.max_points * pass_rate

    total = sum(criteria.values())
    max_score = sum(c.max_points for c in rubric.criteria)
    percentage = (total / max_score * 100) if max_score > 0 else 0.0

    return GradeSummary(
        total_score=round(total, 2),
        max_score=round(max_score, 2),
        percentage=round(percentage, 2),
        letter_grade=letter_grade(percentage),
        build_success=test_results.build_success,
        criteria={k: round(v, 2) for k, v in criteria.items()},
    )


def _pass_rate(test_results: TestExecutionResult) -> float:
    if not test_results.build_success or test_results.total_tests <= 0:
        return 0.0
    return min(test_results.passed_tests / test_results.total_tests, 1.0)
