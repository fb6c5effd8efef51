"""Aggregate the answer items of an attempt into a pass/fail exam result."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .models import Attempt, AttemptItem

KPI_PASS_PERCENTAGE = 80.0
SCORE_PASS_PERCENTAGE = 50.0

PASSED_FEEDBACK = (
    "Congratulations! You passed the exam. Your answers covered the key performance "
    "indicators expected at IPMA Level C."
)
FAILED_FEEDBACK = (
    "You did not pass this time. Review the missing KPIs for each question and try the "
    "topic again to strengthen your answers."
)


class QuestionResult(BaseModel):
    question_id: str
    item_id: Optional[str] = None
    answered: bool = False
    score: float = 0
    max_score: int = 0
    kpis_detected: List[str] = Field(default_factory=list)
    kpis_missing: List[str] = Field(default_factory=list)
    feedback: str = ""


class ExamResult(BaseModel):
    attempt_id: str
    total_questions: int
    total_kpis: int
    kpis_detected: int
    kpis_missing: int
    total_score: float
    max_score: int
    kpi_percentage: float
    score_percentage: float
    passed: bool
    feedback: str
    question_results: List[QuestionResult] = Field(default_factory=list)


def is_passing(kpi_percentage: float, score_percentage: float) -> bool:
    """Both thresholds are inclusive and both must hold."""
    return kpi_percentage >= KPI_PASS_PERCENTAGE and score_percentage >= SCORE_PASS_PERCENTAGE


def _percentage(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    return numerator / denominator * 100


def compute_exam_result(attempt: Attempt, items: Sequence[AttemptItem]) -> ExamResult:
    """Sum item scores and KPI counts over the attempt's selected questions.

    A selected question without an item is skipped: it adds nothing to either
    numerator or denominator. Items for questions outside the selection are ignored.
    When a question has several items the most recently updated one counts.
    """
    latest: Dict[str, AttemptItem] = {}
    for item in items:
        if item.attempt_id != attempt.id:
            continue
        current = latest.get(item.question_id)
        if current is None or item.updated_at >= current.updated_at:
            latest[item.question_id] = item

    detected = missing = 0
    total_score = 0.0
    max_score = 0
    question_results: List[QuestionResult] = []

    for question_id in attempt.selected_question_ids:
        item = latest.get(question_id)
        if item is None:
            question_results.append(QuestionResult(question_id=question_id))
            continue
        detected += len(item.kpis_detected)
        missing += len(item.kpis_missing)
        total_score += item.score
        max_score += item.max_score
        question_results.append(
            QuestionResult(
                question_id=question_id,
                item_id=item.id,
                answered=bool(item.answer.strip()),
                score=item.score,
                max_score=item.max_score,
                kpis_detected=list(item.kpis_detected),
                kpis_missing=list(item.kpis_missing),
                feedback=item.feedback,
            )
        )

    total_kpis = detected + missing
    kpi_percentage = _percentage(detected, total_kpis)
    score_percentage = _percentage(total_score, max_score)
    passed = is_passing(kpi_percentage, score_percentage)

    return ExamResult(
        attempt_id=attempt.id,
        total_questions=len(attempt.selected_question_ids),
        total_kpis=total_kpis,
        kpis_detected=detected,
        kpis_missing=missing,
        total_score=total_score,
        max_score=max_score,
        kpi_percentage=kpi_percentage,
        score_percentage=score_percentage,
        passed=passed,
        feedback=PASSED_FEEDBACK if passed else FAILED_FEEDBACK,
        question_results=question_results,
    )


__all__ = [
    "ExamResult",
    "FAILED_FEEDBACK",
    "KPI_PASS_PERCENTAGE",
    "PASSED_FEEDBACK",
    "QuestionResult",
    "SCORE_PASS_PERCENTAGE",
    "compute_exam_result",
    "is_passing",
]
