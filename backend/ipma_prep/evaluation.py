"""Keyword-based KPI evaluator for exam answers.

Detection is a case-insensitive substring match of each KPI name, extended by
phrases learned from training examples whose detected KPIs are known.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Protocol, Sequence, Set, runtime_checkable

from .models import SampleAnswer

logger = logging.getLogger(__name__)

_MIN_WORD_LENGTH = 4
_MIN_PHRASE_LENGTH = 6


@dataclass(frozen=True)
class EvaluationResult:
    kpis_detected: List[str]
    kpis_missing: List[str]
    score: int
    feedback: str


class AnswerEvaluator(Protocol):
    def evaluate(self, answer: str, kpi_names: Sequence[str]) -> EvaluationResult:  # pragma: no cover - protocol definition
        ...


@runtime_checkable
class TrainableEvaluator(AnswerEvaluator, Protocol):
    def retrain(self, examples: Iterable[SampleAnswer]) -> int:  # pragma: no cover - protocol definition
        ...


def score_for_detected(count: int) -> int:
    """3 points for three or more KPIs, otherwise one point per KPI."""
    if count >= 3:
        return 3
    return max(0, count)


def build_feedback(detected: Sequence[str], missing: Sequence[str], score: int) -> str:
    if score >= 3:
        return (
            f"Excellent work! You covered the key areas: {', '.join(detected)}. "
            "Your answer shows a comprehensive understanding of the topic."
        )
    if score == 2:
        suggestion = " and ".join(missing[:2])
        text = f"Good effort! You addressed {' and '.join(detected)}, which shows solid understanding."
        return f"{text} Consider also discussing {suggestion} to strengthen your response." if suggestion else text
    if score == 1:
        suggestion = " and ".join(missing[:2])
        text = f"You made a start by mentioning {detected[0]}."
        return f"{text} To improve, bring in {suggestion} for a more complete answer." if suggestion else text
    if not missing:
        return "No KPIs are defined for this question yet."
    return (
        f"Your answer could be strengthened by addressing key areas such as {', '.join(missing[:3])}. "
        "Add specific details and examples to demonstrate your understanding."
    )


def _phrases(text: str) -> Set[str]:
    words = re.split(r"\s+", text.lower().strip())
    found: Set[str] = {word for word in words if len(word) >= _MIN_WORD_LENGTH}
    for start in range(len(words) - 1):
        for size in range(2, 5):
            if start + size > len(words):
                break
            phrase = " ".join(words[start : start + size])
            if len(phrase) >= _MIN_PHRASE_LENGTH:
                found.add(phrase)
    return found


class KeywordEvaluator:
    """Deterministic evaluator. ``train`` adds learned phrases per KPI name."""

    def __init__(self) -> None:
        self._learned: Dict[str, Set[str]] = {}

    @property
    def is_trained(self) -> bool:
        return bool(self._learned)

    def train(self, examples: Iterable[SampleAnswer]) -> int:
        learned = 0
        for example in examples:
            if not example.detected_kpis:
                continue
            phrases = _phrases(example.answer_text)
            for kpi_name in example.detected_kpis:
                bucket = self._learned.setdefault(kpi_name.lower(), set())
                before = len(bucket)
                bucket.update(phrases)
                learned += len(bucket) - before
        logger.info("Evaluator learned %d phrases across %d KPIs", learned, len(self._learned))
        return learned

    def retrain(self, examples: Iterable[SampleAnswer]) -> int:
        """Forget learned phrases and learn again from ``examples``."""
        self._learned = {}
        return self.train(examples)

    def _matches(self, answer_lower: str, kpi_name: str) -> bool:
        name = kpi_name.lower()
        if name in answer_lower:
            return True
        return any(pattern in answer_lower for pattern in self._learned.get(name, ()))

    def evaluate(self, answer: str, kpi_names: Sequence[str]) -> EvaluationResult:
        answer_lower = (answer or "").lower()
        detected = [name for name in kpi_names if answer_lower and self._matches(answer_lower, name)]
        missing = [name for name in kpi_names if name not in detected]
        score = score_for_detected(len(detected))
        return EvaluationResult(
            kpis_detected=detected,
            kpis_missing=missing,
            score=score,
            feedback=build_feedback(detected, missing, score),
        )


__all__ = [
    "AnswerEvaluator",
    "EvaluationResult",
    "KeywordEvaluator",
    "TrainableEvaluator",
    "build_feedback",
    "score_for_detected",
]
