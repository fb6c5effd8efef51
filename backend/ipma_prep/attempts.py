"""Timed exam attempts: question selection, answers, timer and submission.

Attempts and their items are written straight to the remote store and any
remote failure propagates to the caller. The local cache only mirrors what the
remote store accepted. Once an attempt is ``submitted`` or ``timeout`` neither
it nor its items can change.
"""

from __future__ import annotations

import logging
import random
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError as SchemaValidationError

from .cache.keys import attempt_items_key, attempts_key
from .errors import AttemptStateError, ValidationError
from .evaluation import AnswerEvaluator, KeywordEvaluator, TrainableEvaluator
from .exam_result import ExamResult, compute_exam_result
from .models import MAX_ITEM_SCORE, Attempt, AttemptItem, DomainModel, SampleAnswer
from .reconciliation import ReconciliationEngine
from .repositories.remote_store import RemoteStore
from .telemetry import emit_event
from .validation import sanitize_input

logger = logging.getLogger(__name__)

MINUTES_PER_QUESTION = 3
_READ_ONLY_FIELDS = frozenset({"id", "created_at", "updated_at", "attempt_id", "user_id"})


def _training_signature(examples: Sequence[SampleAnswer]) -> tuple:
    return tuple((e.id, e.updated_at, e.answer_text, tuple(e.detected_kpis)) for e in examples)


class AttemptStateMachine:
    def __init__(
        self,
        engine: ReconciliationEngine,
        *,
        remote: Optional[RemoteStore] = None,
        evaluator: Optional[AnswerEvaluator] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._engine = engine
        self._remote = remote or engine.remote
        self._cache = engine.cache
        self._clock = engine.clock
        self._evaluator = evaluator or KeywordEvaluator()
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        # Open attempts touched in this process; the timer ticks against these.
        self._attempts: Dict[str, Attempt] = {}
        self._training_signature: Optional[tuple] = None

    # ------------------------------------------------------------------
    # Selection and creation
    # ------------------------------------------------------------------
    def select_random_questions(self, topic_id: str) -> List[str]:
        """One random active question per active subtopic, in subtopic order."""
        topic = self._engine.find("topics", topic_id)
        if topic is None:
            raise LookupError(f"No topic with id '{topic_id}'.")

        subtopics = {s.id: s for s in self._engine.subtopics if s.topic_id == topic_id and s.is_active}
        ordered = [sid for sid in topic.subtopic_ids if sid in subtopics]  # type: ignore[attr-defined]
        ordered.extend(sid for sid in subtopics if sid not in ordered)

        active_questions = [q for q in self._engine.questions if q.topic_id == topic_id and q.is_active]
        selected: List[str] = []
        for subtopic_id in ordered:
            candidates = [q.id for q in active_questions if q.subtopic_id == subtopic_id]
            if candidates:
                selected.append(self._rng.choice(candidates))
        return selected

    def create_attempt(self, user_id: str, topic_id: str, question_ids: Sequence[str]) -> Attempt:
        if not user_id:
            raise ValidationError("User is required", field="user_id")
        if self._engine.find("topics", topic_id) is None:
            raise ValidationError(f"Topic '{topic_id}' does not exist", field="topic_id")
        selected = list(question_ids)
        if not selected:
            raise ValidationError("An attempt needs at least one question", field="question_ids")
        if len(set(selected)) != len(selected):
            raise ValidationError("Questions cannot repeat within an attempt", field="question_ids")
        for question_id in selected:
            if self._engine.find("questions", question_id) is None:
                raise ValidationError(f"Question '{question_id}' does not exist", field="question_ids")

        total_minutes = len(selected) * MINUTES_PER_QUESTION
        now = self._clock()
        attempt = Attempt(
            user_id=user_id,
            topic_id=topic_id,
            selected_question_ids=selected,
            start_time=now,
            status="in_progress",
            total_time=total_minutes,
            time_remaining=total_minutes * 60,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._remote.upsert("attempts", attempt)
            self._remember(attempt)
        logger.info("Created attempt %s for %s with %d questions", attempt.id, user_id, len(selected))
        return attempt

    def start_exam(self, user_id: str, topic_id: str) -> Attempt:
        question_ids = self.select_random_questions(topic_id)
        if not question_ids:
            raise ValidationError(f"Topic '{topic_id}' has no active questions to draw from", field="topic_id")
        return self.create_attempt(user_id, topic_id, question_ids)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_attempt(self, attempt_id: str) -> Attempt:
        with self._lock:
            attempt = self._attempts.get(attempt_id)
            if attempt is not None:
                return attempt
        attempt = self._remote.get_attempt(attempt_id)
        if attempt is None:
            raise LookupError(f"No attempt with id '{attempt_id}'.")
        return attempt

    def get_attempt_items(self, attempt_id: str) -> List[AttemptItem]:
        return self._remote.list_attempt_items(attempt_id)

    def get_user_attempts(self, user_id: str) -> List[Attempt]:
        return self._remote.list_user_attempts(user_id)

    def get_result(self, attempt_id: str) -> ExamResult:
        return compute_exam_result(self.get_attempt(attempt_id), self.get_attempt_items(attempt_id))

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    def create_attempt_item(
        self, attempt_id: str, question_id: str, answer: str = "", *, duration_sec: int = 0
    ) -> AttemptItem:
        with self._lock:
            attempt = self._require_open(attempt_id)
            return self._create_item(attempt, question_id, answer, duration_sec)

    def _create_item(self, attempt: Attempt, question_id: str, answer: str, duration_sec: int) -> AttemptItem:
        if question_id not in attempt.selected_question_ids:
            raise ValidationError(
                f"Question '{question_id}' is not part of attempt '{attempt.id}'", field="question_id"
            )
        now = self._clock()
        item = AttemptItem(
            attempt_id=attempt.id,
            question_id=question_id,
            answer=sanitize_input(answer),
            kpis_detected=[],
            kpis_missing=[],
            score=0,
            max_score=MAX_ITEM_SCORE,
            feedback="",
            is_evaluated=False,
            duration_sec=duration_sec,
            submitted_at=now,
            created_at=now,
            updated_at=now,
        )
        self._remote.upsert("attempt_items", item)
        self._mirror_item(attempt.user_id, item)
        return item

    def answer_question(
        self, attempt_id: str, question_id: str, answer: str, *, duration_sec: int = 0
    ) -> AttemptItem:
        """Create the item for ``question_id`` or replace the answer already given."""
        with self._lock:
            attempt = self._require_open(attempt_id)
            for item in self.get_attempt_items(attempt_id):
                if item.question_id == question_id:
                    return self.update_attempt_item(
                        item.id,
                        answer=sanitize_input(answer),
                        duration_sec=duration_sec,
                        is_evaluated=False,
                        submitted_at=self._clock(),
                    )
            return self._create_item(attempt, question_id, answer, duration_sec)

    def update_attempt_item(self, item_id: str, **changes: Any) -> AttemptItem:
        with self._lock:
            item = self._remote.get_attempt_item(item_id)
            if item is None:
                raise LookupError(f"No attempt item with id '{item_id}'.")
            attempt = self._require_open(item.attempt_id)
            updated = self._merge(item, changes)
            if updated.score > updated.max_score:
                raise ValidationError(
                    f"Score {updated.score} exceeds the maximum of {updated.max_score}", field="score"
                )
            self._remote.upsert("attempt_items", updated)
            self._mirror_item(attempt.user_id, updated)
            return updated

    def evaluate_item(self, item_id: str) -> AttemptItem:
        """Score an item against the KPIs connected to its question."""
        with self._lock:
            item = self._remote.get_attempt_item(item_id)
            if item is None:
                raise LookupError(f"No attempt item with id '{item_id}'.")
            self._ensure_trained()
            result = self._evaluator.evaluate(item.answer, self._kpi_names(item.question_id))
            return self.update_attempt_item(
                item_id,
                kpis_detected=result.kpis_detected,
                kpis_missing=result.kpis_missing,
                score=result.score,
                feedback=result.feedback,
                is_evaluated=True,
            )

    def retrain(self) -> int:
        """Relearn KPI phrases from the current sample answers and training examples."""
        with self._lock:
            examples = [*self._engine.sample_answers, *self._engine.training_examples]
            self._training_signature = _training_signature(examples)
            if not isinstance(self._evaluator, TrainableEvaluator):
                return 0
            return self._evaluator.retrain(examples)

    def _ensure_trained(self) -> None:
        examples = [*self._engine.sample_answers, *self._engine.training_examples]
        if _training_signature(examples) != self._training_signature:
            self.retrain()

    def _kpi_names(self, question_id: str) -> List[str]:
        question = self._engine.find("questions", question_id)
        if question is None:
            logger.warning("Question %s is no longer available; evaluating without KPIs", question_id)
            return []
        connected = set(question.connected_kpis)  # type: ignore[attr-defined]
        return [kpi.name for kpi in self._engine.kpis if kpi.id in connected]

    # ------------------------------------------------------------------
    # Attempt updates, timer and submission
    # ------------------------------------------------------------------
    def update_attempt(self, attempt_id: str, **changes: Any) -> Attempt:
        with self._lock:
            attempt = self._require_open(attempt_id)
            updated = self._merge(attempt, changes)
            self._remote.upsert("attempts", updated)
            self._remember(updated)
            return updated

    def tick(self, attempt_id: str, seconds: int = 1) -> Attempt:
        """Count the clock down. Reaching zero times the attempt out and submits it.

        The countdown is kept locally; the remote row receives the remaining time
        with the next update or the submission.
        """
        with self._lock:
            attempt = self._require_open(attempt_id)
            remaining = max(0, attempt.time_remaining - max(0, seconds))
            if remaining > 0:
                attempt = attempt.model_copy(update={"time_remaining": remaining})
                self._remember(attempt)
                return attempt
            # Stays in_progress until _submit has filled and scored the items.
            attempt = attempt.model_copy(update={"time_remaining": 0})
            self._attempts[attempt_id] = attempt
            logger.info("Attempt %s ran out of time", attempt_id)
            self._submit(attempt, timed_out=True)
            return self.get_attempt(attempt_id)

    def submit(self, attempt_id: str) -> ExamResult:
        with self._lock:
            attempt = self._require_open(attempt_id)
            return self._submit(attempt, timed_out=False)

    def _submit(self, attempt: Attempt, *, timed_out: bool) -> ExamResult:
        items = self.get_attempt_items(attempt.id)
        answered = {item.question_id for item in items}
        for question_id in attempt.selected_question_ids:
            if question_id not in answered:
                items.append(self._create_item(attempt, question_id, "", 0))

        evaluated: List[AttemptItem] = []
        for item in items:
            evaluated.append(item if item.is_evaluated else self.evaluate_item(item.id))

        result = compute_exam_result(attempt, evaluated)
        now = self._clock()
        final = attempt.model_copy(
            update={
                "status": "timeout" if timed_out else "submitted",
                "end_time": now,
                "submitted_at": now,
                "score": result.score_percentage,
                "passed": result.passed,
                "updated_at": now,
            }
        )
        self._remote.upsert("attempts", final)
        self._remember(final)
        emit_event(
            "attempt_submitted",
            attempt_id=final.id,
            user_id=final.user_id,
            status=final.status,
            passed=result.passed,
            kpi_percentage=result.kpi_percentage,
            score_percentage=result.score_percentage,
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_open(self, attempt_id: str) -> Attempt:
        attempt = self.get_attempt(attempt_id)
        if attempt.status != "in_progress":
            raise AttemptStateError(f"Attempt '{attempt_id}' is {attempt.status} and can no longer change.")
        return attempt

    def _merge(self, entity: Any, changes: Mapping[str, Any]) -> Any:
        model = type(entity)
        unknown = sorted(set(changes) - set(model.model_fields))
        if unknown:
            raise ValidationError(f"Unknown field(s) for {model.__name__}: {', '.join(unknown)}", field=unknown[0])
        read_only = sorted(set(changes) & _READ_ONLY_FIELDS)
        if read_only:
            raise ValidationError(f"Field(s) cannot be changed: {', '.join(read_only)}", field=read_only[0])
        payload = entity.model_dump()
        payload.update(changes)
        payload["updated_at"] = self._clock()
        try:
            return model.model_validate(payload)
        except SchemaValidationError as exc:
            first = exc.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ())) or None
            raise ValidationError(f"Invalid {model.__name__}: {first.get('msg')}", field=location) from exc

    def _remember(self, attempt: Attempt) -> None:
        if attempt.status == "in_progress":
            self._attempts[attempt.id] = attempt
        else:
            self._attempts.pop(attempt.id, None)
        self._mirror_record(attempts_key(attempt.user_id), Attempt, attempt)

    def _mirror_item(self, user_id: str, item: AttemptItem) -> None:
        self._mirror_record(attempt_items_key(user_id), AttemptItem, item)

    def _mirror_record(self, key: str, model: type, record: DomainModel) -> None:
        records = [r for r in self._cache.load_models(key, model, []) if r.id != record.id]  # type: ignore[attr-defined]
        records.append(record)
        self._cache.save(key, records)


class ExamTimer:
    """Daemon thread that ticks an attempt once per interval until it ends."""

    def __init__(
        self,
        machine: AttemptStateMachine,
        attempt_id: str,
        *,
        interval: float = 1.0,
        on_finished: Optional[Callable[[Attempt], None]] = None,
    ) -> None:
        self._machine = machine
        self._attempt_id = attempt_id
        self._interval = interval
        self._on_finished = on_finished
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"exam-timer-{attempt_id}", daemon=True)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> "ExamTimer":
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                attempt = self._machine.tick(self._attempt_id)
            except AttemptStateError:
                break
            except Exception as exc:  # noqa: BLE001
                logger.warning("Timer tick for attempt %s failed: %s", self._attempt_id, exc)
                continue
            if attempt.is_terminal:
                if self._on_finished is not None:
                    self._on_finished(attempt)
                break


__all__ = ["AttemptStateMachine", "ExamTimer", "MINUTES_PER_QUESTION"]
