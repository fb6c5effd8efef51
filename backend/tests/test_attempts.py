"""Exam attempts: selection, timing, answering, submission and the terminal guard."""

from __future__ import annotations

import random
import threading
from collections import Counter

import pytest

from ipma_prep.attempts import MINUTES_PER_QUESTION, AttemptStateMachine, ExamTimer
from ipma_prep.cache.keys import attempt_items_key, attempts_key
from ipma_prep.errors import AttemptStateError, RemoteOperationError, ValidationError
from ipma_prep.models import Attempt
from ipma_prep.reconciliation import ReconciliationEngine
from ipma_prep.telemetry import recent_events

from conftest import FlakyRemote

RISK = "topic_seed_risk"
IDENTIFICATION = "subtopic_seed_risk-identification"
RESPONSE = "subtopic_seed_risk-response"
STAKEHOLDERS = "topic_seed_stakeholders"
MAPPING = "question_seed_stakeholder-analysis_1"

FULL_ANSWER = (
    "We keep a risk register, run a stakeholder workshop and look for the root cause; "
    "every mitigation has a risk owner and a contingency reserve."
)


@pytest.fixture()
def machine(loaded_engine: ReconciliationEngine) -> AttemptStateMachine:
    return AttemptStateMachine(loaded_engine, rng=random.Random(7))


def _start(machine: AttemptStateMachine) -> Attempt:
    return machine.start_exam("user_1", RISK)


def test_selection_draws_one_question_per_active_subtopic(machine: AttemptStateMachine) -> None:
    selected = machine.select_random_questions(RISK)

    assert len(selected) == 2
    assert selected[0].startswith("question_seed_risk-identification_")
    assert selected[1].startswith("question_seed_risk-response_")


def test_selection_covers_every_candidate(machine: AttemptStateMachine) -> None:
    counts = Counter(machine.select_random_questions(RISK)[0] for _ in range(100))

    assert set(counts) == {f"question_seed_risk-identification_{n}" for n in (1, 2, 3)}


def test_selection_skips_inactive_subtopics_and_questions(
    machine: AttemptStateMachine, loaded_engine: ReconciliationEngine
) -> None:
    loaded_engine.update_subtopic(RESPONSE, is_active=False)
    for n in (1, 2):
        loaded_engine.update_question(f"question_seed_risk-identification_{n}", is_active=False)

    assert machine.select_random_questions(RISK) == ["question_seed_risk-identification_3"]


def test_selection_rejects_unknown_topic(machine: AttemptStateMachine) -> None:
    with pytest.raises(LookupError):
        machine.select_random_questions("topic_missing")


def test_create_attempt_allots_three_minutes_per_question(
    machine: AttemptStateMachine, remote: FlakyRemote, cache
) -> None:
    attempt = _start(machine)

    assert attempt.status == "in_progress"
    assert attempt.total_time == 2 * MINUTES_PER_QUESTION
    assert attempt.time_remaining == 2 * MINUTES_PER_QUESTION * 60
    assert remote.get_attempt(attempt.id) is not None
    assert [a.id for a in cache.load_models(attempts_key("user_1"), Attempt, [])] == [attempt.id]


@pytest.mark.parametrize(
    "question_ids",
    [
        [],
        ["question_seed_risk-identification_1", "question_seed_risk-identification_1"],
        ["question_missing"],
    ],
)
def test_create_attempt_validates_before_writing(
    machine: AttemptStateMachine, remote: FlakyRemote, question_ids: list[str]
) -> None:
    with pytest.raises(ValidationError):
        machine.create_attempt("user_1", RISK, question_ids)

    assert not any(collection == "attempts" for collection, _ in remote.upserts)


def test_remote_failures_propagate_and_leave_no_local_trace(
    machine: AttemptStateMachine, remote: FlakyRemote, cache
) -> None:
    remote.failing = True

    with pytest.raises(RemoteOperationError):
        _start(machine)

    assert cache.load(attempts_key("user_1"), []) == []


def test_answer_and_submit_scores_attempt(machine: AttemptStateMachine, remote: FlakyRemote, cache) -> None:
    attempt = _start(machine)
    for question_id in attempt.selected_question_ids:
        machine.answer_question(attempt.id, question_id, FULL_ANSWER, duration_sec=40)

    result = machine.submit(attempt.id)

    assert result.passed is True
    assert result.kpi_percentage == 100.0
    assert result.score_percentage == 100.0
    stored = remote.get_attempt(attempt.id)
    assert stored.status == "submitted"  # type: ignore[union-attr]
    assert stored.score == 100.0  # type: ignore[union-attr]
    assert stored.passed is True  # type: ignore[union-attr]
    assert all(item.is_evaluated for item in machine.get_attempt_items(attempt.id))
    assert len(cache.load(attempt_items_key("user_1"), [])) == 2
    assert recent_events("attempt_submitted")[-1].payload["status"] == "submitted"



def test_submitted_attempts_are_read_back_from_the_remote(machine: AttemptStateMachine) -> None:
    open_attempt = _start(machine)
    done = _start(machine)

    machine.submit(done.id)

    assert set(machine._attempts) == {open_attempt.id}
    assert machine.get_attempt(done.id).status == "submitted"
    assert machine.get_result(done.id).passed is False


def test_evaluation_learns_from_training_examples(
    machine: AttemptStateMachine, loaded_engine: ReconciliationEngine
) -> None:
    party_map = "I would map every interested party by power and interest"
    attempt = machine.create_attempt("user_1", STAKEHOLDERS, [MAPPING])
    item = machine.answer_question(attempt.id, MAPPING, party_map)

    assert machine.evaluate_item(item.id).kpis_detected == []

    example = loaded_engine.add_training_example(MAPPING, party_map, detected_kpis=["Stakeholder map"])
    evaluated = machine.evaluate_item(item.id)

    assert evaluated.kpis_detected == ["Stakeholder map"]
    assert evaluated.score == 1

    loaded_engine.delete_training_example(example.id)

    assert machine.evaluate_item(item.id).kpis_detected == []


def test_reanswering_replaces_the_existing_item(machine: AttemptStateMachine) -> None:
    attempt = _start(machine)
    question_id = attempt.selected_question_ids[0]

    first = machine.answer_question(attempt.id, question_id, "A first rough draft")
    second = machine.answer_question(attempt.id, question_id, FULL_ANSWER)

    assert first.id == second.id
    assert [item.answer for item in machine.get_attempt_items(attempt.id)] == [FULL_ANSWER]


def test_unanswered_questions_count_as_empty_answers(machine: AttemptStateMachine) -> None:
    attempt = _start(machine)
    machine.answer_question(attempt.id, attempt.selected_question_ids[0], FULL_ANSWER)

    result = machine.submit(attempt.id)

    assert result.kpis_detected == 3
    assert result.kpis_missing == 3
    assert result.score_percentage == 50.0
    assert result.passed is False
    assert len(machine.get_attempt_items(attempt.id)) == 2


def test_terminal_attempts_reject_changes(machine: AttemptStateMachine) -> None:
    attempt = _start(machine)
    item = machine.answer_question(attempt.id, attempt.selected_question_ids[0], FULL_ANSWER)
    machine.submit(attempt.id)

    with pytest.raises(AttemptStateError):
        machine.answer_question(attempt.id, attempt.selected_question_ids[1], FULL_ANSWER)
    with pytest.raises(AttemptStateError):
        machine.update_attempt_item(item.id, answer="Changed after the fact")
    with pytest.raises(AttemptStateError):
        machine.submit(attempt.id)
    with pytest.raises(AttemptStateError):
        machine.tick(attempt.id)


def test_item_updates_are_validated(machine: AttemptStateMachine) -> None:
    attempt = _start(machine)
    item = machine.create_attempt_item(attempt.id, attempt.selected_question_ids[0], "Draft answer text")

    with pytest.raises(ValidationError):
        machine.update_attempt_item(item.id, score=4)
    with pytest.raises(ValidationError):
        machine.update_attempt_item(item.id, attempt_id="other")
    with pytest.raises(ValidationError):
        machine.create_attempt_item(attempt.id, "question_seed_stakeholder-analysis_1")


def test_tick_counts_down_and_times_out(machine: AttemptStateMachine, remote: FlakyRemote) -> None:
    attempt = _start(machine)

    ticked = machine.tick(attempt.id, 30)
    assert ticked.time_remaining == attempt.time_remaining - 30

    finished = machine.tick(attempt.id, 10_000)

    assert finished.status == "timeout"
    assert finished.time_remaining == 0
    assert remote.get_attempt(attempt.id).status == "timeout"  # type: ignore[union-attr]
    assert len(machine.get_attempt_items(attempt.id)) == 2
    assert machine.get_result(attempt.id).passed is False


def test_exam_timer_submits_when_time_runs_out(machine: AttemptStateMachine) -> None:
    attempt = _start(machine)
    machine.update_attempt(attempt.id, time_remaining=3)
    finished = threading.Event()
    seen: list[Attempt] = []

    def on_finished(final: Attempt) -> None:
        seen.append(final)
        finished.set()

    timer = ExamTimer(machine, attempt.id, interval=0.01, on_finished=on_finished).start()

    assert finished.wait(5)
    timer.join(1)
    assert not timer.is_running
    assert seen[0].status == "timeout"


def test_user_attempts_are_newest_first(machine: AttemptStateMachine) -> None:
    first = _start(machine)
    second = _start(machine)

    assert [a.id for a in machine.get_user_attempts("user_1")] == [second.id, first.id]


def test_get_attempt_unknown_id(machine: AttemptStateMachine) -> None:
    with pytest.raises(LookupError):
        machine.get_attempt("attempt_missing")
