"""REST endpoints for content administration, timed exams and subscriptions."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from .attempts import AttemptStateMachine
from .exam_result import ExamResult
from .models import KPI, Attempt, AttemptItem, Question, Subscription, Subtopic, Topic
from .reconciliation import ReconciliationEngine
from .subscriptions import SubscriptionLifecycle
from .telemetry import emit_event

logger = logging.getLogger(__name__)

content_router = APIRouter(prefix="/api/content", tags=["content"])
exam_router = APIRouter(prefix="/api/exams", tags=["exams"])
subscription_router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def get_engine(request: Request) -> ReconciliationEngine:
    return request.app.state.engine


def get_attempts(request: Request) -> AttemptStateMachine:
    return request.app.state.attempts


def get_lifecycle(request: Request) -> SubscriptionLifecycle:
    return request.app.state.lifecycle


class TopicCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    is_active: bool = True


class StartExamRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    topic_id: str = Field(..., min_length=1)
    question_ids: Optional[List[str]] = None


class AnswerRequest(BaseModel):
    answer: str = ""
    duration_sec: int = Field(default=0, ge=0)


class TickRequest(BaseModel):
    seconds: int = Field(default=1, ge=1, le=3600)


class ExtendRequest(BaseModel):
    days: int = Field(..., ge=1)
    notify: bool = False


class ExpiryPayload(BaseModel):
    expired: List[str] = Field(default_factory=list)
    expiring_soon: List[str] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Content
# ----------------------------------------------------------------------
@content_router.get("/topics", response_model=List[Topic], status_code=status.HTTP_200_OK)
def list_topics(engine: ReconciliationEngine = Depends(get_engine)) -> List[Topic]:
    return engine.topics


@content_router.post("/topics", response_model=Topic, status_code=status.HTTP_201_CREATED)
def create_topic(payload: TopicCreateRequest, engine: ReconciliationEngine = Depends(get_engine)) -> Topic:
    return engine.add_topic(payload.title, payload.description, is_active=payload.is_active)


@content_router.patch("/topics/{topic_id}", response_model=Topic, status_code=status.HTTP_200_OK)
def update_topic(
    topic_id: str,
    changes: Dict[str, Any],
    engine: ReconciliationEngine = Depends(get_engine),
) -> Topic:
    return engine.update_topic(topic_id, **changes)


@content_router.delete("/topics/{topic_id}", response_model=Topic, status_code=status.HTTP_200_OK)
def delete_topic(topic_id: str, engine: ReconciliationEngine = Depends(get_engine)) -> Topic:
    return engine.delete_topic(topic_id)


@content_router.get("/topics/{topic_id}/subtopics", response_model=List[Subtopic])
def list_subtopics(topic_id: str, engine: ReconciliationEngine = Depends(get_engine)) -> List[Subtopic]:
    _require_topic(engine, topic_id)
    return [subtopic for subtopic in engine.subtopics if subtopic.topic_id == topic_id]


@content_router.get("/topics/{topic_id}/questions", response_model=List[Question])
def list_questions(topic_id: str, engine: ReconciliationEngine = Depends(get_engine)) -> List[Question]:
    _require_topic(engine, topic_id)
    return [question for question in engine.questions if question.topic_id == topic_id]


@content_router.get("/topics/{topic_id}/kpis", response_model=List[KPI])
def list_kpis(topic_id: str, engine: ReconciliationEngine = Depends(get_engine)) -> List[KPI]:
    _require_topic(engine, topic_id)
    return [kpi for kpi in engine.kpis if kpi.topic_id == topic_id]


def _require_topic(engine: ReconciliationEngine, topic_id: str) -> None:
    if engine.find("topics", topic_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Topic '{topic_id}' not found.",
        )


# ----------------------------------------------------------------------
# Exams
# ----------------------------------------------------------------------
@exam_router.post("", response_model=Attempt, status_code=status.HTTP_201_CREATED)
def start_exam(payload: StartExamRequest, attempts: AttemptStateMachine = Depends(get_attempts)) -> Attempt:
    if payload.question_ids is not None:
        attempt = attempts.create_attempt(payload.user_id, payload.topic_id, payload.question_ids)
    else:
        attempt = attempts.start_exam(payload.user_id, payload.topic_id)
    emit_event("exam_started", attempt_id=attempt.id, user_id=attempt.user_id, topic_id=attempt.topic_id)
    return attempt


@exam_router.get("/{attempt_id}", response_model=Attempt)
def get_attempt(attempt_id: str, attempts: AttemptStateMachine = Depends(get_attempts)) -> Attempt:
    return attempts.get_attempt(attempt_id)


@exam_router.get("/{attempt_id}/items", response_model=List[AttemptItem])
def get_attempt_items(attempt_id: str, attempts: AttemptStateMachine = Depends(get_attempts)) -> List[AttemptItem]:
    attempts.get_attempt(attempt_id)
    return attempts.get_attempt_items(attempt_id)


@exam_router.put("/{attempt_id}/answers/{question_id}", response_model=AttemptItem)
def answer_question(
    attempt_id: str,
    question_id: str,
    payload: AnswerRequest,
    attempts: AttemptStateMachine = Depends(get_attempts),
) -> AttemptItem:
    return attempts.answer_question(attempt_id, question_id, payload.answer, duration_sec=payload.duration_sec)


@exam_router.post("/{attempt_id}/tick", response_model=Attempt)
def tick(attempt_id: str, payload: TickRequest, attempts: AttemptStateMachine = Depends(get_attempts)) -> Attempt:
    return attempts.tick(attempt_id, payload.seconds)


@exam_router.post("/{attempt_id}/submit", response_model=ExamResult)
def submit(attempt_id: str, attempts: AttemptStateMachine = Depends(get_attempts)) -> ExamResult:
    return attempts.submit(attempt_id)


@exam_router.get("/{attempt_id}/result", response_model=ExamResult)
def get_result(attempt_id: str, attempts: AttemptStateMachine = Depends(get_attempts)) -> ExamResult:
    attempt = attempts.get_attempt(attempt_id)
    if not attempt.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Attempt '{attempt_id}' has not been submitted yet.",
        )
    return attempts.get_result(attempt_id)


# ----------------------------------------------------------------------
# Subscriptions
# ----------------------------------------------------------------------
@subscription_router.get("/expiry", response_model=ExpiryPayload)
def check_expiry(lifecycle: SubscriptionLifecycle = Depends(get_lifecycle)) -> ExpiryPayload:
    report = lifecycle.check_expiry()
    return ExpiryPayload(
        expired=[user.id for user in report.expired],
        expiring_soon=[user.id for user in report.expiring_soon],
    )


@subscription_router.post("/{user_id}/extend", response_model=Subscription)
def extend_subscription(
    user_id: str,
    payload: ExtendRequest,
    lifecycle: SubscriptionLifecycle = Depends(get_lifecycle),
) -> Subscription:
    return lifecycle.extend_subscription(user_id, payload.days, notify=payload.notify)


__all__ = ["content_router", "exam_router", "subscription_router"]
