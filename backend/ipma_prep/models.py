"""Domain models for content, users, subscriptions and exam attempts.

Attributes are snake_case. JSON produced for the local cache uses the camelCase
aliases that earlier clients wrote, so both shapes validate.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

UserRole = Literal["user", "trainer", "admin"]
PlanType = Literal["trial", "monthly", "quarterly", "yearly"]
AttemptStatus = Literal["in_progress", "submitted", "timeout"]
ExampleType = Literal["grading", "evaluation", "training"]

TERMINAL_ATTEMPT_STATUSES = frozenset({"submitted", "timeout"})
MAX_ITEM_SCORE = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class DomainModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_cache(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TimestampedModel(DomainModel):
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Topic(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("topic"))
    title: str
    description: str = ""
    is_active: bool = True
    subtopic_ids: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("subtopicIds", "subtopic_ids", "subtopics"),
        serialization_alias="subtopicIds",
    )

    @field_validator("subtopic_ids", mode="before")
    @classmethod
    def _flatten_embedded_subtopics(cls, value: Any) -> Any:
        # Older cache records embed whole subtopic objects.
        if isinstance(value, list):
            return [entry.get("id") if isinstance(entry, dict) else entry for entry in value]
        return value


class Subtopic(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("subtopic"))
    topic_id: str
    title: str
    description: str = ""
    is_active: bool = True


class Question(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("question"))
    topic_id: str
    subtopic_id: Optional[str] = None
    prompt: str
    is_active: bool = True
    connected_kpis: List[str] = Field(default_factory=list, alias="connectedKPIs")


class KPI(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("kpi"))
    topic_id: str
    subtopic_id: str
    name: str
    is_essential: bool = False
    connected_questions: List[str] = Field(default_factory=list)


class CompanyCode(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("company"))
    code: str
    company_name: str
    admin_email: str = ""
    authorized_emails: List[str] = Field(default_factory=list)
    is_active: bool = True
    max_users: int = Field(default=0, ge=0)
    expires_at: Optional[datetime] = None


class SampleAnswer(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("sample"))
    question_id: str
    answer_text: str
    quality_rating: int = Field(default=0, ge=0, le=MAX_ITEM_SCORE)
    detected_kpis: List[str] = Field(default_factory=list, alias="detectedKPIs")
    feedback: str = ""


class TrainingExample(SampleAnswer):
    id: str = Field(default_factory=lambda: new_id("training"))
    example_type: ExampleType = "training"


class ReminderFlags(DomainModel):
    seven_days: bool = False
    one_day: bool = False


class Subscription(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("sub"))
    user_id: str
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    plan_type: PlanType = "trial"
    auto_renew: bool = False
    reminder_sent: ReminderFlags = Field(default_factory=ReminderFlags)


class UserProfile(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("user"))
    email: str
    name: str = ""
    role: UserRole = "user"
    company_code: Optional[str] = None
    company_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.email.split("@")[0]


class UserSession(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("session"))
    user_id: str
    expires_at: datetime
    last_activity: datetime = Field(default_factory=utcnow)
    is_active: bool = True
    user_agent: Optional[str] = None


class Attempt(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("attempt"))
    user_id: str
    topic_id: str
    selected_question_ids: List[str] = Field(default_factory=list)
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: AttemptStatus = "in_progress"
    total_time: int = Field(default=0, ge=0)
    time_remaining: int = Field(default=0, ge=0)
    score: Optional[float] = None
    passed: Optional[bool] = None
    submitted_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ATTEMPT_STATUSES


class AttemptItem(TimestampedModel):
    id: str = Field(default_factory=lambda: new_id("attempt_item"))
    attempt_id: str
    question_id: str
    answer: str = ""
    kpis_detected: List[str] = Field(default_factory=list)
    kpis_missing: List[str] = Field(default_factory=list)
    score: float = Field(default=0, ge=0)
    max_score: int = MAX_ITEM_SCORE
    feedback: str = ""
    is_evaluated: bool = False
    duration_sec: int = Field(default=0, ge=0)
    submitted_at: Optional[datetime] = None


__all__ = [
    "Attempt",
    "AttemptItem",
    "AttemptStatus",
    "CompanyCode",
    "DomainModel",
    "KPI",
    "MAX_ITEM_SCORE",
    "PlanType",
    "Question",
    "ReminderFlags",
    "SampleAnswer",
    "Subscription",
    "Subtopic",
    "TERMINAL_ATTEMPT_STATUSES",
    "Topic",
    "TrainingExample",
    "UserProfile",
    "UserRole",
    "UserSession",
    "new_id",
    "utcnow",
]
