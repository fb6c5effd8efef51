"""ORM rows backing the remote store. Column names are snake_case."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin

JSONType = JSON


class TopicModel(TimestampMixin, Base):
    __tablename__ = "topics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class SubtopicModel(TimestampMixin, Base):
    __tablename__ = "subtopics"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    topic_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class QuestionModel(TimestampMixin, Base):
    __tablename__ = "questions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    topic_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subtopic_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    connected_kpi_ids: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)


class KPIModel(TimestampMixin, Base):
    __tablename__ = "kpis"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    topic_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subtopic_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_essential: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    connected_question_ids: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)


class CompanyCodeModel(TimestampMixin, Base):
    __tablename__ = "company_codes"
    __table_args__ = (Index("ix_company_codes_code", "code", unique=True),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    company_name: Mapped[str] = mapped_column(String(200), nullable=False)
    admin_email: Mapped[str] = mapped_column(String(254), default="", nullable=False)
    authorized_emails: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    max_users: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SampleAnswerModel(TimestampMixin, Base):
    __tablename__ = "sample_answers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    answer_text: Mapped[str] = mapped_column(Text, nullable=False)
    quality_rating: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    detected_kpis: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    feedback: Mapped[str] = mapped_column(Text, default="", nullable=False)


class TrainingExampleModel(TimestampMixin, Base):
    __tablename__ = "training_examples"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    question_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    answer_text: Mapped[str] = mapped_column(Text, nullable=False)
    quality_rating: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    detected_kpis: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    feedback: Mapped[str] = mapped_column(Text, default="", nullable=False)
    example_type: Mapped[str] = mapped_column(String(32), default="training", nullable=False)


class UserModel(TimestampMixin, Base):
    __tablename__ = "users"
    __table_args__ = (Index("ix_users_email", "email", unique=True),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(254), nullable=False)
    name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    role: Mapped[str] = mapped_column(String(16), default="user", nullable=False)
    company_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    company_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)


class SubscriptionModel(TimestampMixin, Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    plan_type: Mapped[str] = mapped_column(String(16), default="trial", nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_seven_days: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reminder_one_day: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class AttemptModel(TimestampMixin, Base):
    __tablename__ = "attempts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    topic_id: Mapped[str] = mapped_column(String(64), nullable=False)
    selected_question_ids: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="in_progress", nullable=False)
    total_time: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    time_remaining: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    passed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AttemptItemModel(TimestampMixin, Base):
    __tablename__ = "attempt_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    attempt_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    question_id: Mapped[str] = mapped_column(String(64), nullable=False)
    answer: Mapped[str] = mapped_column(Text, default="", nullable=False)
    kpis_detected: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    kpis_missing: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    score: Mapped[float] = mapped_column(Float, default=0, nullable=False)
    max_score: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    feedback: Mapped[str] = mapped_column(Text, default="", nullable=False)
    is_evaluated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    duration_sec: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class CollectionMarkerModel(Base):
    """Records that a collection has received at least one remote write."""

    __tablename__ = "collection_markers"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    initialized_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )


__all__ = [
    "AttemptItemModel",
    "AttemptModel",
    "CollectionMarkerModel",
    "CompanyCodeModel",
    "KPIModel",
    "QuestionModel",
    "SampleAnswerModel",
    "SubscriptionModel",
    "SubtopicModel",
    "TopicModel",
    "TrainingExampleModel",
    "UserModel",
]
