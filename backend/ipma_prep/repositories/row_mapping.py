"""Translation between domain models and snake_case remote rows.

Most columns share the attribute name. The exceptions are listed per entity:
link lists carry an ``_ids`` suffix, the nested reminder flags are flattened and
``Topic.subtopic_ids`` is not stored at all (it is re-derived from subtopics).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Type

from ..db.base import Base
from ..db.models import (
    AttemptItemModel,
    AttemptModel,
    CompanyCodeModel,
    KPIModel,
    QuestionModel,
    SampleAnswerModel,
    SubscriptionModel,
    SubtopicModel,
    TopicModel,
    TrainingExampleModel,
    UserModel,
)
from ..models import (
    KPI,
    Attempt,
    AttemptItem,
    CompanyCode,
    DomainModel,
    Question,
    SampleAnswer,
    Subscription,
    Subtopic,
    Topic,
    TrainingExample,
    UserProfile,
)

Row = Dict[str, Any]


def _as_utc(value: Any) -> Any:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _flatten_reminders(row: Row) -> Row:
    flags = row.pop("reminder_sent", None) or {}
    row["reminder_seven_days"] = bool(flags.get("seven_days", False))
    row["reminder_one_day"] = bool(flags.get("one_day", False))
    return row


def _nest_reminders(row: Row) -> Row:
    row["reminder_sent"] = {
        "seven_days": bool(row.pop("reminder_seven_days", False)),
        "one_day": bool(row.pop("reminder_one_day", False)),
    }
    return row


@dataclass(frozen=True)
class EntityMapping:
    collection: str
    model: Type[DomainModel]
    table: Type[Base]
    renames: Mapping[str, str] = field(default_factory=dict)
    dropped: FrozenSet[str] = frozenset()
    encode: Optional[Callable[[Row], Row]] = None
    decode: Optional[Callable[[Row], Row]] = None

    def to_row(self, entity: DomainModel) -> Row:
        row = entity.model_dump()
        for name in self.dropped:
            row.pop(name, None)
        for attribute, column in self.renames.items():
            row[column] = row.pop(attribute)
        if self.encode is not None:
            row = self.encode(row)
        return row

    def from_row(self, record: Base) -> DomainModel:
        row: Row = {
            column.name: _as_utc(getattr(record, column.name))
            for column in record.__table__.columns
        }
        for attribute, column in self.renames.items():
            row[attribute] = row.pop(column)
        if self.decode is not None:
            row = self.decode(row)
        return self.model.model_validate(row)

    def to_record(self, entity: DomainModel) -> Base:
        return self.table(**self.to_row(entity))


MAPPINGS: Dict[str, EntityMapping] = {
    mapping.collection: mapping
    for mapping in (
        EntityMapping("topics", Topic, TopicModel, dropped=frozenset({"subtopic_ids"})),
        EntityMapping("subtopics", Subtopic, SubtopicModel),
        EntityMapping(
            "questions",
            Question,
            QuestionModel,
            renames={"connected_kpis": "connected_kpi_ids"},
        ),
        EntityMapping(
            "kpis",
            KPI,
            KPIModel,
            renames={"connected_questions": "connected_question_ids"},
        ),
        EntityMapping("company_codes", CompanyCode, CompanyCodeModel),
        EntityMapping("sample_answers", SampleAnswer, SampleAnswerModel),
        EntityMapping("training_examples", TrainingExample, TrainingExampleModel),
        EntityMapping("users", UserProfile, UserModel),
        EntityMapping(
            "subscriptions",
            Subscription,
            SubscriptionModel,
            encode=_flatten_reminders,
            decode=_nest_reminders,
        ),
        EntityMapping("attempts", Attempt, AttemptModel),
        EntityMapping("attempt_items", AttemptItem, AttemptItemModel),
    )
}

SYNCED_COLLECTIONS = (
    "topics",
    "subtopics",
    "questions",
    "kpis",
    "company_codes",
    "sample_answers",
    "training_examples",
    "users",
    "subscriptions",
)


def mapping_for(collection: str) -> EntityMapping:
    try:
        return MAPPINGS[collection]
    except KeyError as exc:
        raise KeyError(f"Unknown collection '{collection}'.") from exc


__all__ = ["EntityMapping", "MAPPINGS", "SYNCED_COLLECTIONS", "mapping_for"]
