from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import Session, sessionmaker

from ipma_prep.errors import RemoteOperationError
from ipma_prep.models import Attempt, AttemptItem, Question, Subscription, Topic
from ipma_prep.repositories.remote_store import RemoteStore
from ipma_prep.repositories.row_mapping import mapping_for


def _ts(minutes: int = 0) -> datetime:
    return datetime(2025, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)


def test_question_row_uses_snake_case_link_column() -> None:
    question = Question(id="q1", topic_id="t1", prompt="Describe something useful", connected_kpis=["k1"])

    row = mapping_for("questions").to_row(question)

    assert row["connected_kpi_ids"] == ["k1"]
    assert "connected_kpis" not in row


def test_topic_row_does_not_store_subtopic_ids() -> None:
    row = mapping_for("topics").to_row(Topic(id="t1", title="Topic", subtopic_ids=["s1"]))

    assert "subtopic_ids" not in row


def test_subscription_reminder_flags_are_flattened() -> None:
    subscription = Subscription(
        id="sub1",
        user_id="u1",
        start_date=_ts(),
        end_date=_ts(60),
        reminder_sent={"seven_days": True, "one_day": False},
    )

    row = mapping_for("subscriptions").to_row(subscription)

    assert row["reminder_seven_days"] is True
    assert row["reminder_one_day"] is False
    assert "reminder_sent" not in row


def test_upsert_and_list_round_trip(session_factory: sessionmaker[Session]) -> None:
    store = RemoteStore(session_factory)
    older = Topic(id="t1", title="Older", created_at=_ts(0), updated_at=_ts(0))
    newer = Topic(id="t2", title="Newer", created_at=_ts(5), updated_at=_ts(5))

    store.upsert("topics", newer)
    store.upsert("topics", older)
    store.upsert("topics", older.model_copy(update={"title": "Renamed"}))

    topics = store.list_all("topics")
    assert [topic.id for topic in topics] == ["t1", "t2"]
    assert topics[0].title == "Renamed"
    assert topics[0].created_at == _ts(0)


def test_subscription_round_trip_restores_nested_flags(session_factory: sessionmaker[Session]) -> None:
    store = RemoteStore(session_factory)
    store.upsert(
        "subscriptions",
        Subscription(id="sub1", user_id="u1", start_date=_ts(), end_date=_ts(90), reminder_sent={"one_day": True}),
    )

    (loaded,) = store.list_all("subscriptions")

    assert loaded.reminder_sent.one_day is True  # type: ignore[attr-defined]
    assert loaded.reminder_sent.seven_days is False  # type: ignore[attr-defined]
    assert loaded.end_date == _ts(90)  # type: ignore[attr-defined]


def test_collection_marker_distinguishes_emptied_from_untouched(session_factory: sessionmaker[Session]) -> None:
    store = RemoteStore(session_factory)
    assert store.is_initialized("topics") is False

    store.upsert("topics", Topic(id="t1", title="Temporary"))
    store.delete("topics", "t1")

    assert store.list_all("topics") == []
    assert store.is_initialized("topics") is True
    assert store.is_initialized("questions") is False


def test_attempt_queries(session_factory: sessionmaker[Session]) -> None:
    store = RemoteStore(session_factory)
    first = Attempt(id="a1", user_id="u1", topic_id="t1", start_time=_ts(0))
    second = Attempt(id="a2", user_id="u1", topic_id="t1", start_time=_ts(10))
    other = Attempt(id="a3", user_id="u2", topic_id="t1", start_time=_ts(20))
    for attempt in (first, second, other):
        store.upsert("attempts", attempt)
    store.upsert("attempt_items", AttemptItem(id="i1", attempt_id="a1", question_id="q1", score=2))

    assert [attempt.id for attempt in store.list_user_attempts("u1")] == ["a2", "a1"]
    assert store.get_attempt("missing") is None
    assert store.get_attempt_item("i1").score == 2  # type: ignore[union-attr]
    assert [item.id for item in store.list_attempt_items("a1")] == ["i1"]


def test_failures_surface_as_remote_operation_errors(session_factory: sessionmaker[Session]) -> None:
    def broken_factory():
        raise RuntimeError("connection refused")

    store = RemoteStore(broken_factory)  # type: ignore[arg-type]

    with pytest.raises(RemoteOperationError) as excinfo:
        store.list_all("topics")
    assert excinfo.value.collection == "topics"
    assert excinfo.value.operation == "list"
    with pytest.raises(RemoteOperationError):
        store.ping()
