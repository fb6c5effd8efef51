from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from ipma_prep.attempts import AttemptStateMachine
from ipma_prep.main import create_app
from ipma_prep.reconciliation import ReconciliationEngine
from ipma_prep.telemetry import recent_events

from conftest import FlakyRemote

RISK = "topic_seed_risk"
FULL_ANSWER = (
    "We keep a risk register, run a stakeholder workshop and look for the root cause; "
    "every mitigation has a risk owner and a contingency reserve."
)


@pytest.fixture()
def client(loaded_engine: ReconciliationEngine) -> Iterator[TestClient]:
    app = create_app(engine=loaded_engine, attempts=AttemptStateMachine(loaded_engine, rng=random.Random(3)))
    with TestClient(app) as test_client:
        yield test_client


def test_health_endpoints(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "source": "remote", "loaded": True}

    database = client.get("/healthz/database")
    assert database.status_code == 200
    assert database.json()["status"] == "ok"
    assert database.json()["outbox_dead_letters"] == 0


def test_database_health_reports_remote_failure(client: TestClient, remote: FlakyRemote) -> None:
    remote.failing = True
    try:
        response = client.get("/healthz/database")
    finally:
        remote.failing = False

    assert response.status_code == 503
    assert response.json() == {"status": "error", "detail": "remote unavailable"}


def test_topic_crud(client: TestClient) -> None:
    created = client.post("/api/content/topics", json={"title": "Leadership", "description": "Lead teams"})
    assert created.status_code == 201
    topic_id = created.json()["id"]

    updated = client.patch(f"/api/content/topics/{topic_id}", json={"is_active": False})
    assert updated.status_code == 200
    assert updated.json()["isActive"] is False
    assert any(topic["id"] == topic_id for topic in client.get("/api/content/topics").json())

    assert client.delete(f"/api/content/topics/{topic_id}").status_code == 200
    assert client.get(f"/api/content/topics/{topic_id}/questions").status_code == 404


def test_topic_children(client: TestClient) -> None:
    subtopics = client.get(f"/api/content/topics/{RISK}/subtopics").json()
    kpis = client.get(f"/api/content/topics/{RISK}/kpis").json()

    assert len(subtopics) == 2
    assert {subtopic["topicId"] for subtopic in subtopics} == {RISK}
    assert kpis and all(kpi["topicId"] == RISK for kpi in kpis)


def test_duplicate_topic_title_is_rejected(client: TestClient) -> None:
    client.post("/api/content/topics", json={"title": "Negotiation"})

    response = client.post("/api/content/topics", json={"title": "negotiation"})

    assert response.status_code == 422
    assert response.json()["field"] == "title"


def test_exam_flow(client: TestClient) -> None:
    started = client.post("/api/exams", json={"user_id": "user_api", "topic_id": RISK})
    assert started.status_code == 201
    attempt = started.json()
    assert attempt["status"] == "in_progress"
    assert recent_events("exam_started")[-1].payload["attempt_id"] == attempt["id"]

    pending = client.get(f"/api/exams/{attempt['id']}/result")
    assert pending.status_code == 409

    for question_id in attempt["selectedQuestionIds"]:
        answered = client.put(
            f"/api/exams/{attempt['id']}/answers/{question_id}",
            json={"answer": FULL_ANSWER, "duration_sec": 30},
        )
        assert answered.status_code == 200

    ticked = client.post(f"/api/exams/{attempt['id']}/tick", json={"seconds": 60})
    assert ticked.json()["timeRemaining"] == attempt["timeRemaining"] - 60

    submitted = client.post(f"/api/exams/{attempt['id']}/submit")
    assert submitted.status_code == 200
    assert submitted.json()["passed"] is True

    result = client.get(f"/api/exams/{attempt['id']}/result")
    assert result.json()["score_percentage"] == 100.0
    assert len(client.get(f"/api/exams/{attempt['id']}/items").json()) == 2

    late = client.put(
        f"/api/exams/{attempt['id']}/answers/{attempt['selectedQuestionIds'][0]}",
        json={"answer": "Too late"},
    )
    assert late.status_code == 409


def test_unknown_attempt_is_404(client: TestClient) -> None:
    response = client.get("/api/exams/attempt_missing")

    assert response.status_code == 404
    assert "attempt_missing" in response.json()["detail"]


def test_extend_subscription(client: TestClient, loaded_engine: ReconciliationEngine) -> None:
    user = loaded_engine.add_user("api@example.com", "Api User")
    now = datetime.now(timezone.utc)
    subscription = loaded_engine.add_subscription(user.id, now, now + timedelta(days=3))

    extended = client.post(f"/api/subscriptions/{user.id}/extend", json={"days": 10})

    assert extended.status_code == 200
    assert loaded_engine.get_subscription(user.id).end_date == subscription.end_date + timedelta(days=10)
    assert client.get("/api/subscriptions/expiry").json()["expiring_soon"] == []
    assert client.post(f"/api/subscriptions/{user.id}/extend", json={"days": 0}).status_code == 422
    assert client.post("/api/subscriptions/user_missing/extend", json={"days": 5}).status_code == 404
