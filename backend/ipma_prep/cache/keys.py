"""Storage keys under which collections are mirrored locally."""

from __future__ import annotations

from typing import Dict

COLLECTION_KEYS: Dict[str, str] = {
    "topics": "ipma_topics",
    "questions": "ipma_questions",
    "kpis": "ipma_kpis",
    "company_codes": "ipma_company_codes",
    "subtopics": "ipma_subtopics",
    "sample_answers": "ipma_sample_answers",
    "training_examples": "ipma_training_examples",
    "users": "ipma_users",
    "subscriptions": "ipma_subscriptions",
}

SESSIONS_KEY = "ipma_sessions"


def collection_key(collection: str) -> str:
    try:
        return COLLECTION_KEYS[collection]
    except KeyError as exc:
        raise KeyError(f"No storage key registered for collection '{collection}'.") from exc


def attempts_key(user_id: str) -> str:
    return f"ipma_attempts_{user_id}"


def attempt_items_key(user_id: str) -> str:
    return f"ipma_attempt_items_{user_id}"


__all__ = [
    "COLLECTION_KEYS",
    "SESSIONS_KEY",
    "attempt_items_key",
    "attempts_key",
    "collection_key",
]
