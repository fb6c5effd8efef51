"""Local collection cache: envelope and legacy formats, fallbacks and integrity checks."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from ipma_prep.cache.collection_cache import (
    DecodeFailure,
    Envelope,
    KeyValueCache,
    LegacyArray,
    decode_envelope,
)
from ipma_prep.cache.keys import COLLECTION_KEYS, attempts_key, collection_key
from ipma_prep.cache.kv_store import JsonFileKeyValueStore, MemoryKeyValueStore, build_store
from ipma_prep.models import Topic


class _BrokenStore(MemoryKeyValueStore):
    def set(self, key: str, value: str) -> None:
        raise OSError("disk full")

    def get(self, key: str):
        raise OSError("unreadable")


def _fixed_clock() -> datetime:
    return datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_save_writes_envelope_with_count_and_timestamp() -> None:
    store = MemoryKeyValueStore()
    cache = KeyValueCache(store, clock=_fixed_clock)

    assert cache.save("ipma_topics", [{"id": "a"}, {"id": "b"}]) is True

    payload = json.loads(store.get("ipma_topics") or "")
    assert payload["count"] == 2
    assert payload["data"] == [{"id": "a"}, {"id": "b"}]
    assert payload["timestamp"] == "2025-03-01T12:00:00+00:00"


def test_save_serialises_models_with_camel_case_aliases() -> None:
    store = MemoryKeyValueStore()
    cache = KeyValueCache(store)
    topic = Topic(id="topic_1", title="Risk", is_active=False)

    cache.save("ipma_topics", [topic])

    record = json.loads(store.get("ipma_topics") or "")["data"][0]
    assert record["isActive"] is False
    assert "subtopicIds" in record


def test_load_accepts_legacy_bare_array() -> None:
    store = MemoryKeyValueStore({"ipma_topics": json.dumps([{"id": "legacy"}])})
    cache = KeyValueCache(store)

    assert cache.load("ipma_topics", []) == [{"id": "legacy"}]


def test_load_returns_fallback_for_missing_key() -> None:
    cache = KeyValueCache(MemoryKeyValueStore())
    fallback = [{"id": "seed"}]

    assert cache.load("ipma_topics", fallback) is fallback


def test_load_returns_fallback_for_corrupt_json_and_non_array_payloads() -> None:
    store = MemoryKeyValueStore(
        {
            "broken": "{not json",
            "scalar": "42",
            "wrong_envelope": json.dumps({"items": []}),
        }
    )
    cache = KeyValueCache(store)
    fallback: list[object] = []

    assert cache.load("broken", fallback) is fallback
    assert cache.load("scalar", fallback) is fallback
    assert cache.load("wrong_envelope", fallback) is fallback


def test_load_survives_store_read_errors() -> None:
    cache = KeyValueCache(_BrokenStore())
    fallback = [{"id": "seed"}]

    assert cache.load("ipma_topics", fallback) is fallback


def test_save_reports_failure_without_raising() -> None:
    cache = KeyValueCache(_BrokenStore())

    assert cache.save("ipma_topics", [{"id": "a"}]) is False


def test_load_models_accepts_both_key_styles_and_drops_bad_records() -> None:
    now = "2025-01-01T00:00:00+00:00"
    store = MemoryKeyValueStore(
        {
            "ipma_topics": json.dumps(
                [
                    {"id": "camel", "title": "Camel", "isActive": False, "createdAt": now, "updatedAt": now},
                    {"id": "snake", "title": "Snake", "is_active": True, "created_at": now, "updated_at": now},
                    {"id": "no-title"},
                ]
            )
        }
    )
    cache = KeyValueCache(store)

    topics = cache.load_models("ipma_topics", Topic, [])

    assert [topic.id for topic in topics] == ["camel", "snake"]
    assert topics[0].is_active is False


def test_decode_envelope_classifies_payloads() -> None:
    assert isinstance(decode_envelope("k", "[]"), LegacyArray)
    envelope = decode_envelope("k", json.dumps({"data": [1, 2], "timestamp": "t"}))
    assert isinstance(envelope, Envelope)
    assert envelope.count == 2
    failure = decode_envelope("k", "nope")
    assert isinstance(failure, DecodeFailure)
    assert failure.error.key == "k"


def test_inspect_reports_status_per_key() -> None:
    store = MemoryKeyValueStore(
        {
            "ok_envelope": json.dumps({"data": [1], "timestamp": "t", "count": 1}),
            "ok_legacy": json.dumps([1, 2]),
            "bad": "{",
        }
    )
    cache = KeyValueCache(store)

    assert cache.inspect("ok_envelope").format == "envelope"
    assert cache.inspect("ok_legacy").count == 2
    assert cache.inspect("bad").status == "error"
    assert cache.inspect("absent").status == "missing"


def test_json_file_store_persists_between_instances(tmp_path: Path) -> None:
    path = tmp_path / "cache" / "store.json"
    first = JsonFileKeyValueStore(path)
    first.set("ipma_topics", "[]")
    first.set("other", "{}")
    first.remove("other")

    second = build_store(str(path))
    assert second.get("ipma_topics") == "[]"
    assert second.keys() == ["ipma_topics"]


def test_storage_keys_are_stable() -> None:
    assert collection_key("topics") == "ipma_topics"
    assert COLLECTION_KEYS["company_codes"] == "ipma_company_codes"
    assert attempts_key("user_1") == "ipma_attempts_user_1"
