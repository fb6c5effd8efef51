from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from ipma_prep.config import Settings, get_settings
from ipma_prep.logging_config import configure_logging
from ipma_prep.telemetry import TelemetryEvent, emit_event, recent_events, register_listener


@pytest.fixture()
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_settings_read_prefixed_environment(monkeypatch, fresh_settings) -> None:
    monkeypatch.setenv("IPMA_TRIAL_DAYS", "30")
    monkeypatch.setenv("IPMA_SEED_ON_EMPTY", "false")

    settings = get_settings()

    assert settings.trial_days == 30
    assert settings.seed_on_empty is False
    assert get_settings() is settings


def test_invalid_settings_raise_runtime_error(monkeypatch, fresh_settings) -> None:
    monkeypatch.setenv("IPMA_OUTBOX_MAX_ATTEMPTS", "0")

    with pytest.raises(RuntimeError, match="Invalid backend configuration"):
        get_settings()


def test_settings_defaults() -> None:
    settings = Settings()

    assert settings.outbox_max_attempts == 5
    assert settings.trial_days == 60


def test_configure_logging_honours_level(monkeypatch) -> None:
    root = logging.getLogger()
    previous = root.level
    monkeypatch.setenv("IPMA_LOG_LEVEL", "warning")
    try:
        configure_logging()
        assert root.level == logging.WARNING
    finally:
        root.setLevel(previous)


def test_emit_event_buffers_and_notifies_listeners(caplog) -> None:
    received: list[TelemetryEvent] = []
    register_listener(received.append)

    def broken(event: TelemetryEvent) -> None:
        raise RuntimeError("listener failure")

    register_listener(broken)
    when = datetime(2025, 1, 1, tzinfo=timezone.utc)

    with caplog.at_level(logging.INFO, logger="ipma.telemetry"):
        emit_event("outbox_delivered", collection="topics", ids={"b", "a"}, at=when, attempts=(1, 2))

    (event,) = received
    assert event.payload == {
        "collection": "topics",
        "ids": ["a", "b"],
        "at": "2025-01-01T00:00:00+00:00",
        "attempts": [1, 2],
    }
    assert recent_events("outbox_delivered") == [event]
    assert recent_events("other") == []
    assert any("TELEMETRY" in record.getMessage() for record in caplog.records)
