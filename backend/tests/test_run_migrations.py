from __future__ import annotations

import types

import pytest
from sqlalchemy import create_engine, inspect

from scripts import run_migrations as runner


def _config(url: str = ""):
    config = runner.get_alembic_config(str(runner.BACKEND_ROOT / "alembic.ini"))
    config.set_main_option("sqlalchemy.url", url)
    return config


def test_resolve_database_url_prefers_config(monkeypatch) -> None:
    monkeypatch.setenv("IPMA_DATABASE_URL", "sqlite:///ignored.sqlite")
    assert runner.resolve_database_url(_config("sqlite://")) == "sqlite://"


def test_resolve_database_url_falls_back_to_env(monkeypatch) -> None:
    monkeypatch.setenv("IPMA_DATABASE_URL", "sqlite://")
    config = _config()

    assert runner.resolve_database_url(config) == "sqlite://"
    assert config.get_main_option("sqlalchemy.url") == "sqlite://"


def test_resolve_database_url_requires_a_value(monkeypatch) -> None:
    monkeypatch.delenv("IPMA_DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        runner.resolve_database_url(_config())


def test_wait_for_database_succeeds_with_sqlite(tmp_path) -> None:
    runner.wait_for_database(f"sqlite:///{tmp_path / 'test.sqlite'}", timeout=2, poll_interval=0.1)


def test_wait_for_database_times_out(monkeypatch) -> None:
    class DummyEngine:
        def connect(self) -> types.SimpleNamespace:
            raise runner.OperationalError("SELECT 1", {}, Exception("boom"))

        def dispose(self) -> None:
            pass

    monkeypatch.setattr(runner, "create_engine", lambda *_, **__: DummyEngine())
    with pytest.raises(RuntimeError):
        runner.wait_for_database("postgresql://example", timeout=0, poll_interval=0)


def test_run_migrations_invokes_upgrade(monkeypatch) -> None:
    recorded: dict[str, object] = {}

    def fake_wait(url: str, *, timeout: int, poll_interval: float) -> None:
        recorded["wait"] = (url, timeout, poll_interval)

    def fake_upgrade(cfg, revision: str) -> None:
        recorded["revision"] = revision
        recorded["script_location"] = cfg.get_main_option("script_location")

    monkeypatch.setattr(runner, "wait_for_database", fake_wait)
    monkeypatch.setattr(runner.command, "upgrade", fake_upgrade)

    runner.run_migrations("head", timeout=5, poll_interval=0.1, config=_config("sqlite://"))

    assert recorded["revision"] == "head"
    assert recorded["wait"] == ("sqlite://", 5, 0.1)
    assert str(recorded["script_location"]).endswith("alembic")


def test_upgrade_creates_every_table(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'migrated.sqlite'}"

    runner.run_migrations("head", timeout=2, poll_interval=0.1, config=_config(url))

    engine = create_engine(url)
    try:
        tables = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert {"topics", "subtopics", "questions", "kpis", "attempts", "attempt_items", "subscriptions"} <= tables


def test_main_reports_failures(monkeypatch) -> None:
    def boom(*_args, **_kwargs) -> None:
        raise RuntimeError("database unreachable")

    monkeypatch.setattr(runner, "run_migrations", boom)

    assert runner.main(["--timeout", "0"]) == 1


def test_check_mode_reports_pending_upgrade(monkeypatch, tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'check.sqlite'}"
    monkeypatch.setenv("IPMA_DATABASE_URL", url)

    assert runner.main(["--check"]) == 3

    runner.run_migrations("head", timeout=2, poll_interval=0.1, config=_config(url))

    assert runner.main(["--check"]) == 0
