from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from sqlalchemy.orm import Session, sessionmaker

from ipma_prep.cache.collection_cache import KeyValueCache
from ipma_prep.cache.kv_store import MemoryKeyValueStore
from ipma_prep.config import Settings
from ipma_prep.db import models  # noqa: F401
from ipma_prep.db.base import Base
from ipma_prep.db.session import build_session_factory, create_engine_for_url
from ipma_prep.errors import RemoteOperationError
from ipma_prep.models import DomainModel
from ipma_prep.reconciliation import ReconciliationEngine
from ipma_prep.repositories.remote_store import RemoteStore
from ipma_prep.telemetry import clear_listeners


class FlakyRemote(RemoteStore):
    """Real remote store that can be switched into a failing state."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        super().__init__(session_factory)
        self.failing = False
        self.upserts: list[tuple[str, str]] = []

    def _check(self, collection: str, operation: str) -> None:
        if self.failing:
            raise RemoteOperationError(collection, operation, "remote unavailable")

    def upsert(self, collection: str, entity: DomainModel) -> None:
        self._check(collection, "upsert")
        super().upsert(collection, entity)
        self.upserts.append((collection, entity.id))  # type: ignore[attr-defined]

    def delete(self, collection: str, entity_id: str) -> None:
        self._check(collection, "delete")
        super().delete(collection, entity_id)

    def list_all(self, collection: str):
        self._check(collection, "list")
        return super().list_all(collection)

    def is_initialized(self, collection: str) -> bool:
        self._check(collection, "is_initialized")
        return super().is_initialized(collection)

    def get_attempt(self, attempt_id: str):
        self._check("attempts", "get")
        return super().get_attempt(attempt_id)

    def get_attempt_item(self, item_id: str):
        self._check("attempt_items", "get")
        return super().get_attempt_item(item_id)

    def list_attempt_items(self, attempt_id: str):
        self._check("attempt_items", "list")
        return super().list_attempt_items(attempt_id)

    def ping(self) -> None:
        self._check("database", "ping")
        super().ping()


@pytest.fixture(autouse=True)
def _reset_telemetry() -> Iterator[None]:
    clear_listeners()
    yield
    clear_listeners()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        IPMA_OUTBOX_MAX_ATTEMPTS=3,
        IPMA_OUTBOX_BASE_DELAY=0.5,
        IPMA_OUTBOX_MAX_DELAY=4.0,
        IPMA_OUTBOX_POLL_INTERVAL=0.05,
        IPMA_SEED_ON_EMPTY=True,
    )


@pytest.fixture()
def session_factory(tmp_path: Path) -> Iterator[sessionmaker[Session]]:
    engine = create_engine_for_url(f"sqlite:///{tmp_path / 'remote.sqlite'}")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def remote(session_factory: sessionmaker[Session]) -> FlakyRemote:
    return FlakyRemote(session_factory)


@pytest.fixture()
def kv_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture()
def cache(kv_store: MemoryKeyValueStore) -> KeyValueCache:
    return KeyValueCache(kv_store)


@pytest.fixture()
def engine(remote: FlakyRemote, cache: KeyValueCache, settings: Settings) -> ReconciliationEngine:
    return ReconciliationEngine(remote, cache, settings=settings)


@pytest.fixture()
def loaded_engine(engine: ReconciliationEngine) -> ReconciliationEngine:
    engine.load()
    engine.flush()
    return engine
