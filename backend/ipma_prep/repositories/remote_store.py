"""SQLAlchemy-backed remote store with per-collection upsert/delete/list."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, List, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..db.models import AttemptItemModel, AttemptModel, CollectionMarkerModel
from ..db.session import get_session_factory, session_scope
from ..errors import RemoteOperationError
from ..models import Attempt, AttemptItem, DomainModel
from .row_mapping import mapping_for

logger = logging.getLogger(__name__)


class RemoteStore:
    """Per-entity persistence against the relational backend.

    Every call runs in its own session; there are no transactions spanning
    calls. Failures surface as ``RemoteOperationError``.
    """

    def __init__(self, session_factory: Optional[sessionmaker[Session]] = None) -> None:
        self._session_factory = session_factory

    def _factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @contextmanager
    def _scope(self, collection: str, operation: str, *, commit: bool = True) -> Generator[Session, None, None]:
        try:
            with session_scope(commit=commit, factory=self._factory()) as session:
                yield session
        except RemoteOperationError:
            raise
        except (SQLAlchemyError, RuntimeError) as exc:
            logger.debug("Remote %s on %s failed", operation, collection, exc_info=True)
            raise RemoteOperationError(collection, operation, str(exc)) from exc

    def upsert(self, collection: str, entity: DomainModel) -> None:
        mapping = mapping_for(collection)
        with self._scope(collection, "upsert") as session:
            session.merge(mapping.to_record(entity))
            self._mark_initialized(session, collection)

    def delete(self, collection: str, entity_id: str) -> None:
        mapping = mapping_for(collection)
        with self._scope(collection, "delete") as session:
            session.execute(delete(mapping.table).where(mapping.table.id == entity_id))
            self._mark_initialized(session, collection)

    def list_all(self, collection: str) -> List[DomainModel]:
        mapping = mapping_for(collection)
        with self._scope(collection, "list", commit=False) as session:
            records = session.execute(select(mapping.table).order_by(mapping.table.created_at)).scalars().all()
            return [mapping.from_row(record) for record in records]

    def is_initialized(self, collection: str) -> bool:
        with self._scope(collection, "is_initialized", commit=False) as session:
            return session.get(CollectionMarkerModel, collection) is not None

    def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        mapping = mapping_for("attempts")
        with self._scope("attempts", "get", commit=False) as session:
            record = session.get(AttemptModel, attempt_id)
            return mapping.from_row(record) if record is not None else None  # type: ignore[return-value]

    def list_user_attempts(self, user_id: str) -> List[Attempt]:
        mapping = mapping_for("attempts")
        with self._scope("attempts", "list", commit=False) as session:
            stmt = (
                select(AttemptModel)
                .where(AttemptModel.user_id == user_id)
                .order_by(AttemptModel.start_time.desc())
            )
            return [mapping.from_row(record) for record in session.execute(stmt).scalars()]  # type: ignore[misc]

    def get_attempt_item(self, item_id: str) -> Optional[AttemptItem]:
        mapping = mapping_for("attempt_items")
        with self._scope("attempt_items", "get", commit=False) as session:
            record = session.get(AttemptItemModel, item_id)
            return mapping.from_row(record) if record is not None else None  # type: ignore[return-value]

    def list_attempt_items(self, attempt_id: str) -> List[AttemptItem]:
        mapping = mapping_for("attempt_items")
        with self._scope("attempt_items", "list", commit=False) as session:
            stmt = (
                select(AttemptItemModel)
                .where(AttemptItemModel.attempt_id == attempt_id)
                .order_by(AttemptItemModel.created_at)
            )
            return [mapping.from_row(record) for record in session.execute(stmt).scalars()]  # type: ignore[misc]

    def ping(self) -> None:
        with self._scope("database", "ping", commit=False) as session:
            session.execute(text("SELECT 1"))

    @staticmethod
    def _mark_initialized(session: Session, collection: str) -> None:
        if session.get(CollectionMarkerModel, collection) is None:
            session.add(CollectionMarkerModel(name=collection))


__all__ = ["RemoteStore"]
